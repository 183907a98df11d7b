from dataclasses import dataclass
from typing import Literal, Dict, Any, Optional, get_args
import time
import uuid

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peercall.core.errors import SignalingError


SignalingMessageType = Literal[
    "offer",
    "answer",
    "candidate",
    "hangup",
]

CallKind = Literal["audio", "video"]

CALL_KINDS = ("audio", "video")


@dataclass
class SignalingMessage:
    msg_type: SignalingMessageType
    room_id: str
    call_id: str
    from_id: str
    message_id: str = ""
    sdp: str | None = None
    kind: str | None = None  # offer only: "audio" or "video"
    candidate: str | None = None  # "" signals end-of-candidates
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    reason: str | None = None  # hangup only
    display_name: str | None = None  # offer/answer: sender label
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if not self.message_id:
            self.message_id = uuid.uuid4().hex

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.msg_type,
            "room_id": self.room_id,
            "call_id": self.call_id,
            "from": self.from_id,
            "message_id": self.message_id,
        }

        if self.sdp is not None:
            payload["sdp"] = self.sdp
        if self.kind:
            payload["kind"] = self.kind
        if self.candidate is not None:
            payload["candidate"] = self.candidate
        if self.sdp_mid is not None:
            payload["sdpMid"] = self.sdp_mid
        if self.sdp_mline_index is not None:
            payload["sdpMLineIndex"] = self.sdp_mline_index
        if self.reason:
            payload["reason"] = self.reason
        if self.display_name:
            payload["display_name"] = self.display_name
        if self.timestamp:
            payload["timestamp"] = self.timestamp

        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SignalingMessage":
        try:
            msg = cls(
                msg_type=payload["type"],
                room_id=payload["room_id"],
                call_id=payload["call_id"],
                from_id=payload["from"],
                message_id=payload.get("message_id", ""),
                sdp=payload.get("sdp"),
                kind=payload.get("kind"),
                candidate=payload.get("candidate"),
                sdp_mid=payload.get("sdpMid"),
                sdp_mline_index=payload.get("sdpMLineIndex"),
                reason=payload.get("reason"),
                display_name=payload.get("display_name"),
                timestamp=payload.get("timestamp", 0.0),
            )
        except (KeyError, TypeError) as exc:
            raise SignalingError(f"Malformed signaling payload: {exc}") from exc

        if msg.msg_type not in get_args(SignalingMessageType):
            raise SignalingError(f"Unknown signaling message type: {msg.msg_type}")
        if msg.msg_type in ("offer", "answer") and not msg.sdp:
            raise SignalingError(f"{msg.msg_type} without sdp")
        if msg.msg_type == "offer" and msg.kind not in CALL_KINDS:
            raise SignalingError(f"offer with invalid kind: {msg.kind}")
        if msg.msg_type == "candidate" and msg.candidate is None:
            raise SignalingError("candidate message without candidate")
        return msg

    def session_description(self) -> RTCSessionDescription:
        """The offer/answer carried by this message."""
        if self.msg_type not in ("offer", "answer") or not self.sdp:
            raise SignalingError(f"{self.msg_type} carries no session description")
        return RTCSessionDescription(sdp=self.sdp, type=self.msg_type)

    def ice_candidate(self) -> Optional[RTCIceCandidate]:
        """
        The network candidate carried by this message.

        Returns None for end-of-candidates. Browsers prefix the candidate
        line with "candidate:"; both forms are accepted.
        """
        if self.msg_type != "candidate" or self.candidate is None:
            raise SignalingError(f"{self.msg_type} carries no candidate")
        if not self.candidate:
            return None

        line = self.candidate
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        try:
            candidate = candidate_from_sdp(line)
        except (AssertionError, ValueError, IndexError) as exc:
            raise SignalingError(f"Malformed candidate {self.candidate!r}: {exc}") from exc
        candidate.sdpMid = self.sdp_mid
        candidate.sdpMLineIndex = self.sdp_mline_index
        return candidate


def new_call_id() -> str:
    return str(uuid.uuid4())


def build_offer(
    room_id: str,
    call_id: str,
    from_id: str,
    description: RTCSessionDescription,
    kind: str,
    display_name: str | None = None,
) -> SignalingMessage:
    return SignalingMessage(
        msg_type="offer",
        room_id=room_id,
        call_id=call_id,
        from_id=from_id,
        sdp=description.sdp,
        kind=kind,
        display_name=display_name,
        timestamp=time.time(),
    )


def build_answer(
    room_id: str,
    call_id: str,
    from_id: str,
    description: RTCSessionDescription,
    display_name: str | None = None,
) -> SignalingMessage:
    return SignalingMessage(
        msg_type="answer",
        room_id=room_id,
        call_id=call_id,
        from_id=from_id,
        sdp=description.sdp,
        display_name=display_name,
        timestamp=time.time(),
    )


def build_candidate(
    room_id: str,
    call_id: str,
    from_id: str,
    candidate: Optional[RTCIceCandidate],
) -> SignalingMessage:
    """Wrap a local candidate; None becomes the end-of-candidates marker."""
    if candidate is None:
        line = ""
        sdp_mid = None
        sdp_mline_index = None
    else:
        line = "candidate:" + candidate_to_sdp(candidate)
        sdp_mid = candidate.sdpMid
        sdp_mline_index = candidate.sdpMLineIndex

    return SignalingMessage(
        msg_type="candidate",
        room_id=room_id,
        call_id=call_id,
        from_id=from_id,
        candidate=line,
        sdp_mid=sdp_mid,
        sdp_mline_index=sdp_mline_index,
        timestamp=time.time(),
    )


def build_hangup(
    room_id: str, call_id: str, from_id: str, reason: str | None = None
) -> SignalingMessage:
    return SignalingMessage(
        msg_type="hangup",
        room_id=room_id,
        call_id=call_id,
        from_id=from_id,
        reason=reason,
        timestamp=time.time(),
    )
