"""
Peer connection manager.

Wraps one aiortc RTCPeerConnection per call:
- local tracks are attached once per kind; a second track of the same kind
  replaces the first on the existing sender
- remote candidates that arrive before the remote description are buffered
  and applied right after it is set
- local candidates are reported to a single callback, then None for
  end-of-candidates
- inbound tracks are grouped into one RemoteStream, reported once

aiortc gathers candidates while applying the local description and has no
per-candidate event, so the candidates are read back from the local
description once it is applied.
"""

from __future__ import annotations

from typing import Callable, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import (
    InternalError,
    InvalidAccessError,
    InvalidStateError,
    OperationError,
)
from aiortc.sdp import SessionDescription, candidate_to_sdp

from peercall.config import validate_stun_servers
from peercall.core.errors import NegotiationError
from peercall.logging_config import get_logger

logger = get_logger("core.peer")

NEGOTIATION_ERRORS = (
    InternalError,
    InvalidAccessError,
    InvalidStateError,
    OperationError,
    ValueError,
    IndexError,
)


class RemoteStream:
    """The inbound tracks of a call."""

    def __init__(self) -> None:
        self.tracks: list[MediaStreamTrack] = []

    def add_track(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)

    @property
    def audio_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == "audio"), None)

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == "video"), None)


class PeerConnection:
    def __init__(self, pc: RTCPeerConnection) -> None:
        self.pc = pc
        self.remote_stream: Optional[RemoteStream] = None
        self.closed = False

        self._remote_description_set = False
        self._pending_candidates: list[Optional[RTCIceCandidate]] = []
        self._failed = False

        self._on_remote_track: Optional[Callable[[RemoteStream], None]] = None
        self._on_local_candidate: Optional[
            Callable[[Optional[RTCIceCandidate]], None]
        ] = None
        self._on_failed: Optional[Callable[[NegotiationError], None]] = None

        pc.on("track", self._handle_track)
        pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def local_description(self) -> RTCSessionDescription:
        """The applied local description, including gathered candidates."""
        return self.pc.localDescription

    def on_remote_track(self, callback: Callable[[RemoteStream], None]) -> None:
        self._on_remote_track = callback

    def on_local_candidate(
        self, callback: Callable[[Optional[RTCIceCandidate]], None]
    ) -> None:
        self._on_local_candidate = callback

    def on_failed(self, callback: Callable[[NegotiationError], None]) -> None:
        self._on_failed = callback

    def attach_local_track(self, track: MediaStreamTrack) -> None:
        """Add an outbound track, replacing any track of the same kind."""
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == track.kind:
                logger.warning(
                    f"{track.kind} track already attached, replacing it"
                )
                sender.replaceTrack(track)
                return
        try:
            self.pc.addTrack(track)
        except NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Failed to attach {track.kind} track: {exc}") from exc
        logger.debug(f"Attached local {track.kind} track {track.id[:8]}...")

    def replace_track(self, kind: str, track: MediaStreamTrack) -> None:
        """
        Swap the outbound track of a kind on its existing sender, without
        renegotiation.

        Raises:
            NegotiationError: no sender of that kind exists
        """
        for sender in self.pc.getSenders():
            if sender.kind == kind and sender.track is not None:
                sender.replaceTrack(track)
                logger.info(f"Replaced outbound {kind} track with {track.id[:8]}...")
                return
        raise NegotiationError(f"No {kind} sender to replace")

    def outbound_tracks(self, kind: Optional[str] = None) -> list[MediaStreamTrack]:
        return [
            sender.track
            for sender in self.pc.getSenders()
            if sender.track is not None and (kind is None or sender.track.kind == kind)
        ]

    async def create_offer(self) -> RTCSessionDescription:
        try:
            return await self.pc.createOffer()
        except NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Failed to create offer: {exc}") from exc

    async def create_answer(self) -> RTCSessionDescription:
        try:
            return await self.pc.createAnswer()
        except NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Failed to create answer: {exc}") from exc

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        try:
            await self.pc.setLocalDescription(description)
        except NEGOTIATION_ERRORS as exc:
            raise NegotiationError(
                f"Failed to apply local {description.type}: {exc}"
            ) from exc
        self._emit_local_candidates()

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        try:
            await self.pc.setRemoteDescription(description)
        except NEGOTIATION_ERRORS as exc:
            raise NegotiationError(
                f"Failed to apply remote {description.type}: {exc}"
            ) from exc
        self._remote_description_set = True

        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.info(f"Applying {len(pending)} buffered remote candidates")
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def add_remote_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        """Apply a remote candidate, or buffer it until the remote description is set."""
        if self.closed:
            return
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            logger.debug(
                f"Buffered remote candidate ({len(self._pending_candidates)} pending)"
            )
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        try:
            await self.pc.addIceCandidate(candidate)
        except ValueError as exc:
            logger.warning(f"Ignoring unusable remote candidate: {exc}")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._pending_candidates.clear()
        await self.pc.close()
        logger.info("Peer connection closed")

    def _emit_local_candidates(self) -> None:
        if self._on_local_candidate is None:
            return

        description = SessionDescription.parse(self.pc.localDescription.sdp)
        seen: set[str] = set()
        count = 0
        for index, media in enumerate(description.media):
            for candidate in media.ice_candidates:
                line = candidate_to_sdp(candidate)
                if line in seen:
                    continue
                seen.add(line)
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                self._on_local_candidate(candidate)
                count += 1
        self._on_local_candidate(None)
        logger.debug(f"Reported {count} local candidates")

    def _handle_track(self, track: MediaStreamTrack) -> None:
        logger.info(f"Remote {track.kind} track received")
        if self.remote_stream is None:
            self.remote_stream = RemoteStream()
            self.remote_stream.add_track(track)
            if self._on_remote_track:
                self._on_remote_track(self.remote_stream)
        else:
            self.remote_stream.add_track(track)

    def _handle_connection_state(self) -> None:
        state = self.pc.connectionState
        logger.info(f"Connection state: {state}")
        if state == "failed" and not self._failed and not self.closed:
            self._failed = True
            if self._on_failed:
                self._on_failed(NegotiationError("Peer connectivity failed"))


def create_connection(stun_servers: list[str]) -> PeerConnection:
    """
    Create a connection using the given public STUN servers, in order.

    Raises:
        ValueError: a URL is not a STUN server (relayed paths are not supported)
    """
    urls = validate_stun_servers(stun_servers)
    configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])
    logger.debug(f"Creating peer connection with STUN servers: {urls}")
    return PeerConnection(RTCPeerConnection(configuration=configuration))
