"""
Call state machine.

One CallSession at a time, moving through

    IDLE → REQUESTING → CONNECTING → ACTIVE → ENDED

REQUESTING covers local media acquisition, CONNECTING the offer/answer
exchange, and the first remote track makes the call ACTIVE. Any failure,
either side hanging up, or losing the relay ends the call; resources are
released exactly once, when the call ends.

Relay and connection callbacks never touch the session directly: they queue
events which a single consumer task handles in arrival order. User actions
run directly and re-check the session after every await, so hanging up can
interrupt a call that is still being set up.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional

from aiortc import RTCIceCandidate

from peercall.core.errors import (
    CallError,
    CallStateError,
    DeviceError,
    NegotiationError,
    RelayUnavailable,
    SignalingError,
)
from peercall.core.media import LocalStream, MediaAcquirer, ScreenStream
from peercall.core.message_filter import SignalingFilter
from peercall.core.peer import PeerConnection, RemoteStream, create_connection
from peercall.core.relay import SignalingRelay, Subscription
from peercall.core.signaling import (
    CALL_KINDS,
    SignalingMessage,
    build_answer,
    build_candidate,
    build_hangup,
    build_offer,
    new_call_id,
)
from peercall.config import DEFAULT_STUN_SERVERS
from peercall.logging_config import get_logger

logger = get_logger("core.call_state")

MAX_EARLY_CALLS = 16


class CallPhase(Enum):
    IDLE = auto()
    REQUESTING = auto()
    CONNECTING = auto()
    ACTIVE = auto()
    ENDED = auto()


@dataclass
class CallSession:
    call_id: str
    room_id: str
    kind: str
    initiated_by_local: bool = False
    local_stream: Optional[LocalStream] = None
    remote_stream: Optional[RemoteStream] = None
    connection: Optional[PeerConnection] = None
    muted: bool = False
    video_enabled: bool = False
    screen_sharing: bool = False
    screen_stream: Optional[ScreenStream] = None
    peer: Any = None  # RoomRecord, label only
    error: Optional[CallError] = None
    end_reason: Optional[str] = None
    remote_aware: bool = False  # offer sent or received
    answered: bool = False
    ended: bool = False
    released: bool = False


class CallStateMachine:
    """
    Drives one call at a time over a signaling relay.

    Callbacks:
        on_state_changed(phase, session)
        on_error(session, error)
        on_incoming_call(room_id, call_id, kind)
        on_relay_lost(room_id, error)
    """

    def __init__(
        self,
        relay: SignalingRelay,
        local_id: str,
        acquirer: Optional[MediaAcquirer] = None,
        stun_servers: Optional[list[str]] = None,
        connection_factory: Callable[[list[str]], PeerConnection] = create_connection,
        directory=None,
        auto_answer: bool = False,
        display_name: Optional[str] = None,
    ) -> None:
        self.relay = relay
        self.local_id = local_id
        self.acquirer = acquirer or MediaAcquirer()
        self.stun_servers = list(
            DEFAULT_STUN_SERVERS if stun_servers is None else stun_servers
        )
        self.connection_factory = connection_factory
        self.directory = directory
        self.auto_answer = auto_answer
        self.display_name = display_name or None

        self.phase: CallPhase = CallPhase.IDLE
        self.session: Optional[CallSession] = None
        self.pending_offer: Optional[SignalingMessage] = None

        self.on_state_changed: Optional[
            Callable[[CallPhase, Optional[CallSession]], None]
        ] = None
        self.on_error: Optional[Callable[[CallSession, CallError], None]] = None
        self.on_incoming_call: Optional[Callable[[str, str, str], None]] = None
        self.on_relay_lost: Optional[Callable[[str, RelayUnavailable], None]] = None

        self._filter = SignalingFilter(local_id)
        self._subscriptions: dict[str, Subscription] = {}
        self._early_candidates: OrderedDict[str, list[SignalingMessage]] = OrderedDict()
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._capture_lock = asyncio.Lock()
        self._accepts: set[asyncio.Task] = set()

    # ---- lifecycle -------------------------------------------------------

    def listen(self, room_id: str) -> None:
        """
        Subscribe to the signaling of a room.

        Raises:
            RelayUnavailable: the relay cannot be subscribed to
        """
        if room_id in self._subscriptions:
            return
        self._subscriptions[room_id] = self.relay.subscribe(
            room_id,
            lambda msg: self._post("signal", room_id, msg),
            on_error=lambda error: self._post("relay_error", room_id, error),
        )
        self._ensure_consumer()
        logger.info(f"Listening for calls in room {room_id}")

    async def shutdown(self) -> None:
        """End any call, close subscriptions and stop the event consumer."""
        logger.info("Shutting down call state machine")
        self.pending_offer = None
        await self.hangup()
        if self._accepts:
            # their session has ended; they only release what they opened
            await asyncio.gather(*self._accepts, return_exceptions=True)
        for sub in self._subscriptions.values():
            sub.close()
        self._subscriptions.clear()
        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    async def drain(self) -> None:
        """Wait until every queued event and automatic answer has been handled."""
        await self._events.join()
        while self._accepts:
            await asyncio.gather(*list(self._accepts), return_exceptions=True)
            await self._events.join()

    @property
    def in_call(self) -> bool:
        return self.session is not None and not self.session.ended

    # ---- user actions ----------------------------------------------------

    async def start_call(self, room_id: str, kind: str) -> CallSession:
        """Place a call in a room. Failures end the call rather than raise."""
        if kind not in CALL_KINDS:
            raise ValueError(f"Unknown call kind: {kind}")

        if self.in_call:
            logger.warning(
                f"Ending call {self.session.call_id[:8]}... before starting a new one"
            )
            await self.hangup()
        if self.pending_offer is not None:
            logger.info(
                f"Dropping pending incoming call {self.pending_offer.call_id[:8]}..."
            )
            self.pending_offer = None

        session = CallSession(
            call_id=new_call_id(),
            room_id=room_id,
            kind=kind,
            initiated_by_local=True,
            peer=self._lookup_peer(room_id),
        )
        self._begin(session)
        logger.info(f"Starting {kind} call {session.call_id[:8]}... in room {room_id}")

        try:
            self.listen(room_id)
            if not await self._acquire_media(session):
                return session

            connection = await self._open_connection(session)
            if not self._is_current(session):
                return session
            self._set_phase(CallPhase.CONNECTING, session)

            offer = await connection.create_offer()
            if not self._is_current(session):
                return session
            await connection.set_local_description(offer)
            if not self._is_current(session):
                return session

            session.remote_aware = True
            await self.relay.send(
                room_id,
                build_offer(
                    room_id,
                    session.call_id,
                    self.local_id,
                    connection.local_description,
                    kind,
                    display_name=self.display_name,
                ),
            )
            logger.info(f"Offer sent for call {session.call_id[:8]}...")
        except CallError as exc:
            await self._fail(session, exc)
        return session

    async def accept_call(self, room_id: Optional[str] = None) -> CallSession:
        """
        Answer the pending incoming call.

        Raises:
            CallStateError: there is no incoming call (in that room)
        """
        offer = self.pending_offer
        if offer is None or (room_id is not None and offer.room_id != room_id):
            raise CallStateError("No incoming call to accept")
        if self.in_call:
            raise CallStateError("Cannot accept a call while another call is active")
        self.pending_offer = None

        session = CallSession(
            call_id=offer.call_id,
            room_id=offer.room_id,
            kind=offer.kind,
            initiated_by_local=False,
            remote_aware=True,
            peer=self._lookup_peer(offer.room_id),
        )
        self._begin(session)
        logger.info(f"Accepting {offer.kind} call {offer.call_id[:8]}...")

        try:
            if not await self._acquire_media(session):
                return session

            connection = await self._open_connection(session)
            if not self._is_current(session):
                return session
            self._set_phase(CallPhase.CONNECTING, session)

            await connection.set_remote_description(offer.session_description())
            if not self._is_current(session):
                return session
            answer = await connection.create_answer()
            if not self._is_current(session):
                return session
            await connection.set_local_description(answer)
            if not self._is_current(session):
                return session

            await self.relay.send(
                session.room_id,
                build_answer(
                    session.room_id,
                    session.call_id,
                    self.local_id,
                    connection.local_description,
                    display_name=self.display_name,
                ),
            )
            session.answered = True
            logger.info(f"Answer sent for call {session.call_id[:8]}...")
        except CallError as exc:
            await self._fail(session, exc)
        return session

    async def reject_call(self) -> None:
        offer = self.pending_offer
        if offer is None:
            raise CallStateError("No incoming call to reject")
        self.pending_offer = None
        self._early_candidates.pop(offer.call_id, None)
        logger.info(f"Rejecting call {offer.call_id[:8]}...")
        try:
            await self.relay.send(
                offer.room_id,
                build_hangup(offer.room_id, offer.call_id, self.local_id, "rejected"),
            )
        except RelayUnavailable as exc:
            logger.warning(f"Could not send rejection: {exc}")

    async def hangup(self) -> None:
        """End the current call. Does nothing when there is no call."""
        session = self.session
        if session is None or session.ended:
            logger.debug("hangup: no call in progress")
            return
        logger.info(f"Hanging up call {session.call_id[:8]}...")
        await self._end(session, "local_hangup")

    def toggle_mute(self) -> bool:
        """Flip the microphone track; returns the new muted flag."""
        session = self._require_media()
        track = session.local_stream.audio_track
        track.enabled = not track.enabled
        session.muted = not track.enabled
        logger.info(f"Microphone {'muted' if session.muted else 'unmuted'}")
        return session.muted

    def toggle_video(self) -> bool:
        """Flip the camera track; returns the new video_enabled flag."""
        session = self._require_media()
        track = session.local_stream.video_track
        if track is None:
            raise CallStateError("Audio-only call has no camera")
        track.enabled = not track.enabled
        session.video_enabled = track.enabled
        logger.info(f"Camera {'enabled' if session.video_enabled else 'disabled'}")
        return session.video_enabled

    async def start_screen_share(self) -> bool:
        """
        Send the screen instead of the camera.

        Returns False when screen capture could not be acquired; the call
        continues with the camera.
        """
        session = self._require_media(CallPhase.ACTIVE)
        if session.kind != "video":
            raise CallStateError("Screen sharing requires a video call")
        if session.screen_sharing:
            return True

        try:
            screen = await self.acquirer.acquire_screen()
        except DeviceError as exc:
            logger.error(f"Failed to share screen: {exc}")
            if self.on_error:
                self.on_error(session, exc)
            return False

        if not self._is_current(session) or session.screen_sharing:
            screen.release()
            return session.screen_sharing

        try:
            session.connection.replace_track("video", screen.video_track)
        except NegotiationError as exc:
            screen.release()
            await self._fail(session, exc)
            return False

        session.screen_stream = screen
        session.screen_sharing = True
        screen.on_ended(lambda: self._post("screen_ended", session, screen))
        logger.info("Screen sharing started")
        return True

    async def stop_screen_share(self) -> None:
        session = self._require_media()
        if not session.screen_sharing:
            return
        await self._restore_camera(session)

    # ---- session plumbing ------------------------------------------------

    def _begin(self, session: CallSession) -> None:
        self.session = session
        self._set_phase(CallPhase.REQUESTING, session)

    def _is_current(self, session: CallSession) -> bool:
        return self.session is session and not session.ended

    def _set_phase(self, phase: CallPhase, session: Optional[CallSession]) -> None:
        if self.phase == phase:
            return
        logger.info(f"Call phase: {self.phase.name} -> {phase.name}")
        self.phase = phase
        if self.on_state_changed:
            self.on_state_changed(phase, session)

    def _require_media(self, *phases: CallPhase) -> CallSession:
        allowed = phases or (CallPhase.CONNECTING, CallPhase.ACTIVE)
        session = self.session
        if (
            session is None
            or session.ended
            or self.phase not in allowed
            or session.local_stream is None
        ):
            raise CallStateError(f"Not available in phase {self.phase.name}")
        return session

    def _lookup_peer(self, room_id: str):
        if self.directory is None:
            return None
        return self.directory.other_participant(room_id)

    async def _acquire_media(self, session: CallSession) -> bool:
        # A superseded acquisition still in flight releases its devices
        # before the next one may open them.
        async with self._capture_lock:
            stream = await self.acquirer.acquire(session.kind)
            if not self._is_current(session):
                logger.info("Call ended while acquiring media, releasing it")
                stream.release()
                return False
        session.local_stream = stream
        session.muted = not stream.audio_track.enabled
        session.video_enabled = (
            stream.video_track is not None and stream.video_track.enabled
        )
        return True

    async def _open_connection(self, session: CallSession) -> PeerConnection:
        try:
            connection = self.connection_factory(self.stun_servers)
        except ValueError as exc:
            raise NegotiationError(f"Invalid connection settings: {exc}") from exc
        session.connection = connection

        connection.on_remote_track(
            lambda stream: self._post("remote_track", session, stream)
        )
        connection.on_local_candidate(
            lambda candidate: self._post("local_candidate", session, candidate)
        )
        connection.on_failed(lambda error: self._post("failed", session, error))

        for track in session.local_stream.tracks:
            connection.attach_local_track(track)

        for msg in self._early_candidates.pop(session.call_id, []):
            await self._add_candidate(session, msg)
        return connection

    async def _fail(self, session: CallSession, error: CallError) -> None:
        if session.ended:
            logger.debug(f"Ignoring {type(error).__name__} after call ended: {error}")
            return
        session.error = error
        logger.error(f"Call {session.call_id[:8]}... failed: {error}")
        await self._end(
            session,
            type(error).__name__,
            notify_remote=not isinstance(error, RelayUnavailable),
        )
        if self.on_error:
            self.on_error(session, error)

    async def _end(
        self, session: CallSession, reason: str, notify_remote: bool = True
    ) -> None:
        if session.ended:
            return
        session.ended = True
        session.end_reason = reason
        if self.session is session:
            self._set_phase(CallPhase.ENDED, session)
        logger.info(f"Call {session.call_id[:8]}... ended ({reason})")

        await self._release(session)

        if notify_remote and session.remote_aware:
            try:
                await self.relay.send(
                    session.room_id,
                    build_hangup(session.room_id, session.call_id, self.local_id),
                )
            except RelayUnavailable as exc:
                logger.warning(f"Could not send hangup: {exc}")

    async def _release(self, session: CallSession) -> None:
        if session.released:
            return
        session.released = True
        session.screen_sharing = False
        if session.screen_stream:
            session.screen_stream.release()
        if session.local_stream:
            session.local_stream.release()
        if session.connection:
            await session.connection.close()

    async def _restore_camera(self, session: CallSession) -> None:
        screen = session.screen_stream
        session.screen_stream = None
        session.screen_sharing = False
        try:
            session.connection.replace_track("video", session.local_stream.video_track)
        except NegotiationError as exc:
            screen.release()
            await self._fail(session, exc)
            return
        screen.release()
        logger.info("Screen sharing stopped, camera restored")

    async def _add_candidate(self, session: CallSession, msg: SignalingMessage) -> None:
        try:
            candidate = msg.ice_candidate()
        except SignalingError as exc:
            logger.warning(f"Dropping candidate: {exc}")
            return
        await session.connection.add_remote_candidate(candidate)

    def _buffer_early_candidate(self, msg: SignalingMessage) -> None:
        self._early_candidates.setdefault(msg.call_id, []).append(msg)
        self._early_candidates.move_to_end(msg.call_id)
        while len(self._early_candidates) > MAX_EARLY_CALLS:
            self._early_candidates.popitem(last=False)
        logger.debug(f"Buffered early candidate for call {msg.call_id[:8]}...")

    async def _auto_accept(self, offer: SignalingMessage) -> None:
        """Runs beside the event consumer so a hangup can overtake it."""
        if self.pending_offer is not offer:
            return
        try:
            await self.accept_call(offer.room_id)
        except CallStateError as exc:
            logger.info(f"Not answering call {offer.call_id[:8]}...: {exc}")

    # ---- event queue -----------------------------------------------------

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.ensure_future(self._consume())

    def _post(self, event: str, target: Any, payload: Any) -> None:
        self._events.put_nowait((event, target, payload))
        self._ensure_consumer()

    async def _consume(self) -> None:
        while True:
            event, target, payload = await self._events.get()
            try:
                await self._dispatch(event, target, payload)
            except Exception:
                logger.exception(f"Error handling {event} event")
            finally:
                self._events.task_done()

    async def _dispatch(self, event: str, target: Any, payload: Any) -> None:
        if event == "signal":
            await self._on_signal(target, payload)
        elif event == "relay_error":
            await self._on_relay_error(target, payload)
        elif event == "remote_track":
            self._on_remote_track(target, payload)
        elif event == "local_candidate":
            await self._on_local_candidate(target, payload)
        elif event == "failed":
            if self._is_current(target):
                await self._fail(target, payload)
        elif event == "screen_ended":
            session = target
            if self._is_current(session) and session.screen_stream is payload:
                logger.info("Screen capture ended")
                await self._restore_camera(session)

    def _on_remote_track(self, session: CallSession, stream: RemoteStream) -> None:
        if not self._is_current(session):
            return
        session.remote_stream = stream
        if self.phase == CallPhase.CONNECTING:
            self._set_phase(CallPhase.ACTIVE, session)
            if self.directory is not None:
                self.directory.record_call(session.room_id)

    async def _on_local_candidate(
        self, session: CallSession, candidate: Optional[RTCIceCandidate]
    ) -> None:
        if not self._is_current(session):
            return
        try:
            await self.relay.send(
                session.room_id,
                build_candidate(
                    session.room_id, session.call_id, self.local_id, candidate
                ),
            )
        except RelayUnavailable as exc:
            await self._fail(session, exc)

    async def _on_relay_error(self, room_id: str, error: RelayUnavailable) -> None:
        logger.error(f"Signaling for room {room_id} lost: {error}")
        sub = self._subscriptions.pop(room_id, None)
        if sub:
            sub.close()
        if self.pending_offer and self.pending_offer.room_id == room_id:
            self.pending_offer = None
        session = self.session
        if session and not session.ended and session.room_id == room_id:
            await self._fail(session, error)
        if self.on_relay_lost:
            self.on_relay_lost(room_id, error)

    async def _on_signal(self, room_id: str, msg: SignalingMessage) -> None:
        session = self.session if self.in_call else None
        allowed, reason = self._filter.evaluate(
            msg, room_id, session.call_id if session else None
        )
        if not allowed:
            logger.debug(f"Dropped {msg.msg_type} from {msg.from_id[:8]}...: {reason}")
            return

        if self.directory is not None:
            self.directory.add_or_update(room_id, msg.from_id, msg.display_name)

        if session is None:
            await self._on_idle_signal(msg)
            return

        if msg.msg_type == "offer":
            logger.debug(f"Ignoring repeated offer for call {msg.call_id[:8]}...")
        elif msg.msg_type == "answer":
            await self._on_answer(session, msg)
        elif msg.msg_type == "candidate":
            if session.connection is None:
                self._buffer_early_candidate(msg)
            else:
                await self._add_candidate(session, msg)
        elif msg.msg_type == "hangup":
            logger.info(f"Remote ended call {session.call_id[:8]}...")
            await self._end(session, msg.reason or "remote_hangup", notify_remote=False)

    async def _on_answer(self, session: CallSession, msg: SignalingMessage) -> None:
        if not session.initiated_by_local or session.answered:
            logger.debug(f"Ignoring answer for call {session.call_id[:8]}...")
            return
        if session.connection is None:
            logger.warning("Answer received before the offer was sent")
            return
        session.answered = True
        logger.info(f"Answer received for call {session.call_id[:8]}...")
        try:
            await session.connection.set_remote_description(msg.session_description())
        except CallError as exc:
            await self._fail(session, exc)

    async def _on_idle_signal(self, msg: SignalingMessage) -> None:
        if msg.msg_type == "offer":
            if self.pending_offer and self.pending_offer.call_id != msg.call_id:
                logger.info(
                    f"Replacing pending call {self.pending_offer.call_id[:8]}..."
                )
            self.pending_offer = msg
            logger.info(
                f"Incoming {msg.kind} call {msg.call_id[:8]}... in room {msg.room_id}"
            )
            if self.on_incoming_call:
                self.on_incoming_call(msg.room_id, msg.call_id, msg.kind)
            if self.auto_answer and self.pending_offer is msg:
                task = asyncio.ensure_future(self._auto_accept(msg))
                self._accepts.add(task)
                task.add_done_callback(self._accepts.discard)
        elif msg.msg_type == "candidate":
            if self.session is not None and self.session.call_id == msg.call_id:
                return  # late candidate of a finished call
            self._buffer_early_candidate(msg)
        elif msg.msg_type == "hangup":
            if self.pending_offer and self.pending_offer.call_id == msg.call_id:
                logger.info(f"Caller cancelled call {msg.call_id[:8]}...")
                self.pending_offer = None
            self._early_candidates.pop(msg.call_id, None)
