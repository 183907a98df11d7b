import asyncio
import fractions
from typing import Optional

import numpy as np
from aiortc import (
    AudioStreamTrack,
    MediaStreamTrack,
    RTCIceCandidate,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from peercall.core.call_state import CallPhase
from peercall.core.errors import DeviceError, NegotiationError
from peercall.core.media import MediaAcquirer
from peercall.core.peer import RemoteStream
from peercall.core.signaling import SignalingMessage

FAKE_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"


def make_candidate(port: int = 5000, mid: Optional[str] = "0") -> RTCIceCandidate:
    return RTCIceCandidate(
        component=1,
        foundation="1",
        ip="192.0.2.1",
        port=port,
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid=mid,
        sdpMLineIndex=0,
    )


class ToneTrack(MediaStreamTrack):
    """Audio source with non-zero samples; ends after `frames` frames when given."""

    kind = "audio"

    def __init__(self, frames: Optional[int] = None, value: int = 1000):
        super().__init__()
        self.frames = frames
        self.value = value
        self.sent = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        if self.frames is not None and self.sent >= self.frames:
            self.stop()
            raise MediaStreamError
        pcm = np.full((1, 960), self.value, dtype=np.int16)
        frame = AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
        frame.sample_rate = 48000
        frame.pts = self.sent * 960
        frame.time_base = fractions.Fraction(1, 48000)
        self.sent += 1
        return frame


class FakeBackend:
    """Capture backend producing synthetic tracks; records what it opened."""

    def __init__(
        self,
        deny_microphone: bool = False,
        deny_camera: bool = False,
        deny_screen: bool = False,
    ):
        self.deny_microphone = deny_microphone
        self.deny_camera = deny_camera
        self.deny_screen = deny_screen
        self.microphones: list[MediaStreamTrack] = []
        self.cameras: list[MediaStreamTrack] = []
        self.screens: list[MediaStreamTrack] = []

    def open_microphone(self):
        if self.deny_microphone:
            raise DeviceError("Permission denied: microphone")
        track = AudioStreamTrack()
        self.microphones.append(track)
        return track

    def open_camera(self):
        if self.deny_camera:
            raise DeviceError("Permission denied: camera")
        track = VideoStreamTrack()
        self.cameras.append(track)
        return track

    def open_screen(self):
        if self.deny_screen:
            raise DeviceError("Permission denied: screen")
        track = VideoStreamTrack()
        self.screens.append(track)
        return track

    @property
    def all_tracks(self) -> list[MediaStreamTrack]:
        return self.microphones + self.cameras + self.screens


class GatedAcquirer(MediaAcquirer):
    """Acquirer that holds every acquisition until the gate opens."""

    def __init__(self, backend: FakeBackend):
        super().__init__(backend=backend)
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def acquire(self, kind: str):
        self.waiting.set()
        await self.gate.wait()
        return await super().acquire(kind)


class FakeConnection:
    """Stands in for PeerConnection; counts calls and buffers candidates."""

    def __init__(self, stun_servers: list[str]):
        self.stun_servers = stun_servers
        self.tracks: dict[str, MediaStreamTrack] = {}
        self.senders_created = 0
        self.close_calls = 0
        self.closed = False
        self.local_description: Optional[RTCSessionDescription] = None
        self.remote_description: Optional[RTCSessionDescription] = None
        self.pending_candidates: list = []
        self.applied_candidates: list = []
        self.fail_on: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.local_candidates = [make_candidate()]

        self._on_remote_track = None
        self._on_local_candidate = None
        self._on_failed = None

    def on_remote_track(self, callback):
        self._on_remote_track = callback

    def on_local_candidate(self, callback):
        self._on_local_candidate = callback

    def on_failed(self, callback):
        self._on_failed = callback

    def attach_local_track(self, track):
        if track.kind not in self.tracks:
            self.senders_created += 1
        self.tracks[track.kind] = track

    def replace_track(self, kind, track):
        if kind not in self.tracks:
            raise NegotiationError(f"No {kind} sender to replace")
        self.tracks[kind] = track

    def outbound_tracks(self, kind=None):
        return [t for k, t in self.tracks.items() if kind is None or k == kind]

    async def _step(self, name: str):
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if name in self.fail_on:
            raise NegotiationError(f"{name} failed")

    async def create_offer(self):
        await self._step("create_offer")
        return RTCSessionDescription(sdp=FAKE_SDP, type="offer")

    async def create_answer(self):
        await self._step("create_answer")
        return RTCSessionDescription(sdp=FAKE_SDP, type="answer")

    async def set_local_description(self, description):
        await self._step("set_local_description")
        self.local_description = description
        if self._on_local_candidate:
            for candidate in self.local_candidates:
                self._on_local_candidate(candidate)
            self._on_local_candidate(None)

    async def set_remote_description(self, description):
        await self._step("set_remote_description")
        self.remote_description = description
        self.applied_candidates.extend(self.pending_candidates)
        self.pending_candidates = []

    async def add_remote_candidate(self, candidate):
        if self.closed:
            return
        if self.remote_description is None:
            self.pending_candidates.append(candidate)
        else:
            self.applied_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.closed = True

    def emit_remote_track(self, kind: str = "audio") -> RemoteStream:
        stream = RemoteStream()
        stream.add_track(AudioStreamTrack() if kind == "audio" else VideoStreamTrack())
        self._on_remote_track(stream)
        return stream

    def fail(self):
        self._on_failed(NegotiationError("Peer connectivity failed"))


class ConnectionFactory:
    def __init__(self):
        self.connections: list[FakeConnection] = []
        self.configure = None

    def __call__(self, stun_servers):
        connection = FakeConnection(stun_servers)
        if self.configure:
            self.configure(connection)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class PhaseRecorder:
    def __init__(self, machine):
        self.phases: list[CallPhase] = []
        self.errors: list = []
        self.incoming: list[tuple] = []
        machine.on_state_changed = lambda phase, session: self.phases.append(phase)
        machine.on_error = lambda session, error: self.errors.append(error)
        machine.on_incoming_call = lambda *args: self.incoming.append(args)


def sent_by(relay, from_id: str = "local") -> list[SignalingMessage]:
    return [m for m in relay.sent if m.from_id == from_id]


def sent_types(relay, from_id: str = "local") -> list[str]:
    return [m.msg_type for m in sent_by(relay, from_id)]


async def settle(*machines, rounds: int = 5) -> None:
    """Let relay deliveries land and every machine handle its events."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for machine in machines:
            await machine.drain()


async def wait_for_phase(machine, recorder: PhaseRecorder, phase: CallPhase, timeout: float = 10.0):
    async def _wait():
        while phase not in recorder.phases:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout)


def inbound(msg_type: str, room_id: str, call_id: str, from_id: str = "remote", **fields) -> SignalingMessage:
    return SignalingMessage(
        msg_type=msg_type, room_id=room_id, call_id=call_id, from_id=from_id, **fields
    )
