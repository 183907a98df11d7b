"""
Local media acquisition.

A call needs a microphone track, plus a camera track for video calls. Screen
capture is acquired separately, only while a call is active.

Capture pipeline:
- Microphone: sounddevice RawInputStream (int16, 48 kHz, 20 ms blocks) → av.AudioFrame
- Camera/screen: FFmpeg input device through aiortc's MediaPlayer

Every track handed to the connection is wrapped in a LocalTrack so it can be
muted or blanked in place without renegotiating.
"""

from __future__ import annotations

import asyncio
import platform
import queue
from fractions import Fraction
from typing import Callable, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from av.error import FFmpegError

from peercall.core.errors import DeviceError
from peercall.core.signaling import CALL_KINDS
from peercall.logging_config import get_logger

logger = get_logger("core.media")

try:
    import sounddevice as sd  # type: ignore
except (ImportError, OSError):  # pragma: no cover
    # OSError: the PortAudio shared library is missing
    sd = None  # type: ignore

DEFAULT_SAMPLE_RATE = 48000
DEFAULT_FRAME_MS = 20
DEFAULT_CHANNELS = 1
DEFAULT_FRAME_SIZE = int(DEFAULT_SAMPLE_RATE * DEFAULT_FRAME_MS / 1000)
FILLER_FRAME_RATE = 30


def default_camera() -> tuple[str, str]:
    """FFmpeg (device, format) of the platform's default camera."""
    system = platform.system()
    if system == "Darwin":
        return "default:none", "avfoundation"
    if system == "Windows":
        return "video=Integrated Camera", "dshow"
    return "/dev/video0", "v4l2"


def default_screen() -> tuple[str, str]:
    """FFmpeg (device, format) capturing the whole primary screen."""
    system = platform.system()
    if system == "Darwin":
        return "Capture screen 0", "avfoundation"
    if system == "Windows":
        return "desktop", "gdigrab"
    return ":0.0", "x11grab"


class SoundDeviceAudioTrack(MediaStreamTrack):
    """Microphone capture through a PortAudio input stream."""

    kind = "audio"

    def __init__(
        self,
        device: Optional[int] = None,
        samplerate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        blocksize: int = DEFAULT_FRAME_SIZE,
    ) -> None:
        super().__init__()
        if sd is None:
            raise DeviceError("sounddevice is not available")

        self._samplerate = samplerate
        self._channels = channels
        self._queue: queue.Queue[Optional[bytes]] = queue.Queue(maxsize=50)
        self._timestamp = 0
        self._time_base = Fraction(1, samplerate)

        try:
            self._stream = sd.RawInputStream(
                samplerate=samplerate,
                channels=channels,
                dtype="int16",
                blocksize=blocksize,
                device=device,
                callback=self._on_audio,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"Failed to open microphone (device={device}): {exc}") from exc

        logger.info(
            f"Microphone opened: device={device} rate={samplerate} channels={channels}"
        )

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")
        try:
            self._queue.put_nowait(bytes(indata))
        except queue.Full:
            pass  # consumer too slow, drop the block

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._queue.get)
        if data is None:
            raise MediaStreamError

        samples = len(data) // (2 * self._channels)
        pcm = np.frombuffer(data, dtype=np.int16).reshape(1, -1)
        frame = av.AudioFrame.from_ndarray(
            pcm, format="s16", layout="mono" if self._channels == 1 else "stereo"
        )
        frame.sample_rate = self._samplerate
        frame.pts = self._timestamp
        frame.time_base = self._time_base
        self._timestamp += samples
        return frame

    def stop(self) -> None:
        if self.readyState == "live":
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                logger.warning(f"Error closing microphone: {exc}")
            # Wake up a pending recv()
            try:
                self._queue.put_nowait(None)
            except queue.Full:
                pass
            logger.info("Microphone closed")
        super().stop()


class LocalTrack(MediaStreamTrack):
    """
    Outbound track with an enabled switch.

    When disabled, audio frames are replaced by silence and video frames by
    black frames of the same size and timestamp. Stopping the track stops the
    source.

    When the source ends on its own the track emits "source_ended" and keeps
    producing blank frames until it is stopped. An RTP sender stops reading
    for good once its track fails, so the sender stays usable for a
    replacement track.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        self.source_ended = False
        self._last_frame = None
        source.on("ended", self._on_source_ended)

    def _on_source_ended(self) -> None:
        if self.source_ended or self.readyState != "live":
            return
        self.source_ended = True
        logger.info(f"Capture of {self.kind} track {self.id[:8]}... ended")
        self.emit("source_ended")

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        if not self.source_ended:
            try:
                frame = await self.source.recv()
            except MediaStreamError:
                self._on_source_ended()
            else:
                self._last_frame = frame
                if self.enabled:
                    return frame
                return self._blank(frame)

        if self._last_frame is None or self.readyState != "live":
            raise MediaStreamError
        return await self._next_filler()

    def _blank(self, frame):
        if self.kind == "audio":
            return _silence_like(frame)
        return _black_like(frame)

    async def _next_filler(self):
        last = self._last_frame
        if self.kind == "audio":
            duration = last.samples / last.sample_rate
        else:
            duration = 1 / FILLER_FRAME_RATE

        blank = self._blank(last)
        if last.pts is not None and last.time_base:
            blank.pts = last.pts + round(duration / last.time_base)
        self._last_frame = blank
        await asyncio.sleep(duration)
        return blank

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    blank = av.AudioFrame.from_ndarray(
        np.zeros_like(frame.to_ndarray()),
        format=frame.format.name,
        layout=frame.layout.name,
    )
    blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _black_like(frame: av.VideoFrame) -> av.VideoFrame:
    blank = av.VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class LocalStream:
    """The captured tracks of one call. Owned by exactly one session."""

    def __init__(
        self,
        kind: str,
        audio_track: Optional[LocalTrack] = None,
        video_track: Optional[LocalTrack] = None,
    ) -> None:
        self.kind = kind
        self.audio_track = audio_track
        self.video_track = video_track
        self.released = False

    @property
    def tracks(self) -> list[LocalTrack]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]

    def release(self) -> None:
        """Stop every track. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        for track in self.tracks:
            track.stop()
        logger.debug(f"Released {self.kind} stream")


class ScreenStream(LocalStream):
    """A screen capture stream; a single video track."""

    def __init__(self, video_track: LocalTrack) -> None:
        super().__init__("screen", video_track=video_track)

    def on_ended(self, callback: Callable[[], None]) -> None:
        """Register a callback for the capture ending on its own."""

        def _ended() -> None:
            if not self.released:
                callback()

        self.video_track.on("source_ended", _ended)


def live_view(source: MediaStreamTrack, relay: MediaRelay) -> MediaStreamTrack:
    """
    Latest-frame view of a capture device.

    MediaPlayer queues every captured frame until someone reads it. Once the
    relay has started, it keeps reading the device and holds only the newest
    frame, so a camera left idle during screen sharing resumes live. Stopping
    the view stops the device.
    """
    view = relay.subscribe(source, buffered=False)
    view.on("ended", source.stop)
    return view


class DeviceBackend:
    """
    Opens capture devices. Every method blocks and raises DeviceError.
    """

    def __init__(
        self,
        audio_input_device: Optional[int] = None,
        video_device: Optional[str] = None,
        video_format: Optional[str] = None,
        video_size: str = "640x480",
        framerate: int = 30,
        screen_device: Optional[str] = None,
        screen_format: Optional[str] = None,
    ) -> None:
        self.audio_input_device = audio_input_device
        self.video_device = video_device
        self.video_format = video_format
        self.video_size = video_size
        self.framerate = framerate
        self.screen_device = screen_device
        self.screen_format = screen_format
        self._relay = MediaRelay()

    @classmethod
    def from_config(cls, config) -> "DeviceBackend":
        return cls(
            audio_input_device=config.audio_input_device,
            video_device=config.video_device,
            video_format=config.video_format,
            video_size=config.video_size,
            framerate=config.framerate,
            screen_device=config.screen_device,
            screen_format=config.screen_format,
        )

    def open_microphone(self) -> MediaStreamTrack:
        return SoundDeviceAudioTrack(device=self.audio_input_device)

    def open_camera(self) -> MediaStreamTrack:
        device, fmt = default_camera()
        return self._open_video(
            self.video_device or device, self.video_format or fmt, "camera"
        )

    def open_screen(self) -> MediaStreamTrack:
        device, fmt = default_screen()
        return self._open_video(
            self.screen_device or device, self.screen_format or fmt, "screen"
        )

    def _open_video(self, device: str, fmt: str, label: str) -> MediaStreamTrack:
        options = {"video_size": self.video_size, "framerate": str(self.framerate)}
        try:
            player = MediaPlayer(device, format=fmt, options=options)
        except (FFmpegError, OSError) as exc:
            raise DeviceError(f"Failed to open {label} {device} ({fmt}): {exc}") from exc

        if player.video is None:
            raise DeviceError(f"{label.capitalize()} {device} ({fmt}) has no video")
        logger.info(f"Opened {label}: {device} ({fmt}) {self.video_size}@{self.framerate}")
        return live_view(player.video, self._relay)


class MediaAcquirer:
    """
    The permission boundary: one fallible call returning a stream.

    Device opening blocks, so it runs in the default executor.
    """

    def __init__(self, config=None, backend: Optional[DeviceBackend] = None) -> None:
        if backend is None:
            backend = DeviceBackend.from_config(config) if config else DeviceBackend()
        self.backend = backend

    async def acquire(self, kind: str) -> LocalStream:
        """
        Capture microphone (and camera for video calls).

        Raises:
            DeviceError: a device is denied, missing, or unusable
        """
        if kind not in CALL_KINDS:
            raise ValueError(f"Unknown call kind: {kind}")

        loop = asyncio.get_running_loop()
        microphone = await loop.run_in_executor(None, self.backend.open_microphone)

        camera = None
        if kind == "video":
            try:
                camera = await loop.run_in_executor(None, self.backend.open_camera)
            except DeviceError:
                microphone.stop()
                raise

        stream = LocalStream(
            kind,
            audio_track=LocalTrack(microphone),
            video_track=LocalTrack(camera) if camera is not None else None,
        )
        logger.info(f"Acquired {kind} stream ({len(stream.tracks)} tracks)")
        return stream

    async def acquire_screen(self) -> ScreenStream:
        """
        Capture the screen.

        Raises:
            DeviceError: screen capture is denied or unavailable
        """
        loop = asyncio.get_running_loop()
        screen = await loop.run_in_executor(None, self.backend.open_screen)
        logger.info("Acquired screen stream")
        return ScreenStream(LocalTrack(screen))


class RemoteAudioPlayer:
    """Plays an inbound audio track on an output device."""

    def __init__(self, track: MediaStreamTrack, device: Optional[int] = None) -> None:
        self.track = track
        self.device = device
        self._stream = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """
        Raises:
            DeviceError: the output device cannot be opened
        """
        if sd is None:
            raise DeviceError("sounddevice is not available")
        try:
            self._stream = sd.RawOutputStream(
                samplerate=DEFAULT_SAMPLE_RATE,
                channels=DEFAULT_CHANNELS,
                dtype="int16",
                blocksize=DEFAULT_FRAME_SIZE,
                device=self.device,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"Failed to open audio output (device={self.device}): {exc}") from exc

        self._task = asyncio.ensure_future(self._play())
        logger.info(f"Playing remote audio on device={self.device}")

    async def _play(self) -> None:
        loop = asyncio.get_running_loop()
        resampler = av.AudioResampler(
            format="s16", layout="mono", rate=DEFAULT_SAMPLE_RATE
        )
        while True:
            try:
                frame = await self.track.recv()
            except MediaStreamError:
                logger.info("Remote audio ended")
                return
            for out in resampler.resample(frame):
                await loop.run_in_executor(
                    None, self._stream.write, out.to_ndarray().tobytes()
                )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                logger.warning(f"Error closing audio output: {exc}")
            self._stream = None
