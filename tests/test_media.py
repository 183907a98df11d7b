import asyncio

import numpy as np
import pytest
from aiortc import VideoStreamTrack
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

from peercall.core.errors import DeviceError
from peercall.core.media import LocalTrack, MediaAcquirer, ScreenStream, live_view
from tests.helpers import FakeBackend, ToneTrack


@pytest.mark.asyncio
async def test_acquire_audio():
    backend = FakeBackend()
    stream = await MediaAcquirer(backend=backend).acquire("audio")

    assert stream.kind == "audio"
    assert stream.audio_track.kind == "audio"
    assert stream.video_track is None
    assert len(backend.microphones) == 1
    assert backend.cameras == []
    stream.release()


@pytest.mark.asyncio
async def test_acquire_video():
    backend = FakeBackend()
    stream = await MediaAcquirer(backend=backend).acquire("video")

    assert [t.kind for t in stream.tracks] == ["audio", "video"]
    assert stream.video_track.source is backend.cameras[0]
    stream.release()


@pytest.mark.asyncio
async def test_acquire_rejects_unknown_kind():
    with pytest.raises(ValueError):
        await MediaAcquirer(backend=FakeBackend()).acquire("hologram")


@pytest.mark.asyncio
async def test_denied_microphone_raises():
    with pytest.raises(DeviceError):
        await MediaAcquirer(backend=FakeBackend(deny_microphone=True)).acquire("audio")


@pytest.mark.asyncio
async def test_denied_camera_releases_microphone():
    backend = FakeBackend(deny_camera=True)

    with pytest.raises(DeviceError):
        await MediaAcquirer(backend=backend).acquire("video")

    assert len(backend.microphones) == 1
    assert backend.microphones[0].readyState == "ended"


@pytest.mark.asyncio
async def test_release_stops_sources_once():
    backend = FakeBackend()
    stream = await MediaAcquirer(backend=backend).acquire("video")

    stream.release()
    stream.release()

    assert stream.released
    for track in stream.tracks:
        assert track.readyState == "ended"
    for track in backend.all_tracks:
        assert track.readyState == "ended"


@pytest.mark.asyncio
async def test_disabled_audio_track_sends_silence():
    track = LocalTrack(ToneTrack())

    live = await track.recv()
    track.enabled = False
    muted = await track.recv()

    assert live.to_ndarray().any()
    assert not muted.to_ndarray().any()
    assert muted.pts == 960
    assert muted.samples == live.samples
    track.stop()


@pytest.mark.asyncio
async def test_disabled_video_track_sends_black():
    track = LocalTrack(VideoStreamTrack())
    track.enabled = False

    frame = await track.recv()

    assert frame.format.name == "rgb24"
    assert (frame.width, frame.height) == (640, 480)
    assert not frame.to_ndarray().any()
    track.stop()


@pytest.mark.asyncio
async def test_source_end_keeps_track_alive():
    source = ToneTrack(frames=1)
    track = LocalTrack(source)
    events = []
    track.on("source_ended", lambda: events.append("ended"))

    first = await track.recv()
    filler = await track.recv()

    assert events == ["ended"]
    assert track.source_ended
    assert track.readyState == "live"
    assert filler.pts == first.pts + 960
    assert np.array_equal(filler.to_ndarray(), np.zeros((1, 960), dtype=np.int16))

    track.stop()
    with pytest.raises(MediaStreamError):
        await track.recv()


@pytest.mark.asyncio
async def test_source_ending_before_first_frame_ends_track():
    source = ToneTrack(frames=0)
    track = LocalTrack(source)

    with pytest.raises(MediaStreamError):
        await track.recv()
    assert track.source_ended
    track.stop()


@pytest.mark.asyncio
async def test_screen_stream_reports_capture_end():
    source = VideoStreamTrack()
    screen = ScreenStream(LocalTrack(source))
    ended = []
    screen.on_ended(lambda: ended.append(True))

    source.stop()
    await asyncio.sleep(0)

    assert ended == [True]
    assert screen.video_track.readyState == "live"
    screen.release()


@pytest.mark.asyncio
async def test_screen_stream_release_is_not_an_end():
    screen = ScreenStream(LocalTrack(VideoStreamTrack()))
    ended = []
    screen.on_ended(lambda: ended.append(True))

    screen.release()
    await asyncio.sleep(0)

    assert ended == []
    assert screen.video_track.source.readyState == "ended"


@pytest.mark.asyncio
async def test_acquire_screen_denied():
    with pytest.raises(DeviceError):
        await MediaAcquirer(backend=FakeBackend(deny_screen=True)).acquire_screen()


@pytest.mark.asyncio
async def test_idle_camera_resumes_with_latest_frame():
    source = VideoStreamTrack()
    view = live_view(source, MediaRelay())

    first = await view.recv()
    await asyncio.sleep(0.25)
    resumed = await view.recv()

    # 30 fps on a 90 kHz clock: an unread backlog would hand back the next frame
    assert resumed.pts - first.pts >= 3 * 3000
    view.stop()
    assert source.readyState == "ended"
