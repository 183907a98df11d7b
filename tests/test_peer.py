import pytest
from aiortc import (
    AudioStreamTrack,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)

from peercall.core.errors import NegotiationError
from peercall.core.peer import create_connection
from tests.helpers import make_candidate


def test_create_connection_rejects_turn():
    with pytest.raises(ValueError):
        create_connection(["turn:turn.example.com:3478"])


@pytest.mark.asyncio
async def test_attaching_same_kind_replaces_track():
    connection = create_connection([])
    first, second = AudioStreamTrack(), AudioStreamTrack()

    connection.attach_local_track(first)
    connection.attach_local_track(second)

    assert connection.outbound_tracks("audio") == [second]
    assert len(connection.pc.getSenders()) == 1
    await connection.close()


@pytest.mark.asyncio
async def test_replace_track_keeps_single_video_track():
    connection = create_connection([])
    microphone, camera, screen = AudioStreamTrack(), VideoStreamTrack(), VideoStreamTrack()
    connection.attach_local_track(microphone)
    connection.attach_local_track(camera)

    connection.replace_track("video", screen)

    assert connection.outbound_tracks("video") == [screen]
    assert connection.outbound_tracks("audio") == [microphone]
    assert len(connection.pc.getSenders()) == 2

    connection.replace_track("video", camera)
    assert connection.outbound_tracks("video") == [camera]
    await connection.close()


@pytest.mark.asyncio
async def test_replace_track_without_sender():
    connection = create_connection([])
    connection.attach_local_track(AudioStreamTrack())

    with pytest.raises(NegotiationError):
        connection.replace_track("video", VideoStreamTrack())
    await connection.close()


@pytest.mark.asyncio
async def test_offer_answer_with_buffered_candidates():
    caller = create_connection([])
    callee = create_connection([])
    caller.attach_local_track(AudioStreamTrack())

    caller_candidates = []
    caller.on_local_candidate(caller_candidates.append)
    offer = await caller.create_offer()
    await caller.set_local_description(offer)

    assert caller_candidates[-1] is None
    for candidate in caller_candidates[:-1]:
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    remote_streams = []
    callee.on_remote_track(remote_streams.append)

    await callee.add_remote_candidate(make_candidate())
    await callee.add_remote_candidate(None)
    assert len(callee._pending_candidates) == 2

    await callee.set_remote_description(caller.local_description)
    assert callee._pending_candidates == []
    assert len(remote_streams) == 1
    assert remote_streams[0].audio_track is not None

    callee.attach_local_track(AudioStreamTrack())
    assert len(callee.pc.getSenders()) == 1
    answer = await callee.create_answer()
    await callee.set_local_description(answer)
    await caller.set_remote_description(callee.local_description)

    assert caller.remote_stream is not None
    assert caller.remote_stream.audio_track.kind == "audio"

    await caller.close()
    await callee.close()


@pytest.mark.asyncio
async def test_offer_without_tracks_raises_negotiation_error():
    connection = create_connection([])

    with pytest.raises(NegotiationError):
        await connection.create_offer()
    await connection.close()


@pytest.mark.asyncio
async def test_unexpected_answer_raises_negotiation_error():
    other = create_connection([])
    other.attach_local_track(AudioStreamTrack())
    offer = await other.create_offer()
    connection = create_connection([])

    with pytest.raises(NegotiationError):
        await connection.set_remote_description(
            RTCSessionDescription(sdp=offer.sdp, type="answer")
        )
    await connection.close()
    await other.close()


@pytest.mark.asyncio
async def test_failed_state_reported_once(monkeypatch):
    connection = create_connection([])
    failures = []
    connection.on_failed(failures.append)

    monkeypatch.setattr(
        RTCPeerConnection, "connectionState", property(lambda self: "failed")
    )
    connection.pc.emit("connectionstatechange")
    connection.pc.emit("connectionstatechange")

    assert len(failures) == 1
    assert isinstance(failures[0], NegotiationError)
    monkeypatch.undo()
    await connection.close()


@pytest.mark.asyncio
async def test_close_is_idempotent():
    connection = create_connection([])
    connection.attach_local_track(AudioStreamTrack())

    await connection.close()
    await connection.close()
    await connection.add_remote_candidate(make_candidate())

    assert connection.closed
    assert connection._pending_candidates == []
