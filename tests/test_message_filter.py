from peercall.core.message_filter import SignalingFilter
from tests.helpers import inbound


def test_accepts_message_for_current_call():
    f = SignalingFilter("local")
    assert f.evaluate(inbound("answer", "room-1", "call-1", sdp="x"), "room-1", "call-1") == (
        True,
        "ok",
    )


def test_accepts_offer_when_idle():
    f = SignalingFilter("local")
    msg = inbound("offer", "room-1", "call-1", sdp="x", kind="audio")
    assert f.evaluate(msg, "room-1", None) == (True, "ok")


def test_drops_own_messages():
    f = SignalingFilter("local")
    msg = inbound("offer", "room-1", "call-1", from_id="local", sdp="x", kind="audio")
    assert f.evaluate(msg, "room-1", None) == (False, "own_message")


def test_drops_wrong_room():
    f = SignalingFilter("local")
    msg = inbound("hangup", "room-2", "call-1")
    assert f.evaluate(msg, "room-1", None) == (False, "wrong_room")


def test_drops_redelivered_message():
    f = SignalingFilter("local")
    msg = inbound("candidate", "room-1", "call-1", candidate="")

    assert f.evaluate(msg, "room-1", "call-1")[0]
    assert f.evaluate(msg, "room-1", "call-1") == (False, "duplicate")


def test_busy_and_foreign_call():
    f = SignalingFilter("local")
    offer = inbound("offer", "room-1", "call-2", sdp="x", kind="audio")
    hangup = inbound("hangup", "room-1", "call-2")

    assert f.evaluate(offer, "room-1", "call-1") == (False, "busy")
    assert f.evaluate(hangup, "room-1", "call-1") == (False, "foreign_call")


def test_remembers_only_recent_ids():
    f = SignalingFilter("local", max_remembered=2)
    first = inbound("hangup", "room-1", "call-1")
    f.evaluate(first, "room-1", None)
    f.evaluate(inbound("hangup", "room-1", "call-2"), "room-1", None)
    f.evaluate(inbound("hangup", "room-1", "call-3"), "room-1", None)

    assert f.evaluate(first, "room-1", None) == (True, "ok")
