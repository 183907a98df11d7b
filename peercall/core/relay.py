"""
Signaling relay capability.

The call state machine only needs two things from the out-of-band channel:
fire-and-forget delivery of a message to the other participant of a room,
and a subscription to the messages of a room. Delivery is at least once,
with no ordering guarantee across message types.

LoopbackRelay is an in-process implementation used by tests and local demos.
"""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Optional, Protocol

from peercall.core.errors import RelayUnavailable, SignalingError
from peercall.core.signaling import SignalingMessage
from peercall.logging_config import get_logger

logger = get_logger("core.relay")

MessageCallback = Callable[[SignalingMessage], None]
ErrorCallback = Callable[[RelayUnavailable], None]


class Subscription:
    """Handle for one room subscription; closing it stops delivery."""

    def __init__(
        self,
        room_id: str,
        callback: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.room_id = room_id
        self.callback = callback
        self.on_error = on_error
        self._on_close = on_close
        self.closed = False

    def deliver(self, msg: SignalingMessage) -> None:
        if self.closed:
            return
        self.callback(msg)

    def fail(self, error: RelayUnavailable) -> None:
        if self.closed:
            return
        if self.on_error:
            self.on_error(error)
        else:
            logger.error(f"Relay failure on room {self.room_id}: {error}")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close:
            self._on_close(self)


class SignalingRelay(Protocol):
    """
    Interface for the out-of-band signaling channel.
    """

    async def send(self, room_id: str, message: SignalingMessage) -> None:
        """
        Deliver a message to the other participants of a room.

        Raises:
            RelayUnavailable: the channel cannot accept the message
        """
        ...

    def subscribe(
        self,
        room_id: str,
        callback: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """
        Start delivering inbound messages of a room to callback.

        Raises:
            RelayUnavailable: the channel cannot be subscribed to
        """
        ...


class LoopbackRelay:
    """
    In-process relay. Messages are JSON round-tripped like on the wire and
    delivered on a later loop iteration, never synchronously inside send().
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}
        self.online = True
        self.sent: list[SignalingMessage] = []

    async def send(self, room_id: str, message: SignalingMessage) -> None:
        if not self.online:
            raise RelayUnavailable("Loopback relay is offline")

        self.sent.append(message)
        raw = json.dumps(message.to_payload())
        loop = asyncio.get_running_loop()
        for sub in list(self._subscriptions.get(room_id, [])):
            loop.call_soon(self._deliver, sub, raw)

    def subscribe(
        self,
        room_id: str,
        callback: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        if not self.online:
            raise RelayUnavailable("Loopback relay is offline")

        sub = Subscription(room_id, callback, on_error, on_close=self._unsubscribe)
        self._subscriptions.setdefault(room_id, []).append(sub)
        logger.debug(f"Subscribed to room {room_id}")
        return sub

    def go_offline(self) -> None:
        """Simulate an outage: every subscriber is told the relay is gone."""
        self.online = False
        error = RelayUnavailable("Loopback relay went offline")
        for subs in self._subscriptions.values():
            for sub in list(subs):
                sub.fail(error)

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscriptions.get(room_id, []))

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.room_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(sub.room_id, None)

    def _deliver(self, sub: Subscription, raw: str) -> None:
        try:
            msg = SignalingMessage.from_payload(json.loads(raw))
        except SignalingError as exc:
            logger.error(f"Failed to parse signaling message: {exc}")
            return
        sub.deliver(msg)
