from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from peercall.core.errors import RelayUnavailable, SignalingError
from peercall.core.relay import ErrorCallback, MessageCallback, Subscription
from peercall.core.signaling import SignalingMessage
from peercall.logging_config import get_logger

logger = get_logger("core.websocket_relay")

TOPIC_PREFIX = "call:"


def room_topic(room_id: str) -> str:
    return f"{TOPIC_PREFIX}{room_id}"


class WebSocketRelay:
    """
    Signaling relay over a room-topic broadcast websocket.

    One websocket carries every room. Frames are JSON objects:
      {"type": "join", "topic": "call:<room>"}
      {"type": "leave", "topic": "call:<room>"}
      {"type": "broadcast", "topic": "call:<room>", "payload": {...}}
    The server fans a broadcast out to the other members of the topic.
    Nothing is buffered or replayed across an outage: when the socket drops,
    every subscriber is told the relay is unavailable.
    """

    def __init__(
        self,
        url: str,
        connect: Callable[..., Any] = websockets.connect,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._connect = connect
        self.open_timeout = open_timeout

        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self.url), timeout=self.open_timeout
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            raise RelayUnavailable(f"Failed to connect to relay {self.url}: {exc}") from exc

        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to signaling relay {self.url}")

    async def stop(self) -> None:
        logger.info("Stopping WebSocketRelay")
        ws, self._ws = self._ws, None
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if ws is not None:
            await ws.close()

    async def send(self, room_id: str, message: SignalingMessage) -> None:
        frame = {
            "type": "broadcast",
            "topic": room_topic(room_id),
            "payload": message.to_payload(),
        }
        await self._send_frame(frame)
        logger.debug(
            f"Sent {message.msg_type} for call {message.call_id[:8]}... to room {room_id}"
        )

    def subscribe(
        self,
        room_id: str,
        callback: MessageCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        if self._ws is None:
            raise RelayUnavailable("Relay not connected")

        sub = Subscription(room_id, callback, on_error, on_close=self._unsubscribe)
        subs = self._subscriptions.setdefault(room_id, [])
        first = not subs
        subs.append(sub)
        if first:
            self._spawn(self._join(sub))
        return sub

    async def _join(self, sub: Subscription) -> None:
        try:
            await self._send_frame({"type": "join", "topic": room_topic(sub.room_id)})
        except RelayUnavailable as exc:
            sub.fail(exc)
            return
        logger.info(f"Joined signaling topic {room_topic(sub.room_id)}")

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.room_id, [])
        if sub in subs:
            subs.remove(sub)
        if subs:
            return
        self._subscriptions.pop(sub.room_id, None)
        if self._ws is not None:
            self._spawn(self._leave(sub.room_id))

    async def _leave(self, room_id: str) -> None:
        try:
            await self._send_frame({"type": "leave", "topic": room_topic(room_id)})
        except RelayUnavailable as exc:
            logger.warning(f"Could not leave topic {room_topic(room_id)}: {exc}")

    async def _send_frame(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise RelayUnavailable("Relay not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except (WebSocketException, OSError) as exc:
            raise RelayUnavailable(f"Failed to send to relay: {exc}") from exc

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            logger.warning(f"Relay connection closed: {exc}")
        except (WebSocketException, OSError) as exc:
            logger.error(f"Relay connection failed: {exc}")

        if self._ws is ws:
            self._ws = None
            self._fail_all(RelayUnavailable("Relay connection lost"))

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except ValueError as exc:
            logger.error(f"Failed to parse relay frame: {exc}")
            return

        if not isinstance(frame, dict) or frame.get("type") != "broadcast":
            logger.debug(f"Ignoring relay frame: {frame!r}")
            return

        topic = frame.get("topic", "")
        if not topic.startswith(TOPIC_PREFIX):
            return
        room_id = topic[len(TOPIC_PREFIX):]

        try:
            msg = SignalingMessage.from_payload(frame.get("payload") or {})
        except SignalingError as exc:
            logger.error(f"Failed to parse signaling message: {exc}")
            return

        for sub in list(self._subscriptions.get(room_id, [])):
            sub.deliver(msg)

    def _fail_all(self, error: RelayUnavailable) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.fail(error)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
