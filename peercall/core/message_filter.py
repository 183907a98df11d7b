from __future__ import annotations

from collections import OrderedDict
from typing import Optional, Tuple

from peercall.core.signaling import SignalingMessage

Decision = Tuple[bool, str]


class SignalingFilter:
    """
    Stateless-ish helper that enforces basic validation and duplicate suppression
    for signaling messages before they are handed to the state machine.

    The relay delivers at least once, so redelivered messages are recognised
    by their message id. Only the most recent ``max_remembered`` ids are kept.
    """

    def __init__(self, local_id: str, max_remembered: int = 1024) -> None:
        self.local_id = local_id
        self.max_remembered = max_remembered
        self._recent: OrderedDict[str, None] = OrderedDict()

    def evaluate(
        self,
        msg: SignalingMessage,
        room_id: str,
        current_call_id: Optional[str],
    ) -> Decision:
        """
        Returns (allowed, reason).
        Reasons (when allowed is False):
        - own_message
        - wrong_room
        - duplicate
        - busy
        - foreign_call
        """

        if msg.from_id == self.local_id:
            return False, "own_message"

        if msg.room_id != room_id:
            return False, "wrong_room"

        if msg.message_id in self._recent:
            self._recent.move_to_end(msg.message_id)
            return False, "duplicate"
        self._recent[msg.message_id] = None
        while len(self._recent) > self.max_remembered:
            self._recent.popitem(last=False)

        if current_call_id is not None and msg.call_id != current_call_id:
            if msg.msg_type == "offer":
                return False, "busy"
            return False, "foreign_call"

        return True, "ok"
