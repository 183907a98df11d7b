"""
Room directory.

Answers "who is the other participant of room X". Used only to label calls;
it carries no media and no signaling.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from peercall.logging_config import get_logger

logger = get_logger("directory")


class RoomRecord:
    """The other participant of a room."""

    def __init__(
        self,
        room_id: str,
        peer_id: str,
        display_name: str = "Unknown",
        last_call: datetime | None = None,
    ):
        self.room_id = room_id
        self.peer_id = peer_id
        self.display_name = display_name
        self.last_call = last_call

    @property
    def label(self) -> str:
        if self.display_name and self.display_name != "Unknown":
            return self.display_name
        return self.peer_id[:8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "peer_id": self.peer_id,
            "display_name": self.display_name,
            "last_call": self.last_call.isoformat() if self.last_call else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoomRecord:
        last_call = data.get("last_call")
        return cls(
            room_id=data["room_id"],
            peer_id=data["peer_id"],
            display_name=data.get("display_name", "Unknown"),
            last_call=datetime.fromisoformat(last_call) if last_call else None,
        )


class RoomDirectory:
    """Persistent room → participant records."""

    def __init__(self, storage_path: Path | None = None):
        """
        Args:
            storage_path: Path to rooms JSON file. If None, uses ~/.peercall/rooms.json
        """
        if storage_path is None:
            storage_dir = Path.home() / ".peercall"
            storage_dir.mkdir(exist_ok=True)
            storage_path = storage_dir / "rooms.json"

        self.storage_path = storage_path
        self.rooms: dict[str, RoomRecord] = {}

    def load(self) -> None:
        if not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            logger.error(f"Failed to parse rooms file {self.storage_path}: {exc}")
            return
        except OSError as exc:
            logger.error(f"Failed to read rooms file {self.storage_path}: {exc}")
            return

        if not isinstance(data, dict) or not isinstance(data.get("rooms"), list):
            logger.error(f"Invalid rooms file format in {self.storage_path}")
            return

        rooms: dict[str, RoomRecord] = {}
        for room_data in data["rooms"]:
            try:
                record = RoomRecord.from_dict(room_data)
            except (KeyError, ValueError, TypeError, AttributeError) as exc:
                logger.warning(f"Skipping invalid room record: {exc}")
                continue
            rooms[record.room_id] = record

        self.rooms = rooms
        logger.info(f"Loaded {len(self.rooms)} rooms from {self.storage_path}")

    def save(self) -> None:
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            data = {"rooms": [room.to_dict() for room in self.rooms.values()]}
            with open(self.storage_path, "w") as f:
                json.dump(data, f, indent=2)
            logger.debug(f"Saved {len(self.rooms)} rooms to {self.storage_path}")
        except OSError as exc:
            logger.error(f"Failed to write rooms to {self.storage_path}: {exc}")

    def add_or_update(
        self, room_id: str, peer_id: str, display_name: str | None = None
    ) -> RoomRecord:
        record = self.rooms.get(room_id)
        if record is None:
            record = RoomRecord(room_id, peer_id, display_name or "Unknown")
            self.rooms[room_id] = record
            logger.info(f"New participant {peer_id[:8]}... in room {room_id}")
        else:
            record.peer_id = peer_id
            if display_name:
                record.display_name = display_name
        return record

    def other_participant(self, room_id: str) -> RoomRecord | None:
        """The other participant of a room, if known."""
        return self.rooms.get(room_id)

    def record_call(self, room_id: str) -> None:
        """Stamp the room's last call time and persist."""
        record = self.rooms.get(room_id)
        if record is None:
            return
        record.last_call = datetime.now()
        self.save()
