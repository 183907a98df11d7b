"""
Configuration management for peercall.

Handles loading/saving user preferences to a JSON config file.
"""

from __future__ import annotations

import copy
import json
import uuid
from pathlib import Path
from typing import Any, Optional

from peercall.logging_config import get_logger

logger = get_logger("config")

DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


def validate_stun_servers(urls: list[str]) -> list[str]:
    """Only STUN is supported; relayed (TURN) paths are never configured."""
    for url in urls:
        scheme = url.split(":", 1)[0].lower()
        if scheme != "stun" and scheme != "stuns":
            raise ValueError(f"Not a STUN server URL: {url}")
    return list(urls)


class Config:
    """
    Application configuration with persistent storage.
    """

    DEFAULT_CONFIG = {
        "ice": {
            "stun_servers": DEFAULT_STUN_SERVERS,
        },
        "media": {
            "audio_input_device": None,  # None = system default
            "video_device": None,  # None = platform default camera
            "video_format": None,  # FFmpeg input format, None = platform default
            "video_size": "640x480",
            "framerate": 30,
            "screen_device": None,
            "screen_format": None,
        },
        "signaling": {
            "relay_url": "",
            "local_id": "",  # Generated on first load
        },
        "call": {
            "auto_answer": False,
            "display_name": "",  # sent with offers and answers
        },
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Args:
            config_path: JSON file to use; ~/.peercall/config.json when None
        """
        if config_path is None:
            config_path = Path.home() / ".peercall" / "config.json"
            config_path.parent.mkdir(exist_ok=True)

        self.config_path = config_path
        self._data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """
        Read the config file over the defaults. A missing local id is generated.

        Raises:
            ValueError: the file lists a server that is not a STUN server
        """
        self._data = copy.deepcopy(self.DEFAULT_CONFIG)
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    self._merge(json.load(f))
            except (OSError, ValueError) as exc:
                logger.error(f"Could not read config {self.config_path}: {exc}")
                logger.warning("Falling back to default configuration")
                self._data = copy.deepcopy(self.DEFAULT_CONFIG)

        servers = self.get("ice", "stun_servers")
        if not isinstance(servers, list):
            raise ValueError(f"{self.config_path}: ice.stun_servers is not a list")
        try:
            validate_stun_servers(servers)
        except ValueError as exc:
            raise ValueError(f"{self.config_path}: {exc}") from exc

        if not self.local_id:
            self.local_id = uuid.uuid4().hex
            logger.info(f"Generated local id {self.local_id[:8]}...")

    def save(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self._data, f, indent=2)
        except OSError as exc:
            logger.error(f"Could not write config {self.config_path}: {exc}")

    def _merge(self, loaded: Any) -> None:
        """Overlay the sections of a loaded file; unknown sections are kept."""
        if not isinstance(loaded, dict):
            raise ValueError("top level is not an object")
        for section, values in loaded.items():
            if not isinstance(self._data.get(section), dict):
                self._data[section] = values
            elif isinstance(values, dict):
                self._data[section].update(values)
            else:
                raise ValueError(f"section {section!r} is not an object")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self._data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        self._data.setdefault(section, {})[key] = value

    @property
    def stun_servers(self) -> list[str]:
        return list(self.get("ice", "stun_servers", DEFAULT_STUN_SERVERS))

    @stun_servers.setter
    def stun_servers(self, value: list[str]) -> None:
        self.set("ice", "stun_servers", validate_stun_servers(value))

    @property
    def audio_input_device(self) -> Optional[int]:
        return self.get("media", "audio_input_device")

    @audio_input_device.setter
    def audio_input_device(self, value: Optional[int]) -> None:
        self.set("media", "audio_input_device", value)

    @property
    def video_device(self) -> Optional[str]:
        return self.get("media", "video_device")

    @video_device.setter
    def video_device(self, value: Optional[str]) -> None:
        self.set("media", "video_device", value)

    @property
    def video_format(self) -> Optional[str]:
        return self.get("media", "video_format")

    @property
    def video_size(self) -> str:
        return self.get("media", "video_size", "640x480")

    @video_size.setter
    def video_size(self, value: str) -> None:
        width, _, height = value.partition("x")
        if not (width.isdigit() and height.isdigit()):
            raise ValueError(f"Invalid video size: {value}")
        self.set("media", "video_size", value)

    @property
    def framerate(self) -> int:
        return self.get("media", "framerate", 30)

    @property
    def screen_device(self) -> Optional[str]:
        return self.get("media", "screen_device")

    @property
    def screen_format(self) -> Optional[str]:
        return self.get("media", "screen_format")

    @property
    def relay_url(self) -> str:
        return self.get("signaling", "relay_url", "")

    @relay_url.setter
    def relay_url(self, value: str) -> None:
        self.set("signaling", "relay_url", value)

    @property
    def local_id(self) -> str:
        return self.get("signaling", "local_id", "")

    @local_id.setter
    def local_id(self, value: str) -> None:
        self.set("signaling", "local_id", value)

    @property
    def auto_answer(self) -> bool:
        return self.get("call", "auto_answer", False)

    @auto_answer.setter
    def auto_answer(self, value: bool) -> None:
        self.set("call", "auto_answer", value)

    @property
    def display_name(self) -> str:
        return self.get("call", "display_name", "")

    @display_name.setter
    def display_name(self, value: str) -> None:
        self.set("call", "display_name", value)
