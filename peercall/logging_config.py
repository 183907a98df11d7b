"""
Logging setup for peercall.

Everything logs under the "peercall" logger; the console and the optional
rotating log file hang off it. aiortc and aioice are kept quiet unless
running at DEBUG.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER = "peercall"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# aioice logs every connectivity check at INFO
THIRD_PARTY_LOGGERS = ["aioice", "aiortc"]


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[Path, str]] = None,
    console: bool = True,
) -> None:
    """
    Configure the peercall logger. Calling it again replaces the handlers
    installed by the previous call.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Rotating log file, or None for no file
        console: Log to stdout
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
            )
        )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    third_party_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for logger_name in THIRD_PARTY_LOGGERS:
        logging.getLogger(logger_name).setLevel(third_party_level)


def get_logger(name: str) -> logging.Logger:
    """
    Logger for a component: "core.peer" becomes "peercall.core.peer".
    """
    if not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def get_log_directory() -> Path:
    return Path.home() / ".peercall" / "logs"


def get_default_log_file() -> Path:
    return get_log_directory() / "peercall.log"
