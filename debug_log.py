"""Logging setup and the fire-and-forget dictation debug log."""

from __future__ import annotations

import logging
import sys
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

DEBUG_LOGGER_NAME = "live_dictation.debug"


def setup_logging(logs_dir: Path, verbose: bool = False, console: bool = True) -> None:
    """Configure the root logger with a rotating file and optional console output.

    Args:
        logs_dir: Directory to store log files.
        verbose: If True, set DEBUG level; otherwise INFO.
        console: If True, also log to stdout.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s")

    file_handler = RotatingFileHandler(
        logs_dir / "dictation.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logging.getLogger(__name__).info("Logging initialized: level=%s", logging.getLevelName(level))


@dataclass
class DebugEntry:
    category: str
    message: str
    fields: dict[str, Any] = field(default_factory=dict)


class DebugLog:
    """Structured debug sink; calls never raise and are never awaited."""

    def __init__(self, max_entries: int = 500, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(DEBUG_LOGGER_NAME)
        self._entries: deque[DebugEntry] = deque(maxlen=max_entries)

    def log(self, category: str, message: str, **fields: Any) -> None:
        entry = DebugEntry(category=category, message=message, fields=dict(fields))
        self._entries.append(entry)
        level = logging.WARNING if category == "error" else logging.DEBUG
        if fields:
            self._logger.log(level, "[%s] %s %s", category, message, fields)
        else:
            self._logger.log(level, "[%s] %s", category, message)

    @property
    def entries(self) -> list[DebugEntry]:
        return list(self._entries)

    def messages(self, category: str | None = None) -> list[str]:
        return [e.message for e in self._entries if category is None or e.category == category]
