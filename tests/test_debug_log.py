"""Tests for DebugLog and logging setup."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from debug_log import DEBUG_LOGGER_NAME, DebugLog, setup_logging


def test_entries_are_kept_with_fields() -> None:
    debug = DebugLog()
    debug.log("result", "native suffix queued", reason="timer", raw_len=11, delta_len=2)
    debug.log("error", "native suffix typing failed", attempts=1)

    assert debug.messages() == ["native suffix queued", "native suffix typing failed"]
    assert debug.messages("error") == ["native suffix typing failed"]
    assert debug.entries[0].fields == {"reason": "timer", "raw_len": 11, "delta_len": 2}


def test_ring_is_bounded() -> None:
    debug = DebugLog(max_entries=3)
    for i in range(5):
        debug.log("result", f"entry {i}")

    assert debug.messages() == ["entry 2", "entry 3", "entry 4"]


def test_error_category_logs_at_warning(caplog) -> None:  # noqa: ANN001
    debug = DebugLog()
    with caplog.at_level(logging.DEBUG, logger=DEBUG_LOGGER_NAME):
        debug.log("start", "session starting")
        debug.log("error", "drain timeout", stage="before stop")

    levels = {record.getMessage(): record.levelno for record in caplog.records}
    assert levels["[start] session starting"] == logging.DEBUG
    assert levels["[error] drain timeout {'stage': 'before stop'}"] == logging.WARNING


def test_setup_logging_writes_rotating_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(tmp_path / "logs", verbose=True, console=False)

        handlers = root.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RotatingFileHandler)
        assert root.level == logging.DEBUG

        logging.getLogger("test").debug("hello log")
        handlers[0].flush()
        assert "hello log" in (tmp_path / "logs" / "dictation.log").read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
