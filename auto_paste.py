"""Text insertion sinks: clipboard paste into the focused app, or an in-app callback."""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Callable

from errors import NO_ACTIVE_TARGET
from models import InsertResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)


class ClipboardInsertionSink:
    """Types text into whatever window has focus.

    The text is pasted through the clipboard (whose previous content is
    restored afterwards); when the clipboard is unavailable the characters
    are typed with the keyboard controller instead.
    """

    in_app = False

    def __init__(self, restore_delay_s: float = 0.1) -> None:
        self._restore_delay_s = restore_delay_s

    async def insert_text(self, text: str) -> InsertResult:
        return await asyncio.to_thread(self.paste_text, text)

    def paste_text(self, text: str) -> InsertResult:
        if not text.strip():
            return InsertResult(consumed=False, reason="empty text", clipboard_restored=True)
        if Controller is None or Key is None:
            return InsertResult(
                consumed=False,
                reason="clipboard/keyboard dependency missing",
                clipboard_restored=False,
            )
        if pyperclip is None:
            return self._type_text(text)

        old_clip: str | None = None
        restored = False
        try:
            old_clip = pyperclip.paste()
            pyperclip.copy(text)
            modifier = Key.cmd if sys.platform == "darwin" else Key.ctrl
            keyboard = Controller()
            keyboard.press(modifier)
            keyboard.press("v")
            keyboard.release("v")
            keyboard.release(modifier)
            time.sleep(self._restore_delay_s)
            pyperclip.copy(old_clip)
            restored = True
            return InsertResult(consumed=True, reason="ok", clipboard_restored=True)
        except Exception as exc:
            logger.warning("Clipboard paste failed: %s", exc)
            try:
                if old_clip is not None:
                    pyperclip.copy(old_clip)
                    restored = True
            except Exception:
                restored = False
            fallback = self._type_text(text)
            if fallback.consumed:
                return InsertResult(consumed=True, reason="typed", clipboard_restored=restored)
            return InsertResult(
                consumed=False,
                reason=f"{NO_ACTIVE_TARGET}: {exc}",
                clipboard_restored=restored,
            )

    def _type_text(self, text: str) -> InsertResult:
        try:
            Controller().type(text)
        except Exception as exc:
            logger.warning("Keystroke typing failed: %s", exc)
            return InsertResult(consumed=False, reason=f"{NO_ACTIVE_TARGET}: {exc}")
        return InsertResult(consumed=True, reason="typed")


class CallbackSink:
    """In-app sink (the onboarding practice editor); it always accepts text."""

    in_app = True

    def __init__(self, callback: Callable[[str], None]) -> None:
        self._callback = callback

    async def insert_text(self, text: str) -> InsertResult:
        self._callback(text)
        return InsertResult(consumed=True, reason="in-app")
