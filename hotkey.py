"""Global push-to-talk hotkey adapter based on pynput."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)


def key_name(key: object) -> str:
    """Name a pynput key the way the config stores it: 'Key.alt_l' or 'f'."""
    char = getattr(key, "char", None)
    if isinstance(char, str) and char:
        return char.lower()
    return str(key)


class GlobalHotkeyAdapter:
    """Calls ``on_press`` when the hotkey goes down and ``on_release`` when it comes up.

    Auto-repeat presses while the key is held are swallowed.
    """

    def __init__(self, hotkey_name: str = "Key.alt_l") -> None:
        self._hotkey_name = hotkey_name.strip()
        self._listener: Optional[object] = None
        self._pressed = False
        self._lock = threading.Lock()
        self._on_press: Optional[Callable[[], None]] = None
        self._on_release: Optional[Callable[[], None]] = None

    @property
    def hotkey_name(self) -> str:
        return self._hotkey_name

    def start(self, on_press: Callable[[], None], on_release: Callable[[], None]) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._on_press = on_press
        self._on_release = on_release
        self._listener = keyboard.Listener(on_press=self.handle_press, on_release=self.handle_release)
        self._listener.start()
        logger.info("Hotkey listener started for %s", self._hotkey_name)

    def handle_press(self, key: object) -> None:
        if key_name(key) != self._hotkey_name:
            return
        with self._lock:
            if self._pressed:
                return
            self._pressed = True
        if self._on_press:
            self._on_press()

    def handle_release(self, key: object) -> None:
        if key_name(key) != self._hotkey_name:
            return
        with self._lock:
            if not self._pressed:
                return
            self._pressed = False
        if self._on_release:
            self._on_release()

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None
        self._pressed = False
