"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Coroutine

from auto_paste import ClipboardInsertionSink
from config import CLOUD_MODEL_PREFIX, DEFAULT_CLOUD_MODEL, NATIVE_MODEL, JsonConfigStore
from debug_log import DebugLog, setup_logging
from hotkey import GlobalHotkeyAdapter
from models import SessionState
from native_backend import SubprocessSpeechBackend
from overlay import DictationOverlay
from recognizer import DashscopeTranscriber
from recorder import SoundDeviceRecorder
from refinement import DashscopeRefiner
from session_controller import SessionController

try:
    from PySide6.QtCore import QObject, Signal, QSize, QTimer
    from PySide6.QtGui import QAction, QIcon, QPixmap, QPainter, QColor, QBrush
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)

LOGS_DIR = Path.home() / ".config" / "live_dictation" / "logs"


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"       # grey
ICON_LISTENING = "#FF4444"  # red
ICON_PROCESSING = "#4488FF" # blue
ICON_ERROR = "#FF8800"      # orange


class UIBridge(QObject):
    partial_signal = Signal(str)
    status_signal = Signal(str)
    error_signal = Signal(str)
    state_signal = Signal(str, str)  # from_state, to_state
    close_signal = Signal()


class EngineThread:
    """Owns the asyncio loop the dictation engine runs on."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="dictation-engine", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)
        return future

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=2.0)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Engine call failed", exc_info=exc)


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        self.overlay = DictationOverlay()
        self.ui = UIBridge()
        self.ui.partial_signal.connect(self._on_partial_ui)
        self.ui.status_signal.connect(self._on_status_ui)
        self.ui.error_signal.connect(self._on_error_ui)
        self.ui.state_signal.connect(self._on_state_change_ui)
        self.ui.close_signal.connect(self._on_close_ui)

        self.engine = EngineThread()
        self.recorder = SoundDeviceRecorder(device=self.config_store.get_input_device())
        self.controller = SessionController(
            settings=self.config_store,
            recorder=self.recorder,
            transcriber=self._build_transcriber(),
            native_backend=SubprocessSpeechBackend(self.config_store.get_native_command()),
            sink=ClipboardInsertionSink(),
            refiner=self._build_refiner(),
            debug=DebugLog(),
            on_state_change=self._on_state_change,
            on_status=self.ui.status_signal.emit,
            on_partial=self.ui.partial_signal.emit,
            on_error=self._on_error,
            on_close=self.ui.close_signal.emit,
        )
        self.hotkey = GlobalHotkeyAdapter(hotkey_name=self.config_store.get_hotkey())

        self._level_timer = QTimer()
        self._level_timer.setInterval(80)
        self._level_timer.timeout.connect(self._refresh_level)

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Live Dictation — Ready")
        self._setup_menu()
        self.tray.show()

    def _build_transcriber(self) -> DashscopeTranscriber:
        model = self.config_store.get_speech_model()
        cloud_model = model[len(CLOUD_MODEL_PREFIX):] if model.startswith(CLOUD_MODEL_PREFIX) else ""
        return DashscopeTranscriber(
            api_key=self.config_store.resolve_api_key(),
            model=cloud_model or NATIVE_MODEL,
        )

    def _build_refiner(self) -> DashscopeRefiner:
        return DashscopeRefiner(
            api_key=self.config_store.resolve_api_key(),
            model=self.config_store.get_correction_model(),
            enabled=self.config_store.get_correction_enabled(),
        )

    def _apply_settings(self) -> None:
        self.controller.replace_transcriber(self._build_transcriber())
        self.controller.replace_refiner(self._build_refiner())

    def _setup_menu(self) -> None:
        menu = QMenu()

        api_action = QAction("Set API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        hotkey_action = QAction("Set Hotkey", menu)
        hotkey_action.triggered.connect(self._set_hotkey)
        menu.addAction(hotkey_action)

        menu.addSeparator()
        self._cloud_action = QAction("Use DashScope Transcription", menu)
        self._cloud_action.setCheckable(True)
        self._cloud_action.setChecked(self.config_store.get_speech_model().startswith(CLOUD_MODEL_PREFIX))
        self._cloud_action.toggled.connect(self._toggle_cloud)
        menu.addAction(self._cloud_action)

        correction_action = QAction("AI Correction", menu)
        correction_action.setCheckable(True)
        correction_action.setChecked(self.config_store.get_correction_enabled())
        correction_action.toggled.connect(self._toggle_correction)
        menu.addAction(correction_action)

        ptt_action = QAction("Paste Once on Release", menu)
        ptt_action.setCheckable(True)
        ptt_action.setChecked(self.config_store.get_push_to_talk())
        ptt_action.toggled.connect(self.config_store.set_push_to_talk)
        menu.addAction(ptt_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API Key")
        if not ok:
            return
        self.config_store.set_api_key(value.strip())
        self._apply_settings()
        QMessageBox.information(None, "Saved", "API Key saved and applied.")

    def _set_hotkey(self) -> None:
        value, ok = QInputDialog.getText(None, "Hotkey", "Use pynput key format, e.g. Key.alt_l")
        if not ok or not value:
            return
        self.config_store.set_hotkey(value.strip())
        QMessageBox.information(None, "Saved", "Hotkey saved. Restart app to apply.")

    def _toggle_cloud(self, enabled: bool) -> None:
        model = f"{CLOUD_MODEL_PREFIX}{DEFAULT_CLOUD_MODEL}" if enabled else NATIVE_MODEL
        self.config_store.set_speech_model(model)
        self._apply_settings()
        if enabled and not self.config_store.resolve_api_key():
            QMessageBox.information(None, "API Key", "Set a DashScope API key; native dictation is used until then.")

    def _toggle_correction(self, enabled: bool) -> None:
        self.config_store.set_correction_enabled(enabled)
        self._apply_settings()

    # ------------------------------------------------------------------
    # Callbacks (called from the engine thread → emit signals for UI thread)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        self.ui.state_signal.emit(from_state.value, to_state.value)

    def _on_error(self, code: str, message: str) -> None:
        self.ui.error_signal.emit(message or code)

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_partial_ui(self, text: str) -> None:
        self.overlay.set_text(text)

    def _on_status_ui(self, text: str) -> None:
        self.overlay.set_status(text)

    def _on_error_ui(self, msg: str) -> None:
        self.overlay.show_error(msg)

    def _on_close_ui(self) -> None:
        self.overlay.hide_with_delay(400)

    def _refresh_level(self) -> None:
        if self.recorder.capturing:
            self.overlay.set_level(self.recorder.input_level)
        else:
            self.overlay.set_level(None)

    def _on_state_change_ui(self, from_state: str, to_state: str) -> None:
        if to_state == SessionState.LISTENING.value:
            self._level_timer.start()
        else:
            self._level_timer.stop()
            self.overlay.set_level(None)

        if to_state == SessionState.LISTENING.value:
            self.tray.setIcon(_create_icon(ICON_LISTENING))
            self.tray.setToolTip("Live Dictation — Listening...")
        elif to_state == SessionState.PROCESSING.value:
            self.tray.setIcon(_create_icon(ICON_PROCESSING))
            self.tray.setToolTip("Live Dictation — Processing...")
        elif to_state == SessionState.IDLE.value:
            self.tray.setIcon(_create_icon(ICON_IDLE))
            self.tray.setToolTip("Live Dictation — Ready")
        elif to_state == SessionState.ERROR.value:
            self.tray.setIcon(_create_icon(ICON_ERROR))
            self.tray.setToolTip("Live Dictation — Error")

    # ------------------------------------------------------------------
    # Hotkey handlers (pynput listener thread)
    # ------------------------------------------------------------------

    def _on_hotkey_press(self) -> None:
        self.engine.submit(self.controller.start_session())

    def _on_hotkey_release(self) -> None:
        self.engine.submit(self.controller.stop_session(close_after=True))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        self.engine.start()
        try:
            self.hotkey.start(
                on_press=self._on_hotkey_press,
                on_release=self._on_hotkey_release,
            )
        except Exception as exc:
            logger.error("Hotkey disabled: %s", exc)
            self.overlay.show_error(f"Hotkey disabled: {exc}")
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        try:
            self.engine.submit(self.controller.cancel_session("app quit")).result(timeout=2.0)
        except Exception as exc:
            logger.warning("Session cancel on quit failed: %s", exc)
        self.engine.stop()
        self.app.quit()


def main() -> int:
    setup_logging(LOGS_DIR, verbose="--verbose" in sys.argv)
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
