"""Dictation overlay: status line plus the latest transcript."""

from __future__ import annotations

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtWidgets import QApplication, QLabel, QProgressBar, QWidget, QVBoxLayout
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QProgressBar = object  # type: ignore
    QWidget = object  # type: ignore
    QVBoxLayout = object  # type: ignore

_BASE_STYLE = "font-size: 18px; padding: 12px 16px; background: rgba(0,0,0,190); border-radius: 12px;"
_STATUS_STYLE = "color: #BBBBBB; font-size: 13px; padding: 6px 16px 0 16px;"
_LEVEL_STYLE = (
    "QProgressBar { background: rgba(0,0,0,120); border: none; border-radius: 2px; }"
    "QProgressBar::chunk { background: #FF4444; border-radius: 2px; }"
)
_TEXT_STYLE = "color: white; " + _BASE_STYLE
_ERROR_STYLE = "color: #FF6B6B; " + _BASE_STYLE


class DictationOverlay(QWidget):
    def __init__(self, max_chars: int = 280) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool)
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setAttribute(Qt.WA_ShowWithoutActivating, True)
        self.setFixedWidth(600)
        self._max_chars = max_chars

        self._status = QLabel("")
        self._status.setStyleSheet(_STATUS_STYLE)
        self._label = QLabel("")
        self._label.setWordWrap(True)
        self._label.setStyleSheet(_TEXT_STYLE)
        self._level = QProgressBar()
        self._level.setRange(0, 100)
        self._level.setTextVisible(False)
        self._level.setFixedHeight(4)
        self._level.setStyleSheet(_LEVEL_STYLE)
        self._level.hide()

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(0)
        layout.addWidget(self._status)
        layout.addWidget(self._label)
        layout.addWidget(self._level)
        self.setLayout(layout)

        self._hide_timer: QTimer | None = None

    def _center_top(self) -> None:
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40  # below the menu bar
        self.move(x, y)

    def set_status(self, text: str) -> None:
        self._status.setText(text)
        if text:
            self._reveal()

    def set_text(self, text: str) -> None:
        """Show the tail of the transcript so long dictations stay readable."""
        if len(text) > self._max_chars:
            text = "…" + text[-self._max_chars:]
        self._label.setStyleSheet(_TEXT_STYLE)
        self._label.setText(text)
        self._reveal()

    def set_level(self, level: float | None) -> None:
        """Microphone meter; None hides it."""
        if level is None:
            self._level.hide()
            return
        self._level.setValue(int(max(0.0, min(1.0, level)) * 100))
        self._level.show()

    def show_error(self, text: str, hide_after_ms: int = 2500) -> None:
        self._label.setStyleSheet(_ERROR_STYLE)
        self._label.setText(f"⚠️ {text}")
        self._reveal()
        self.hide_with_delay(hide_after_ms)

    def hide_with_delay(self, delay_ms: int = 400) -> None:
        self._cancel_hide_timer()
        if QTimer is not None:
            self._hide_timer = QTimer()
            self._hide_timer.setSingleShot(True)
            self._hide_timer.timeout.connect(self._dismiss)
            self._hide_timer.start(delay_ms)

    def _reveal(self) -> None:
        self._cancel_hide_timer()
        self._center_top()
        self.show()

    def _dismiss(self) -> None:
        self._label.setText("")
        self._status.setText("")
        self._level.hide()
        self.hide()

    def _cancel_hide_timer(self) -> None:
        if self._hide_timer is not None:
            self._hide_timer.stop()
            self._hide_timer = None
