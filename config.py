"""Simple JSON-based config store and engine timing constants."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from models import SessionConfig, SpeechBackend

NATIVE_MODEL = "native"
CLOUD_MODEL_PREFIX = "dashscope-"
DEFAULT_CLOUD_MODEL = "qwen3-asr-flash"
DEFAULT_CORRECTION_MODEL = "qwen-turbo"
DEFAULT_LANGUAGE = "en-US"
DEFAULT_NATIVE_COMMAND = ["speech-recognizer"]


@dataclass(frozen=True)
class EngineTimings:
    live_refine_debounce_s: float = 1.0
    native_process_debounce_s: float = 1.0
    native_silence_flush_s: float = 60.0
    native_silence_poll_s: float = 1.0
    native_max_type_retries: int = 2
    native_requeue_delay_s: float = 0.22
    native_final_drain_timeout_s: float = 3.0
    native_post_stop_drain_s: float = 2.8
    native_settle_s: float = 0.14
    drain_poll_s: float = 0.04
    cloud_poll_interval_s: float = 3.5
    cloud_min_audio_bytes: int = 1000
    cloud_recorder_flush_s: float = 0.2
    cloud_in_flight_timeout_s: float = 15.0
    final_insert_timeout_s: float = 5.0


def to_iso639(language: str) -> str:
    """'en-US' -> 'en'."""
    return (language or DEFAULT_LANGUAGE).split("-")[0].lower() or "en"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "live_dictation" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "Key.alt_l"))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_speech_model(self) -> str:
        data = self._read_all()
        return str(data.get("speech_to_text_model", NATIVE_MODEL)) or NATIVE_MODEL

    def set_speech_model(self, model: str) -> None:
        self._set("speech_to_text_model", model)

    def get_language(self) -> str:
        data = self._read_all()
        return str(data.get("speech_language", DEFAULT_LANGUAGE)) or DEFAULT_LANGUAGE

    def set_language(self, language: str) -> None:
        self._set("speech_language", language)

    def get_correction_enabled(self) -> bool:
        data = self._read_all()
        return bool(data.get("speech_correction_enabled", False))

    def set_correction_enabled(self, enabled: bool) -> None:
        self._set("speech_correction_enabled", bool(enabled))

    def get_correction_model(self) -> str:
        data = self._read_all()
        return str(data.get("speech_correction_model", DEFAULT_CORRECTION_MODEL)) or DEFAULT_CORRECTION_MODEL

    def get_push_to_talk(self) -> bool:
        data = self._read_all()
        return bool(data.get("push_to_talk", False))

    def set_push_to_talk(self, enabled: bool) -> None:
        self._set("push_to_talk", bool(enabled))

    def get_native_command(self) -> list[str]:
        data = self._read_all()
        command = data.get("native_recognizer_command", DEFAULT_NATIVE_COMMAND)
        if isinstance(command, str):
            command = command.split()
        if not isinstance(command, list) or not command:
            return list(DEFAULT_NATIVE_COMMAND)
        return [str(part) for part in command]

    def get_input_device(self) -> int | str | None:
        """Configured microphone (index or name); None means the system default."""
        data = self._read_all()
        device = data.get("input_device")
        if isinstance(device, bool) or device in (None, ""):
            return None
        if isinstance(device, (int, str)):
            return device
        return None

    def resolve_api_key(self) -> str:
        return self.get_api_key() or os.getenv("DASHSCOPE_API_KEY", "")

    def session_config(self) -> SessionConfig:
        """Snapshot of everything a session needs, read once at start."""
        model = self.get_speech_model()
        has_api_key = bool(self.resolve_api_key())
        wants_cloud = model.startswith(CLOUD_MODEL_PREFIX)
        backend = SpeechBackend.CLOUD if wants_cloud and has_api_key else SpeechBackend.NATIVE
        cloud_model = model[len(CLOUD_MODEL_PREFIX):] if wants_cloud else ""
        return SessionConfig(
            backend=backend,
            language=self.get_language(),
            has_api_key=has_api_key,
            push_to_talk=self.get_push_to_talk(),
            cloud_model=cloud_model or DEFAULT_CLOUD_MODEL,
        )

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
