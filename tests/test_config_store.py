from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import DEFAULT_CLOUD_MODEL, JsonConfigStore, to_iso639
from models import SpeechBackend


def test_config_read_write(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = JsonConfigStore(path=path)

    assert store.get_api_key() == ""
    assert store.get_hotkey() == "Key.alt_l"
    assert store.get_speech_model() == "native"
    assert store.get_language() == "en-US"
    assert store.get_push_to_talk() is False

    store.set_api_key("abc")
    store.set_hotkey("Key.alt_r")
    store.set_speech_model("dashscope-qwen3-asr-flash")
    store.set_language("de-DE")
    store.set_push_to_talk(True)

    reloaded = JsonConfigStore(path=path)
    assert reloaded.get_api_key() == "abc"
    assert reloaded.get_hotkey() == "Key.alt_r"
    assert reloaded.get_speech_model() == "dashscope-qwen3-asr-flash"
    assert reloaded.get_language() == "de-DE"
    assert reloaded.get_push_to_talk() is True
    assert json.loads(path.read_text(encoding="utf-8"))["speech_language"] == "de-DE"


def test_config_invalid_json_fallback(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{invalid", encoding="utf-8")

    store = JsonConfigStore(path=path)
    assert store.get_api_key() == ""
    assert store.get_hotkey() == "Key.alt_l"


def test_config_non_object_json_fallback(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    store = JsonConfigStore(path=path)
    assert store.get_speech_model() == "native"
    store.set_api_key("k")
    assert store.get_api_key() == "k"


def test_native_command_accepts_string_or_list(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = JsonConfigStore(path=path)
    assert store.get_native_command() == ["speech-recognizer"]

    path.write_text(json.dumps({"native_recognizer_command": "/opt/asr --fast"}), encoding="utf-8")
    assert store.get_native_command() == ["/opt/asr", "--fast"]

    path.write_text(json.dumps({"native_recognizer_command": []}), encoding="utf-8")
    assert store.get_native_command() == ["speech-recognizer"]


def test_input_device_defaults_to_system_microphone(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = JsonConfigStore(path=path)
    assert store.get_input_device() is None

    path.write_text(json.dumps({"input_device": "USB Mic"}), encoding="utf-8")
    assert store.get_input_device() == "USB Mic"

    path.write_text(json.dumps({"input_device": 2}), encoding="utf-8")
    assert store.get_input_device() == 2

    path.write_text(json.dumps({"input_device": ["bad"]}), encoding="utf-8")
    assert store.get_input_device() is None


def test_session_config_uses_cloud_only_with_key(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("DASHSCOPE_API_KEY", raising=False)
    store = JsonConfigStore(path=tmp_path / "config.json")
    store.set_speech_model("dashscope-qwen3-asr-flash")

    config = store.session_config()
    assert config.backend == SpeechBackend.NATIVE
    assert config.has_api_key is False

    store.set_api_key("abc")
    config = store.session_config()
    assert config.backend == SpeechBackend.CLOUD
    assert config.cloud_model == "qwen3-asr-flash"
    assert config.language == "en-US"


def test_session_config_native_model_ignores_key(tmp_path: Path) -> None:
    store = JsonConfigStore(path=tmp_path / "config.json")
    store.set_api_key("abc")

    config = store.session_config()
    assert config.backend == SpeechBackend.NATIVE
    assert config.has_api_key is True
    assert config.cloud_model == DEFAULT_CLOUD_MODEL


def test_api_key_falls_back_to_environment(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("DASHSCOPE_API_KEY", "from-env")
    store = JsonConfigStore(path=tmp_path / "config.json")

    assert store.get_api_key() == ""
    assert store.resolve_api_key() == "from-env"


@pytest.mark.parametrize("tag, expected", [("en-US", "en"), ("zh-CN", "zh"), ("fr", "fr"), ("", "en")])
def test_to_iso639(tag: str, expected: str) -> None:
    assert to_iso639(tag) == expected
