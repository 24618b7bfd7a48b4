"""Shared error codes, user-facing messages and exception types."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
NO_ACTIVE_TARGET = "NO_ACTIVE_TARGET"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"
BACKEND_START_FAILED = "BACKEND_START_FAILED"
BACKEND_MISCONFIGURED = "BACKEND_MISCONFIGURED"
TYPING_FAILED = "TYPING_FAILED"
DRAIN_TIMEOUT = "DRAIN_TIMEOUT"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission is required in system settings.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    NO_ACTIVE_TARGET: "Could not type into the active app.",
    ASR_PROTOCOL_ERROR: "Speech recognition error.",
    BACKEND_START_FAILED: "Speech recognition failed to start.",
    BACKEND_MISCONFIGURED: "Speech model is set to native. Start again to use native dictation.",
    TYPING_FAILED: "Live typing failed for one chunk. Retrying...",
    DRAIN_TIMEOUT: "Some dictated text could not be typed in time.",
}


class DictationError(Exception):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)


class TranscriptionError(DictationError):
    def __init__(self, code: str, message: str = "", retryable: bool = False) -> None:
        super().__init__(code, message)
        self.retryable = retryable


class BackendStartError(DictationError):
    def __init__(self, message: str = "") -> None:
        super().__init__(BACKEND_START_FAILED, message)
