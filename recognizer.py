"""Cloud transcriber using DashScope qwen3-asr-flash.

The qwen3-asr-flash model accepts complete audio (file path, URL, or
base64) and streams back recognition results via ``stream=True``.  Every
call uploads the whole session recorded so far as one WAV payload, so
each request is self-contained; the caller reconciles overlapping results.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import wave

from config import to_iso639
from errors import ASR_PROTOCOL_ERROR, AUTH_FAILED, BACKEND_MISCONFIGURED, NETWORK_ERROR, TranscriptionError

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    wav_bytes = buf.getvalue()
    return base64.b64encode(wav_bytes).decode("ascii")


class DashscopeTranscriber:
    def __init__(
        self,
        api_key: str,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s

    async def transcribe(
        self,
        pcm: bytes,
        sample_rate: int = 16000,
        channels: int = 1,
        language: str = "en-US",
    ) -> str:
        """Transcribe the full session audio; raises TranscriptionError."""
        if not pcm:
            return ""
        if self._model == "native":
            raise TranscriptionError(
                BACKEND_MISCONFIGURED,
                "Speech model is set to native; cloud transcription is unavailable.",
            )
        if dashscope is None:
            raise TranscriptionError(ASR_PROTOCOL_ERROR, "dashscope is not installed")
        if not self._api_key:
            raise TranscriptionError(AUTH_FAILED, "No API key configured")

        wav_b64 = _pcm_to_wav_base64(pcm, sample_rate, channels)
        logger.debug("Transcribing %d bytes, model=%s, lang=%s", len(pcm), self._model, language)
        return await asyncio.to_thread(self._recognize_stream, wav_b64, to_iso639(language))

    def _recognize_stream(self, wav_base64: str, language: str) -> str:
        """Send audio to dashscope and return the latest streamed text."""
        try:
            response = dashscope.MultiModalConversation.call(
                api_key=self._api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": f"data:audio/wav;base64,{wav_base64}"}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False, "language": language},
                stream=True,
                timeout=self._request_timeout_s,
            )
            latest_text = ""
            for chunk in response:
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
        except TranscriptionError:
            raise
        except Exception as exc:
            raise self._to_error(exc) from exc
        return latest_text

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            status = chunk.get("status_code", 200)
            if status not in (None, 200):
                raise TranscriptionError(
                    AUTH_FAILED if status in (401, 403) else ASR_PROTOCOL_ERROR,
                    f"{status} {chunk.get('code', '')}: {chunk.get('message', '')}".strip(),
                    retryable=status not in (401, 403),
                )
            output = chunk.get("output") or {}
            choices = output.get("choices") or []
            if not choices:
                return ""
            message = choices[0].get("message") or {}
            content = message.get("content") or []
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""

    def _to_error(self, exc: Exception) -> TranscriptionError:
        """Map an SDK/network exception to a TranscriptionError."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "403" in low or "auth" in low or "api key" in low:
            return TranscriptionError(AUTH_FAILED, message, retryable=False)
        if "timeout" in low or "network" in low or "connection" in low:
            return TranscriptionError(NETWORK_ERROR, message, retryable=True)
        return TranscriptionError(ASR_PROTOCOL_ERROR, message, retryable=True)
