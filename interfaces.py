"""Protocol interfaces used by SessionController."""

from __future__ import annotations

import asyncio
from queue import Queue
from typing import Protocol

from models import AudioFrame, InsertResult, RecognitionEvent, RefineResult, SessionConfig


class Recorder(Protocol):
    def check_input_device(self) -> None: ...

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class CloudTranscriber(Protocol):
    async def transcribe(
        self,
        pcm: bytes,
        sample_rate: int,
        channels: int,
        language: str,
    ) -> str: ...


class NativeSpeechBackend(Protocol):
    async def start(self, language: str, events: asyncio.Queue[RecognitionEvent]) -> None: ...

    async def stop(self) -> None: ...


class TextSink(Protocol):
    async def insert_text(self, text: str) -> InsertResult: ...


class Refiner(Protocol):
    async def refine(self, text: str) -> RefineResult: ...


class SettingsProvider(Protocol):
    def session_config(self) -> SessionConfig: ...
