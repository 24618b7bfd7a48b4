"""Local speech recognizer helper process.

The helper is started as ``[*command, language]`` and writes one JSON
object per line on stdout::

    {"ready": true}
    {"transcript": "hello wor", "isFinal": false}
    {"error": "microphone unavailable"}

Lines are turned into ``RecognitionEvent`` objects on an asyncio queue.
When stdout closes, an ``ended`` event is emitted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from errors import BackendStartError
from models import RecognitionEvent, RecognitionKind

logger = logging.getLogger(__name__)


def parse_helper_line(line: str) -> Optional[RecognitionEvent]:
    """Decode one NDJSON line; malformed or unknown lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    if payload.get("ready"):
        return RecognitionEvent(kind=RecognitionKind.READY.value)
    if payload.get("error"):
        return RecognitionEvent(kind=RecognitionKind.ERROR.value, message=str(payload["error"]))
    if "transcript" in payload:
        return RecognitionEvent(
            kind=RecognitionKind.TRANSCRIPT.value,
            text=str(payload.get("transcript") or ""),
            is_final=bool(payload.get("isFinal", False)),
        )
    return None


class SubprocessSpeechBackend:
    def __init__(self, command: list[str]) -> None:
        if not command:
            raise ValueError("native recognizer command must not be empty")
        self._command = list(command)
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, language: str, events: asyncio.Queue[RecognitionEvent]) -> None:
        """Spawn the helper; raises BackendStartError when it cannot be launched."""
        if self.running:
            return
        argv = [*self._command, language]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise BackendStartError(f"Native speech recognizer not available: {exc}") from exc
        except OSError as exc:
            raise BackendStartError(f"Native speech recognizer failed to start: {exc}") from exc

        self._process = process
        logger.info("Native recognizer started: pid=%s argv=%s", process.pid, argv)
        loop = asyncio.get_running_loop()
        self._readers = [
            loop.create_task(self._read_stdout(process, events)),
            loop.create_task(self._read_stderr(process)),
        ]

    async def stop(self) -> None:
        """Ask the helper to exit; the ``ended`` event follows once it does."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        logger.debug("Native recognizer signalled to stop")

    async def _read_stdout(
        self,
        process: asyncio.subprocess.Process,
        events: asyncio.Queue[RecognitionEvent],
    ) -> None:
        assert process.stdout is not None
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                event = parse_helper_line(raw.decode("utf-8", errors="replace"))
                if event is None:
                    logger.debug("Ignoring helper output: %r", raw[:200])
                    continue
                events.put_nowait(event)
        finally:
            returncode = await process.wait()
            logger.info("Native recognizer exited with code %s", returncode)
            if self._process is process:
                self._process = None
            events.put_nowait(RecognitionEvent(kind=RecognitionKind.ENDED.value))

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning("native recognizer: %s", text)
