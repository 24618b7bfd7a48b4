"""Cloud backend driver: record, periodically transcribe the whole session, merge."""

from __future__ import annotations

import asyncio
import logging
from queue import Empty, Queue
from typing import Callable, Optional

from config import EngineTimings
from debug_log import DebugLog
from errors import TranscriptionError
from interfaces import CloudTranscriber, Recorder
from models import AudioFrame, SessionContext
from refinement import LiveRefinePipeline
from scheduling import SessionTimers
from transcript_text import merge_transcript_chunks, normalize_transcript

logger = logging.getLogger(__name__)

POLL_TIMER = "cloud-poll"

TranscriptionErrorCallback = Callable[[TranscriptionError], None]


class CloudCapture:
    """Accumulates microphone audio and feeds full-session snapshots to the cloud.

    Each poll uploads everything recorded so far; the returned transcript is
    merged into the combined transcript, which re-arms the refinement debounce.
    """

    def __init__(
        self,
        ctx: SessionContext,
        recorder: Recorder,
        transcriber: CloudTranscriber,
        pipeline: LiveRefinePipeline,
        timers: SessionTimers,
        debug: DebugLog,
        timings: EngineTimings = EngineTimings(),
        on_transcription_error: Optional[TranscriptionErrorCallback] = None,
        queue_maxsize: int = 4000,
    ) -> None:
        self._ctx = ctx
        self._recorder = recorder
        self._transcriber = transcriber
        self._pipeline = pipeline
        self._timers = timers
        self._debug = debug
        self._timings = timings
        self._on_transcription_error = on_transcription_error
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._frames: list[AudioFrame] = []
        self._last_transcribed_count = 0
        self._in_flight = False
        self._recording = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def chunk_count(self) -> int:
        self._collect_frames()
        return len(self._frames)

    def start(self) -> None:
        """Start recording; raises whatever the recorder raises."""
        self._recorder.start(self._audio_queue)
        self._recording = True
        self._debug.log("start", "recorder started")
        if not self._ctx.push_to_talk:
            self._timers.call_every(POLL_TIMER, self._timings.cloud_poll_interval_s, self._poll)

    def stop_polling(self) -> None:
        self._timers.cancel(POLL_TIMER)

    async def stop_recording(self, flush: bool = False) -> None:
        """Stop the recorder, optionally letting the last audio block arrive first."""
        self.stop_polling()
        if not self._recording:
            return
        if flush:
            await asyncio.sleep(self._timings.cloud_recorder_flush_s)
        self._recording = False
        try:
            await asyncio.to_thread(self._recorder.stop)
        except Exception as exc:
            logger.warning("Recorder stop failed: %s", exc)
        self._collect_frames()
        self._debug.log("stop", "recorder stopped", chunks=len(self._frames))

    async def wait_for_in_flight(self) -> bool:
        """Wait for a running transcription call; False when it did not finish in time."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timings.cloud_in_flight_timeout_s
        while self._in_flight:
            if loop.time() > deadline:
                self._debug.log("error", "cloud transcription still in flight")
                return False
            await asyncio.sleep(self._timings.drain_poll_s)
        return True

    async def final_transcription(self) -> None:
        """One last transcription of the complete audio."""
        if not self.chunk_count:
            return
        self._in_flight = True
        try:
            await self.send_transcription(is_final=True)
        except Exception:
            logger.exception("Final transcription failed")
        finally:
            self._in_flight = False

    async def _poll(self) -> None:
        if self._in_flight or self._ctx.finalizing:
            return
        if not self.chunk_count:
            return
        self._in_flight = True
        try:
            await self.send_transcription(is_final=False)
        finally:
            self._in_flight = False

    async def send_transcription(self, is_final: bool) -> None:
        ctx = self._ctx
        self._collect_frames()
        chunk_count = len(self._frames)
        if chunk_count == 0:
            return
        if not is_final and chunk_count <= self._last_transcribed_count:
            return

        pcm = b"".join(frame.pcm16_bytes for frame in self._frames)
        if len(pcm) < self._timings.cloud_min_audio_bytes and not is_final:
            return

        first = self._frames[0]
        self._debug.log("transcribe", f"Sending {len(pcm)} bytes", isFinal=is_final)
        try:
            text = await self._transcriber.transcribe(
                pcm,
                sample_rate=first.sample_rate,
                channels=first.channels,
                language=ctx.config.language,
            )
        except TranscriptionError as exc:
            logger.error("Transcription error [%s]: %s", exc.code, exc.message)
            self._debug.log("error", "transcription error", error=exc.message, code=exc.code)
            if self._on_transcription_error:
                self._on_transcription_error(exc)
            return

        if not text or (ctx.finalizing and not is_final):
            return
        self._last_transcribed_count = chunk_count

        normalized = normalize_transcript(text)
        if not normalized:
            return
        self._debug.log("result", "transcription result", text=normalized, isFinal=is_final)

        merged = merge_transcript_chunks(ctx.combined_transcript, normalized)
        changed = merged != ctx.combined_transcript
        ctx.combined_transcript = merged
        if changed:
            self._pipeline.schedule()

    def _collect_frames(self) -> None:
        while True:
            try:
                frame = self._audio_queue.get_nowait()
            except Empty:
                return
            if frame is not None and frame.pcm16_bytes:
                self._frames.append(frame)
