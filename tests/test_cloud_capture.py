"""Tests for CloudCapture."""

from __future__ import annotations

import asyncio
from queue import Queue
from unittest.mock import MagicMock

from cloud_capture import POLL_TIMER, CloudCapture
from config import EngineTimings
from debug_log import DebugLog
from errors import AUTH_FAILED, TranscriptionError
from models import AudioFrame, SessionConfig, SessionContext, SessionState, SpeechBackend
from scheduling import SessionTimers


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

TIMINGS = EngineTimings(cloud_poll_interval_s=0.05, cloud_recorder_flush_s=0.0, drain_poll_s=0.005)


def _frame(n_bytes: int = 3200) -> AudioFrame:
    return AudioFrame(pcm16_bytes=b"\x01" * n_bytes, sample_rate=16000, channels=1)


class FakeRecorder:
    def __init__(self) -> None:
        self.queue: Queue[AudioFrame | None] | None = None
        self.started = False
        self.stopped = False

    def check_input_device(self) -> None:
        pass

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        self.started = True
        self.queue = audio_queue

    def stop(self) -> None:
        self.stopped = True
        if self.queue is not None:
            self.queue.put_nowait(None)

    def push(self, frame: AudioFrame) -> None:
        assert self.queue is not None
        self.queue.put_nowait(frame)


class FakeTranscriber:
    def __init__(self, replies: list | None = None, delay_s: float = 0.0) -> None:
        self.replies = list(replies or [])
        self.delay_s = delay_s
        self.calls: list[tuple[int, str]] = []

    async def transcribe(self, pcm: bytes, sample_rate: int, channels: int, language: str) -> str:
        self.calls.append((len(pcm), language))
        await asyncio.sleep(self.delay_s)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply


def _make_capture(transcriber: FakeTranscriber, push_to_talk: bool = False):  # noqa: ANN202
    ctx = SessionContext(
        session_id=1,
        config=SessionConfig(backend=SpeechBackend.CLOUD, language="fr-FR", has_api_key=True, push_to_talk=push_to_talk),
        state=SessionState.LISTENING,
    )
    recorder = FakeRecorder()
    pipeline = MagicMock()
    timers = SessionTimers()
    errors: list[TranscriptionError] = []
    capture = CloudCapture(
        ctx,
        recorder,
        transcriber,
        pipeline,
        timers,
        DebugLog(),
        timings=TIMINGS,
        on_transcription_error=errors.append,
    )
    return ctx, recorder, pipeline, timers, capture, errors


# ---------------------------------------------------------------
# Start / poll
# ---------------------------------------------------------------

def test_start_arms_periodic_poll() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["hello", "hello world"])
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)

        capture.start()
        assert recorder.started is True
        assert timers.is_pending(POLL_TIMER)

        recorder.push(_frame())
        await asyncio.sleep(0.07)
        recorder.push(_frame())
        await asyncio.sleep(0.07)
        capture.stop_polling()

        assert [size for size, _ in transcriber.calls] == [3200, 6400]
        assert transcriber.calls[0][1] == "fr-FR"
        assert ctx.combined_transcript == "hello world"
        assert pipeline.schedule.call_count == 2

    asyncio.run(scenario())


def test_push_to_talk_does_not_poll() -> None:
    async def scenario() -> None:
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(FakeTranscriber(), push_to_talk=True)
        capture.start()
        assert recorder.started is True
        assert not timers.is_pending(POLL_TIMER)

    asyncio.run(scenario())


def test_poll_skips_when_no_new_audio() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["hello"])
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame())

        await capture.send_transcription(is_final=False)
        await capture.send_transcription(is_final=False)

        assert len(transcriber.calls) == 1

    asyncio.run(scenario())


def test_short_audio_is_only_sent_when_final() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["hi"])
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame(200))

        await capture.send_transcription(is_final=False)
        assert transcriber.calls == []

        await capture.final_transcription()
        assert len(transcriber.calls) == 1
        assert ctx.combined_transcript == "hi"

    asyncio.run(scenario())


def test_poll_is_skipped_while_in_flight() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["one", "two"], delay_s=0.08)
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame())

        await asyncio.sleep(0.07)
        assert capture.in_flight is True
        recorder.push(_frame())
        await asyncio.sleep(0.05)
        assert len(transcriber.calls) == 1
        capture.stop_polling()
        assert await capture.wait_for_in_flight() is True

    asyncio.run(scenario())


# ---------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------

def test_result_arriving_after_finalize_started_is_dropped() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["late words"], delay_s=0.02)
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame())

        task = asyncio.ensure_future(capture.send_transcription(is_final=False))
        await asyncio.sleep(0.005)
        ctx.finalizing = True
        await task

        assert ctx.combined_transcript == ""
        pipeline.schedule.assert_not_called()

    asyncio.run(scenario())


def test_overlapping_results_are_merged() -> None:
    async def scenario() -> None:
        transcriber = FakeTranscriber(["the quick brown", "quick brown fox jumps"])
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame())
        await capture.send_transcription(is_final=False)
        recorder.push(_frame())
        await capture.send_transcription(is_final=False)

        assert ctx.combined_transcript == "the quick brown fox jumps"

    asyncio.run(scenario())


def test_transcription_error_is_reported() -> None:
    async def scenario() -> None:
        failure = TranscriptionError(AUTH_FAILED, "Invalid API-key provided.")
        transcriber = FakeTranscriber([failure])
        ctx, recorder, pipeline, timers, capture, errors = _make_capture(transcriber)
        capture.start()
        recorder.push(_frame())

        await capture.send_transcription(is_final=False)

        assert errors == [failure]
        assert ctx.combined_transcript == ""

    asyncio.run(scenario())


def test_stop_recording_collects_remaining_audio() -> None:
    async def scenario() -> None:
        ctx, recorder, pipeline, timers, capture, _ = _make_capture(FakeTranscriber())
        capture.start()
        recorder.push(_frame())
        recorder.push(_frame())

        await capture.stop_recording(flush=True)
        await capture.stop_recording()

        assert recorder.stopped is True
        assert capture.chunk_count == 2
        assert not timers.is_pending(POLL_TIMER)

    asyncio.run(scenario())
