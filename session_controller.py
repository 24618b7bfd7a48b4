"""State-machine based session orchestration and finalization."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from cloud_capture import CloudCapture
from config import EngineTimings
from debug_log import DebugLog
from dispatch_queue import NativeSuffixQueue
from errors import (
    AUTH_FAILED,
    BACKEND_MISCONFIGURED,
    BACKEND_START_FAILED,
    DRAIN_TIMEOUT,
    ERROR_MESSAGES,
    NO_ACTIVE_TARGET,
    PERMISSION_DENIED,
    BackendStartError,
    TranscriptionError,
)
from flush_triggers import NativeFlushTriggers
from interfaces import CloudTranscriber, NativeSpeechBackend, Recorder, Refiner, SettingsProvider, TextSink
from live_typing import LiveTyper
from models import (
    FlushReason,
    InsertResult,
    RecognitionEvent,
    RecognitionKind,
    SessionContext,
    SessionState,
    SpeechBackend,
)
from refinement import LiveRefinePipeline
from scheduling import SessionTimers
from transcript_text import normalize_transcript

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
TextCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
CloseCallback = Callable[[], None]


@dataclass
class _SessionRuntime:
    """Per-session components; replaced wholesale on every start."""

    ctx: SessionContext
    timers: SessionTimers
    queue: NativeSuffixQueue
    triggers: NativeFlushTriggers
    typer: LiveTyper
    pipeline: LiveRefinePipeline
    cloud: Optional[CloudCapture] = None
    events_task: Optional[asyncio.Task[None]] = None


class SessionController:
    """Drives one dictation session at a time: start, live delivery, finalize.

    Every asynchronous start step re-checks the start sequence number when
    it resumes. ``stop_session`` and newer starts bump that number, so a
    superseded step releases what it acquired and leaves the session alone.
    """

    def __init__(
        self,
        settings: SettingsProvider,
        recorder: Recorder,
        transcriber: CloudTranscriber,
        native_backend: NativeSpeechBackend,
        sink: TextSink,
        refiner: Refiner,
        debug: Optional[DebugLog] = None,
        timings: EngineTimings = EngineTimings(),
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateCallback] = None,
        on_status: Optional[TextCallback] = None,
        on_partial: Optional[TextCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> None:
        self._settings = settings
        self._recorder = recorder
        self._transcriber = transcriber
        self._native_backend = native_backend
        self._sink = sink
        self._refiner = refiner
        self._debug = debug or DebugLog()
        self._timings = timings
        self._clock = clock
        self._on_state_change = on_state_change
        self._on_status = on_status
        self._on_partial = on_partial
        self._on_error = on_error
        self._on_close = on_close

        self._state = SessionState.IDLE
        self._session_counter = 0
        self._start_seq = 0
        self._start_in_flight = False
        self._force_native = False
        self._runtime: Optional[_SessionRuntime] = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[SessionContext]:
        return self._runtime.ctx if self._runtime else None

    @property
    def debug_log(self) -> DebugLog:
        return self._debug

    def replace_transcriber(self, transcriber: CloudTranscriber) -> None:
        """Takes effect on the next session."""
        self._transcriber = transcriber

    def replace_refiner(self, refiner: Refiner) -> None:
        self._refiner = refiner

    def replace_sink(self, sink: TextSink) -> None:
        self._sink = sink

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(self) -> bool:
        if self._start_in_flight:
            return False
        if self._state in (SessionState.LISTENING, SessionState.PROCESSING):
            return False
        self._start_in_flight = True
        self._start_seq += 1
        try:
            return await self._start(self._start_seq)
        finally:
            self._start_in_flight = False

    async def _start(self, seq: int) -> bool:
        if self._state == SessionState.ERROR:
            self._transition(SessionState.IDLE)

        config = self._settings.session_config()
        if self._force_native and config.backend != SpeechBackend.NATIVE:
            config = replace(config, backend=SpeechBackend.NATIVE)
        self._force_native = False

        self._session_counter += 1
        rt = self._build_runtime(SessionContext(session_id=self._session_counter, config=config))
        self._runtime = rt
        self._debug.log(
            "start",
            "session starting",
            session=rt.ctx.session_id,
            backend=config.backend.value,
            language=config.language,
            pushToTalk=config.push_to_talk,
        )
        self._transition(SessionState.LISTENING)
        self._emit_status("Listening...")

        if config.backend == SpeechBackend.CLOUD:
            return await self._start_cloud(rt, seq)
        return await self._start_native(rt, seq)

    async def _start_cloud(self, rt: _SessionRuntime, seq: int) -> bool:
        assert rt.cloud is not None
        try:
            await asyncio.to_thread(self._recorder.check_input_device)
        except Exception as exc:
            if seq != self._start_seq:
                return False
            await self._fail(rt, PERMISSION_DENIED, f"{ERROR_MESSAGES[PERMISSION_DENIED]} ({exc})")
            return False
        if seq != self._start_seq:
            self._debug.log("start", "stale cloud start discarded", seq=seq)
            return False

        try:
            rt.cloud.start()
        except Exception as exc:
            await self._fail(rt, PERMISSION_DENIED, f"{ERROR_MESSAGES[PERMISSION_DENIED]} ({exc})")
            return False
        return True

    async def _start_native(self, rt: _SessionRuntime, seq: int) -> bool:
        events: asyncio.Queue[RecognitionEvent] = asyncio.Queue()
        try:
            await self._native_backend.start(rt.ctx.config.language, events)
        except Exception as exc:
            if seq != self._start_seq:
                return False
            message = exc.message if isinstance(exc, BackendStartError) else str(exc)
            await self._fail(rt, BACKEND_START_FAILED, message or ERROR_MESSAGES[BACKEND_START_FAILED])
            return False

        if seq != self._start_seq:
            self._debug.log("start", "stale native start discarded", seq=seq)
            await self._stop_native_backend()
            return False

        rt.triggers.mark_activity()
        rt.triggers.start_silence_watchdog()
        rt.events_task = asyncio.get_running_loop().create_task(self._dispatch_native_events(rt, events))
        return True

    def _build_runtime(self, ctx: SessionContext) -> _SessionRuntime:
        t = self._timings
        timers = SessionTimers()
        queue = NativeSuffixQueue(
            ctx,
            self._sink,
            timers,
            self._debug,
            max_retries=t.native_max_type_retries,
            requeue_delay_s=t.native_requeue_delay_s,
            attempts_per_cycle=2 if getattr(self._sink, "in_app", False) else 1,
            on_error=self._emit_error,
        )
        triggers = NativeFlushTriggers(
            ctx,
            queue,
            timers,
            self._debug,
            process_debounce_s=t.native_process_debounce_s,
            silence_flush_s=t.native_silence_flush_s,
            silence_poll_s=t.native_silence_poll_s,
            clock=self._clock,
        )
        typer = LiveTyper(ctx, self._sink, self._debug)
        pipeline = LiveRefinePipeline(
            ctx,
            self._refiner,
            typer,
            timers,
            self._debug,
            debounce_s=t.live_refine_debounce_s,
            on_refined=self._emit_partial,
        )
        rt = _SessionRuntime(ctx=ctx, timers=timers, queue=queue, triggers=triggers, typer=typer, pipeline=pipeline)
        if ctx.backend == SpeechBackend.CLOUD:
            rt.cloud = CloudCapture(
                ctx,
                self._recorder,
                self._transcriber,
                pipeline,
                timers,
                self._debug,
                timings=t,
                on_transcription_error=lambda exc: self._on_transcription_error(rt, exc),
            )
        return rt

    # ------------------------------------------------------------------
    # Native recognizer events
    # ------------------------------------------------------------------

    async def _dispatch_native_events(
        self,
        rt: _SessionRuntime,
        events: asyncio.Queue[RecognitionEvent],
    ) -> None:
        while True:
            event = await events.get()
            if rt is not self._runtime:
                return
            try:
                self._handle_native_event(rt, event)
            except Exception:
                logger.exception("Native event handling failed: %s", event.kind)
            if event.kind == RecognitionKind.ENDED.value:
                return

    def _handle_native_event(self, rt: _SessionRuntime, event: RecognitionEvent) -> None:
        ctx = rt.ctx
        kind = event.kind
        if kind == RecognitionKind.READY.value:
            self._debug.log("start", "native recognizer ready")
            rt.triggers.mark_activity()
            return

        if kind == RecognitionKind.ERROR.value:
            message = event.message or ERROR_MESSAGES[BACKEND_START_FAILED]
            self._debug.log("error", "native recognizer error", error=message)
            if ctx.is_active:
                self._spawn(self._fail(rt, BACKEND_START_FAILED, message))
            elif ctx.finalizing:
                ctx.native_ended = True
            return

        if kind == RecognitionKind.TRANSCRIPT.value:
            if ctx.state not in (SessionState.LISTENING, SessionState.PROCESSING):
                return
            rt.triggers.on_transcript(event.text, event.is_final)
            text = normalize_transcript(event.text)
            if text:
                self._emit_partial(text)
            return

        if kind == RecognitionKind.ENDED.value:
            ctx.native_ended = True
            self._debug.log("stop", "native recognizer ended", finalizing=ctx.finalizing)
            if not ctx.is_active:
                return
            rt.triggers.flush_current_partial(FlushReason.ENDED)
            if ctx.combined_transcript or ctx.suffix_queue or ctx.live_typed_text:
                self._spawn(self.stop_session(close_after=True))
            else:
                self._spawn(self._end_quietly(rt))

    # ------------------------------------------------------------------
    # Cloud transcription errors
    # ------------------------------------------------------------------

    def _on_transcription_error(self, rt: _SessionRuntime, exc: TranscriptionError) -> None:
        if rt is not self._runtime:
            return
        if exc.code == AUTH_FAILED:
            self._emit_error(AUTH_FAILED, ERROR_MESSAGES[AUTH_FAILED])
            if rt.ctx.is_active:
                self._spawn(self._abort(rt, SessionState.ERROR))
            return
        if exc.code == BACKEND_MISCONFIGURED:
            self._force_native = True
            self._emit_error(BACKEND_MISCONFIGURED, ERROR_MESSAGES[BACKEND_MISCONFIGURED])
            if rt.ctx.is_active:
                self._spawn(self._abort(rt, SessionState.IDLE))
            return
        logger.info("Ignoring transient transcription error [%s]: %s", exc.code, exc.message)

    # ------------------------------------------------------------------
    # Stop / finalize
    # ------------------------------------------------------------------

    async def stop_session(self, close_after: bool = True) -> None:
        rt = self._runtime
        if rt is None or self._state != SessionState.LISTENING or rt.ctx.finalizing:
            return
        ctx = rt.ctx
        ctx.finalizing = True
        self._start_seq += 1
        self._transition(SessionState.PROCESSING)
        self._emit_status("Processing...")
        self._debug.log("stop", "finalize started", backend=ctx.backend.value, closeAfter=close_after)

        try:
            if ctx.backend == SpeechBackend.CLOUD:
                final_text = await self._finalize_cloud(rt)
            else:
                final_text = await self._finalize_native(rt)
            await self._deliver_fallback(rt, final_text)
        except Exception:
            logger.exception("Finalize failed")
            self._debug.log("error", "finalize failed")
        finally:
            await self._teardown(rt)
            self._debug.log(
                "stop",
                "finalize finished",
                typed_len=len(ctx.live_typed_text),
                queue_len=len(ctx.suffix_queue),
            )
            if self._runtime is rt:
                self._transition(SessionState.IDLE)
                self._emit_status("")
            if close_after and self._on_close:
                self._on_close()

    async def _finalize_native(self, rt: _SessionRuntime) -> str:
        ctx = rt.ctx
        t = self._timings
        rt.triggers.stop_silence_watchdog()
        rt.triggers.stop_process_timer()
        rt.triggers.flush_current_partial(FlushReason.STOP)

        if not await self._wait_until(rt.queue.is_idle, t.native_final_drain_timeout_s):
            self._report_drain_timeout(ctx, "before stop")

        await self._stop_native_backend()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + t.native_post_stop_drain_s
        while loop.time() < deadline:
            settling = bool(ctx.last_transcript_at) and self._clock() - ctx.last_transcript_at < t.native_settle_s
            if rt.queue.is_idle() and ctx.native_ended and not settling:
                break
            await asyncio.sleep(t.drain_poll_s)

        rt.triggers.flush_current_partial(FlushReason.STOP)
        if ctx.suffix_queue and not await self._wait_until(rt.queue.is_idle, t.native_final_drain_timeout_s):
            self._report_drain_timeout(ctx, "after stop")
        return normalize_transcript(ctx.combined_transcript)

    async def _finalize_cloud(self, rt: _SessionRuntime) -> str:
        assert rt.cloud is not None
        ctx = rt.ctx
        t = self._timings
        rt.pipeline.cancel()
        await rt.cloud.stop_recording(flush=True)
        await rt.cloud.wait_for_in_flight()
        await rt.cloud.final_transcription()
        if not await rt.typer.wait_idle(t.final_insert_timeout_s):
            self._report_drain_timeout(ctx, "live typing")

        combined = normalize_transcript(ctx.combined_transcript)
        if not combined:
            return ""
        refined = await rt.pipeline.refine_and_apply(combined, force=True)
        if not await rt.typer.wait_idle(t.final_insert_timeout_s):
            self._report_drain_timeout(ctx, "live typing")
        return refined or combined

    async def _deliver_fallback(self, rt: _SessionRuntime, text: str) -> None:
        ctx = rt.ctx
        text = normalize_transcript(text)
        if ctx.live_typed_text or not text:
            return
        self._debug.log("result", "one-shot insert", raw_len=len(text))
        try:
            result = await asyncio.wait_for(self._sink.insert_text(text), self._timings.final_insert_timeout_s)
        except asyncio.TimeoutError:
            result = InsertResult(consumed=False, reason="timeout")
        except Exception as exc:
            result = InsertResult(consumed=False, reason=str(exc))
        if result.consumed:
            ctx.live_typed_text = text
            return
        self._debug.log("error", "one-shot insert failed", reason=result.reason)
        self._emit_error(NO_ACTIVE_TARGET, ERROR_MESSAGES[NO_ACTIVE_TARGET])

    async def cancel_session(self, reason: str) -> None:
        """Tear the session down without delivering anything."""
        rt = self._runtime
        if self._state in (SessionState.IDLE, SessionState.PROCESSING):
            return
        self._start_seq += 1
        logger.info("Cancelling session: %s", reason)
        if rt is not None:
            rt.ctx.finalizing = True
            self._debug.log("stop", "session cancelled", reason=reason)
            await self._teardown(rt)
        self._transition(SessionState.IDLE)
        self._emit_status("")

    # ------------------------------------------------------------------
    # Failure paths and teardown
    # ------------------------------------------------------------------

    async def _fail(self, rt: _SessionRuntime, code: str, message: str) -> None:
        self._debug.log("error", "session failed", code=code, error=message)
        logger.error("Session failed [%s]: %s", code, message)
        self._emit_error(code, message)
        await self._abort(rt, SessionState.ERROR)

    async def _abort(self, rt: _SessionRuntime, to_state: SessionState) -> None:
        if rt is not self._runtime or rt.ctx.state != SessionState.LISTENING:
            return
        rt.ctx.finalizing = True
        self._start_seq += 1
        await self._teardown(rt)
        self._transition(to_state)
        if to_state == SessionState.IDLE:
            self._emit_status("")

    async def _end_quietly(self, rt: _SessionRuntime) -> None:
        await self._abort(rt, SessionState.IDLE)
        if self._on_close:
            self._on_close()

    async def _teardown(self, rt: _SessionRuntime) -> None:
        rt.ctx.refine_seq += 1
        rt.queue.close()
        rt.typer.close()
        rt.timers.cancel_all()
        if rt.cloud is not None:
            await rt.cloud.stop_recording()
        else:
            await self._stop_native_backend()
        task = rt.events_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _stop_native_backend(self) -> None:
        try:
            await self._native_backend.stop()
        except Exception as exc:
            logger.warning("Native recognizer stop failed: %s", exc)

    def _report_drain_timeout(self, ctx: SessionContext, stage: str) -> None:
        self._debug.log("error", "drain timeout", stage=stage, queue_len=len(ctx.suffix_queue))
        logger.warning("%s (%s)", ERROR_MESSAGES[DRAIN_TIMEOUT], stage)

    async def _wait_until(self, predicate: Callable[[], bool], timeout_s: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while not predicate():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self._timings.drain_poll_s)
        return True

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _emit_status(self, text: str) -> None:
        if self._on_status:
            self._on_status(text)

    def _emit_partial(self, text: str) -> None:
        if self._on_partial:
            self._on_partial(text)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if self._runtime is not None:
            self._runtime.ctx.state = to_state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
