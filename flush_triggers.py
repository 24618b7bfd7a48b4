"""Policies deciding when the native in-flight partial becomes a queued suffix."""

from __future__ import annotations

import logging
import time
from typing import Callable

from debug_log import DebugLog
from dispatch_queue import NativeSuffixQueue
from models import FlushReason, SessionContext
from scheduling import SessionTimers
from transcript_text import normalize_transcript

logger = logging.getLogger(__name__)

PROCESS_TIMER = "native-process"
SILENCE_WATCHDOG = "native-silence"


class NativeFlushTriggers:
    """Promotes the native partial on a timer, after silence, or on events.

    The process timer is not re-armed while pending, so continuous speech
    is flushed at a steady cadence instead of being postponed forever.
    """

    def __init__(
        self,
        ctx: SessionContext,
        queue: NativeSuffixQueue,
        timers: SessionTimers,
        debug: DebugLog,
        process_debounce_s: float = 1.0,
        silence_flush_s: float = 60.0,
        silence_poll_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ctx = ctx
        self._queue = queue
        self._timers = timers
        self._debug = debug
        self._process_debounce_s = process_debounce_s
        self._silence_flush_s = silence_flush_s
        self._silence_poll_s = silence_poll_s
        self._clock = clock

    def mark_activity(self) -> None:
        self._ctx.last_transcript_at = self._clock()

    def on_transcript(self, text: str, is_final: bool) -> None:
        ctx = self._ctx
        normalized = normalize_transcript(text)
        ctx.last_transcript_at = self._clock()
        ctx.current_partial = normalized
        if not ctx.finalizing:
            self.schedule_process_timer()
        self._debug.log(
            "result",
            "native transcript",
            transcript=normalized,
            isFinal=is_final,
            reason="raw",
            raw_len=len(normalized),
            delta_len=0,
            queue_len=len(ctx.suffix_queue),
            typed_ok=False,
        )
        if not normalized:
            return
        if ctx.push_to_talk:
            # One evolving snapshot per utterance, not merged segments.
            ctx.combined_transcript = normalized
            return
        if is_final:
            self.stop_process_timer()
            self.flush_current_partial(FlushReason.FINAL)
            ctx.current_partial = ""

    def flush_current_partial(self, reason: FlushReason) -> None:
        pending = normalize_transcript(self._ctx.current_partial)
        if not pending:
            return
        self._queue.enqueue(reason, pending)
        self._ctx.current_partial = ""
        self._ctx.last_transcript_at = self._clock()
        logger.debug("Native partial finalized (%s): %r", reason.value, pending)
        self._debug.log(
            "result",
            "native transcript",
            transcript=pending,
            isFinal=True,
            synthesized=True,
            reason=reason.value,
            raw_len=len(pending),
            delta_len=0,
            queue_len=len(self._ctx.suffix_queue),
            typed_ok=False,
        )

    def schedule_process_timer(self) -> None:
        if self._ctx.push_to_talk:
            return
        if self._timers.is_pending(PROCESS_TIMER):
            return
        self._timers.call_later(PROCESS_TIMER, self._process_debounce_s, self._on_process_timer)

    def stop_process_timer(self) -> None:
        self._timers.cancel(PROCESS_TIMER)

    def start_silence_watchdog(self) -> None:
        if self._ctx.push_to_talk:
            return
        self._timers.call_every(SILENCE_WATCHDOG, self._silence_poll_s, self._on_silence_poll)

    def stop_silence_watchdog(self) -> None:
        self._timers.cancel(SILENCE_WATCHDOG)

    def _on_process_timer(self) -> None:
        if not self._ctx.is_active:
            return
        self.flush_current_partial(FlushReason.TIMER)

    def _on_silence_poll(self) -> None:
        ctx = self._ctx
        if not ctx.is_active:
            return
        if not normalize_transcript(ctx.current_partial):
            return
        last_at = ctx.last_transcript_at
        if not last_at:
            return
        if self._clock() - last_at < self._silence_flush_s:
            return
        self.flush_current_partial(FlushReason.SILENCE)
