"""FIFO of settled native suffixes awaiting delivery to the text sink."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from debug_log import DebugLog
from errors import ERROR_MESSAGES, TYPING_FAILED
from interfaces import TextSink
from models import FlushReason, PendingSuffix, SessionContext
from scheduling import SessionTimers
from transcript_text import (
    extract_strict_suffix,
    format_delta_for_append,
    merge_transcript_chunks,
    normalize_transcript,
)

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, str], None]

REQUEUE_TIMER = "native-requeue"


class NativeSuffixQueue:
    """Delivers native suffixes in order with bounded per-item retries.

    A suffix that fails to type is moved to the back of the queue and the
    drain pauses, so one stuck item cannot starve the suffixes behind it.
    After ``max_retries`` failed cycles the item is dropped.
    """

    def __init__(
        self,
        ctx: SessionContext,
        sink: TextSink,
        timers: SessionTimers,
        debug: DebugLog,
        max_retries: int = 2,
        requeue_delay_s: float = 0.22,
        attempts_per_cycle: int = 1,
        retry_pause_s: float = 0.07,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._ctx = ctx
        self._sink = sink
        self._timers = timers
        self._debug = debug
        self._max_retries = max_retries
        self._requeue_delay_s = requeue_delay_s
        self._attempts_per_cycle = max(1, attempts_per_cycle)
        self._retry_pause_s = retry_pause_s
        self._on_error = on_error
        self._in_flight = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Abandon everything still queued; later enqueues and drains do nothing."""
        self._closed = True
        if self._ctx.suffix_queue:
            self._debug.log("stop", "native suffixes abandoned", queue_len=len(self._ctx.suffix_queue))
            self._ctx.suffix_queue.clear()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def items(self) -> list[PendingSuffix]:
        return list(self._ctx.suffix_queue)

    def is_idle(self) -> bool:
        return not self._in_flight and not self._ctx.suffix_queue

    def enqueue(self, reason: FlushReason, raw_snapshot: str) -> Optional[PendingSuffix]:
        """Turn a settled raw snapshot into a queued suffix and start draining."""
        ctx = self._ctx
        if self._closed:
            return None
        next_raw = normalize_transcript(raw_snapshot)
        if not next_raw:
            return None

        if ctx.push_to_talk:
            ctx.combined_transcript = next_raw
            ctx.anchor = next_raw
            return None

        prev_raw = normalize_transcript(ctx.anchor)
        if next_raw == prev_raw:
            return None

        suffix = normalize_transcript(extract_strict_suffix(prev_raw, next_raw))
        ctx.anchor = next_raw
        if not ctx.live_typed_text:
            ctx.combined_transcript = merge_transcript_chunks(ctx.combined_transcript, next_raw)

        self._log_result("native suffix extracted", reason, len(next_raw), len(suffix))
        if not suffix:
            return None

        if suffix == normalize_transcript(ctx.last_queued_suffix):
            self._log_result("native suffix deduped", reason, len(next_raw), len(suffix))
            return None

        ctx.last_queued_suffix = suffix
        item = PendingSuffix(text=suffix, reason=reason)
        ctx.suffix_queue.append(item)
        self._log_result("native suffix queued", reason, len(next_raw), len(suffix))
        self._timers.spawn(self.drain())
        return item

    async def drain(self) -> None:
        """Deliver queued suffixes head to tail; re-entrant calls return at once."""
        if self._ctx.push_to_talk or self._closed:
            self._ctx.suffix_queue.clear()
            return
        if self._in_flight:
            return
        self._in_flight = True
        queue = self._ctx.suffix_queue
        try:
            while queue:
                current = queue[0]
                suffix = normalize_transcript(current.text)
                if not suffix:
                    queue.popleft()
                    continue

                previously_typed = normalize_transcript(self._ctx.live_typed_text)
                append_text = format_delta_for_append(previously_typed, suffix)
                if not append_text:
                    queue.popleft()
                    self._log_result("native suffix dropped", current.reason, self._anchor_len(), len(suffix))
                    continue

                delivered = await self._deliver(append_text)
                if self._closed:
                    if delivered:
                        self._ctx.live_typed_text = normalize_transcript(f"{previously_typed}{append_text}")
                    return
                if delivered:
                    queue.popleft()
                    next_typed = normalize_transcript(f"{previously_typed}{append_text}")
                    self._ctx.live_typed_text = next_typed
                    self._ctx.combined_transcript = next_typed
                    self._log_result("native suffix typed", current.reason, self._anchor_len(), len(suffix), typed_ok=True)
                    continue

                current.attempts += 1
                self._debug.log(
                    "error",
                    "native suffix typing failed",
                    reason=current.reason.value,
                    raw_len=self._anchor_len(),
                    delta_len=len(suffix),
                    queue_len=len(queue),
                    typed_ok=False,
                    attempts=current.attempts,
                )
                self._emit_error(TYPING_FAILED, ERROR_MESSAGES[TYPING_FAILED])
                if current.attempts >= self._max_retries:
                    queue.popleft()
                    self._debug.log(
                        "error",
                        "native suffix dropped after retries",
                        reason=current.reason.value,
                        raw_len=self._anchor_len(),
                        delta_len=len(suffix),
                        queue_len=len(queue),
                        typed_ok=False,
                    )
                    logger.warning("Dropped suffix after %d failed attempts: %r", current.attempts, suffix)
                    continue

                queue.rotate(-1)
                self._timers.call_later(REQUEUE_TIMER, self._requeue_delay_s, self.drain)
                break
        finally:
            self._in_flight = False

    async def _deliver(self, text: str) -> bool:
        for attempt in range(self._attempts_per_cycle):
            if attempt > 0:
                await asyncio.sleep(self._retry_pause_s)
                if self._closed:
                    return False
            try:
                result = await self._sink.insert_text(text)
            except Exception as exc:
                logger.warning("Text sink raised: %s", exc)
                continue
            if result.consumed:
                return True
        return False

    def _anchor_len(self) -> int:
        return len(normalize_transcript(self._ctx.anchor))

    def _log_result(
        self,
        message: str,
        reason: FlushReason,
        raw_len: int,
        delta_len: int,
        typed_ok: bool = False,
    ) -> None:
        self._debug.log(
            "result",
            message,
            reason=reason.value,
            raw_len=raw_len,
            delta_len=delta_len,
            queue_len=len(self._ctx.suffix_queue),
            typed_ok=typed_ok,
        )

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)
