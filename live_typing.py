"""Serialized live typing of append-only deltas."""

from __future__ import annotations

import asyncio
import logging

from debug_log import DebugLog
from interfaces import TextSink
from models import InsertResult, SessionContext
from transcript_text import compute_append_only_delta, format_delta_for_append, normalize_transcript

logger = logging.getLogger(__name__)


class LiveTyper:
    """Single ordered delivery chain for refined transcripts.

    Every ``apply`` call is queued behind the previous one, so deliveries
    triggered from different timers never interleave.  On success the
    whole applied transcript becomes the new live-typed text.
    """

    def __init__(self, ctx: SessionContext, sink: TextSink, debug: DebugLog) -> None:
        self._ctx = ctx
        self._sink = sink
        self._debug = debug
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Cancel queued deliveries; later ``apply`` calls are ignored."""
        self._closed = True
        for task in list(self._pending):
            task.cancel()

    def apply(self, next_text: str) -> None:
        if self._ctx.push_to_talk or self._closed:
            return
        normalized = normalize_transcript(next_text)
        if not normalized:
            return
        task = asyncio.get_running_loop().create_task(self._run(normalized))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_idle(self, timeout_s: float | None = None) -> bool:
        """Wait until everything queued so far, and anything queued meanwhile, is done.

        Returns False when ``timeout_s`` elapsed first; pending deliveries
        keep running in that case.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout_s is None else loop.time() + timeout_s
        while self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self._pending), timeout=remaining)
        return True

    async def _run(self, normalized_next: str) -> None:
        async with self._lock:
            try:
                await self._type_delta(normalized_next)
            except Exception:
                logger.exception("Live typing step failed")

    async def _type_delta(self, normalized_next: str) -> None:
        if self._closed:
            return
        previous = normalize_transcript(self._ctx.live_typed_text)
        delta = compute_append_only_delta(previous, normalized_next)
        if not delta:
            return
        append_text = format_delta_for_append(previous, delta)
        if not append_text:
            return
        result = await self._insert(append_text)
        self._debug.log(
            "result",
            "live delta typed" if result.consumed else "live delta not typed",
            raw_len=len(normalized_next),
            delta_len=len(append_text),
            typed_ok=result.consumed,
        )
        if result.consumed:
            self._ctx.live_typed_text = normalized_next

    async def _insert(self, text: str) -> InsertResult:
        try:
            return await self._sink.insert_text(text)
        except Exception as exc:
            return InsertResult(consumed=False, reason=str(exc))
