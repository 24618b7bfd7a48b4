"""Named, cancelable timers owned by a single dictation session."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Any]


class SessionTimers:
    """Owns every scheduled callback of one session.

    Each timer is an asyncio task registered under a name, so re-arming,
    checking and cancelling one never touches the others.  When a timer
    fires, a coroutine returned by its callback is detached into a tracked
    background task: re-arming or cancelling the timer afterwards never
    interrupts work that already started.
    """

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def call_later(self, name: str, delay_s: float, callback: TimerCallback) -> None:
        """(Re)arm the one-shot timer ``name``."""
        self.cancel(name)
        self._timers[name] = asyncio.get_running_loop().create_task(
            self._run_once(name, delay_s, callback)
        )

    def call_every(self, name: str, interval_s: float, callback: TimerCallback) -> None:
        """(Re)arm the repeating timer ``name``."""
        self.cancel(name)
        self._timers[name] = asyncio.get_running_loop().create_task(
            self._run_every(name, interval_s, callback)
        )

    def is_pending(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    def cancel(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        """Cancel every timer and every background task except the caller's own."""
        for name in list(self._timers):
            self.cancel(name)
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    @property
    def pending_names(self) -> list[str]:
        return [name for name, task in self._timers.items() if not task.done()]

    async def _run_once(self, name: str, delay_s: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay_s)
        if self._timers.get(name) is asyncio.current_task():
            del self._timers[name]
        self._fire(callback)

    async def _run_every(self, name: str, interval_s: float, callback: TimerCallback) -> None:
        while self._timers.get(name) is asyncio.current_task():
            await asyncio.sleep(interval_s)
            self._fire(callback)

    def _fire(self, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Timer callback failed")
            return
        if inspect.isawaitable(result):
            self.spawn(result)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)
