"""Tests for LiveTyper."""

from __future__ import annotations

import asyncio

from debug_log import DebugLog
from live_typing import LiveTyper
from models import InsertResult, SessionConfig, SessionContext, SessionState


class FakeSink:
    def __init__(self, consumed: bool = True, delay_s: float = 0.0) -> None:
        self.calls: list[str] = []
        self.consumed = consumed
        self.delay_s = delay_s
        self.active = 0
        self.max_active = 0

    async def insert_text(self, text: str) -> InsertResult:
        self.calls.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.active -= 1
        return InsertResult(consumed=self.consumed)


def _make_ctx(push_to_talk: bool = False) -> SessionContext:
    return SessionContext(
        session_id=1,
        config=SessionConfig(push_to_talk=push_to_talk),
        state=SessionState.LISTENING,
    )


def test_apply_types_only_the_new_tail() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        sink = FakeSink()
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("hello")
        typer.apply("hello world")
        assert await typer.wait_idle() is True

        assert sink.calls == ["hello", " world"]
        assert ctx.live_typed_text == "hello world"

    asyncio.run(scenario())


def test_rewritten_transcript_is_not_replayed() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        ctx.live_typed_text = "meet at noon"
        sink = FakeSink()
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("something else entirely")
        await typer.wait_idle()

        assert sink.calls == []
        assert ctx.live_typed_text == "meet at noon"

    asyncio.run(scenario())


def test_failed_insert_keeps_typed_text() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        sink = FakeSink(consumed=False)
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("hello")
        await typer.wait_idle()

        assert sink.calls == ["hello"]
        assert ctx.live_typed_text == ""

    asyncio.run(scenario())


def test_deliveries_never_interleave() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        sink = FakeSink(delay_s=0.01)
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("one")
        typer.apply("one two")
        typer.apply("one two three")
        await typer.wait_idle()

        assert sink.max_active == 1
        assert sink.calls == ["one", " two", " three"]

    asyncio.run(scenario())


def test_wait_idle_times_out_without_cancelling() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        sink = FakeSink(delay_s=0.1)
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("slow words")
        assert await typer.wait_idle(timeout_s=0.01) is False
        assert await typer.wait_idle(timeout_s=1.0) is True
        assert ctx.live_typed_text == "slow words"

    asyncio.run(scenario())


def test_push_to_talk_disables_live_typing() -> None:
    async def scenario() -> None:
        ctx = _make_ctx(push_to_talk=True)
        sink = FakeSink()
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("hello")
        await typer.wait_idle()

        assert sink.calls == []

    asyncio.run(scenario())


def test_close_cancels_pending_deliveries() -> None:
    async def scenario() -> None:
        ctx = _make_ctx()
        sink = FakeSink(delay_s=0.05)
        typer = LiveTyper(ctx, sink, DebugLog())

        typer.apply("first")
        typer.apply("first second")
        await asyncio.sleep(0.01)
        typer.close()
        typer.apply("first second third")
        assert await typer.wait_idle(timeout_s=1.0) is True
        await asyncio.sleep(0.06)

        assert sink.calls == ["first"]
        assert ctx.live_typed_text == ""
        assert typer.closed is True

    asyncio.run(scenario())
