"""Unit tests for the event router, stream buffer and result policy."""

from __future__ import annotations

import asyncio

import pytest

from clawbridge.core.exceptions import ConnectionClosedError
from clawbridge.gateway.events import (
    CompletionSource,
    EventRouter,
    ResultPolicy,
    RunCompletion,
    RunOutcome,
    StreamBuffer,
)
from clawbridge.gateway.protocol import EventFrame


def _fragment(text: str) -> EventFrame:
    return EventFrame(event="agent", stream="assistant", text=text)


def _end() -> EventFrame:
    return EventFrame(event="lifecycle", payload={"state": "end"})


class TestStreamBuffer:
    def test_concatenates_in_order(self) -> None:
        buf = StreamBuffer()
        for part in ("Hello, ", "world", "!"):
            buf.append(part)
        assert buf.text() == "Hello, world!"
        assert len(buf) == 3

    def test_reset_clears(self) -> None:
        buf = StreamBuffer()
        buf.append("x")
        buf.reset()
        assert buf.text() == ""


class TestRunCompletion:
    @pytest.mark.asyncio
    async def test_first_resolution_wins(self) -> None:
        completion = RunCompletion()
        first = RunOutcome(source=CompletionSource.LIFECYCLE, text="streamed")
        second = RunOutcome(source=CompletionSource.RESPONSE, text="structured")
        assert completion.resolve(first) is True
        assert completion.resolve(second) is False
        assert await completion.wait() is first

    @pytest.mark.asyncio
    async def test_fail_after_resolve_is_ignored(self) -> None:
        completion = RunCompletion()
        completion.resolve(RunOutcome(source=CompletionSource.RESPONSE, text="ok"))
        assert completion.fail(ConnectionClosedError("late")) is False
        assert (await completion.wait()).text == "ok"

    @pytest.mark.asyncio
    async def test_fail_raises_in_waiter(self) -> None:
        completion = RunCompletion()
        completion.fail(ConnectionClosedError("gone"))
        with pytest.raises(ConnectionClosedError):
            await completion.wait()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_completion(self) -> None:
        completion = RunCompletion()
        waiter = asyncio.create_task(completion.wait())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert completion.resolve(RunOutcome(source=CompletionSource.RESPONSE)) is True


class TestEventRouter:
    @pytest.mark.asyncio
    async def test_fragments_accumulate_during_run(self) -> None:
        router = EventRouter()
        router.begin_run(RunCompletion())
        for part in ("Hello, ", "world", "!"):
            router.dispatch(_fragment(part))
        assert router.buffer.text() == "Hello, world!"

    @pytest.mark.asyncio
    async def test_fragments_without_run_are_dropped(self) -> None:
        router = EventRouter()
        router.dispatch(_fragment("stray"))
        assert router.buffer.text() == ""

    @pytest.mark.asyncio
    async def test_begin_run_resets_buffer(self) -> None:
        router = EventRouter()
        router.begin_run(RunCompletion())
        router.dispatch(_fragment("old"))
        router.begin_run(RunCompletion())
        assert router.buffer.text() == ""

    @pytest.mark.asyncio
    async def test_fragment_from_payload_delta(self) -> None:
        router = EventRouter()
        router.begin_run(RunCompletion())
        router.dispatch(EventFrame(event="agent", payload={"stream": "assistant", "data": {"delta": "hi"}}))
        assert router.buffer.text() == "hi"

    @pytest.mark.asyncio
    async def test_non_assistant_stream_ignored(self) -> None:
        router = EventRouter()
        router.begin_run(RunCompletion())
        router.dispatch(EventFrame(event="agent", stream="tool", text="ls -la"))
        assert router.buffer.text() == ""

    @pytest.mark.asyncio
    async def test_lifecycle_end_resolves_with_buffer(self) -> None:
        router = EventRouter()
        completion = RunCompletion()
        router.begin_run(completion)
        router.dispatch(_fragment("partial "))
        router.dispatch(_fragment("answer"))
        router.dispatch(_end())
        outcome = await completion.wait()
        assert outcome.source is CompletionSource.LIFECYCLE
        assert outcome.text == "partial answer"

    @pytest.mark.asyncio
    async def test_agent_lifecycle_stream_end_phase(self) -> None:
        router = EventRouter()
        completion = RunCompletion()
        router.begin_run(completion)
        router.dispatch(EventFrame(event="agent", stream="lifecycle", payload={"data": {"phase": "end"}}))
        assert completion.done()

    @pytest.mark.asyncio
    async def test_lifecycle_non_end_state_ignored(self) -> None:
        router = EventRouter()
        completion = RunCompletion()
        router.begin_run(completion)
        router.dispatch(EventFrame(event="lifecycle", payload={"state": "start"}))
        assert not completion.done()

    def test_challenge_goes_to_listener(self) -> None:
        seen: list[str | None] = []
        router = EventRouter()
        router.on_challenge(lambda nonce, payload: seen.append(nonce))
        router.dispatch(EventFrame(event="connect.challenge", payload={"nonce": "n-1"}))
        router.dispatch(EventFrame(event="connect.challenge", payload={}))
        assert seen == ["n-1", None]

    def test_unknown_event_is_ignored(self) -> None:
        router = EventRouter()
        router.dispatch(EventFrame(event="presence", payload={"who": "x"}))


class TestResultPolicy:
    def test_stream_preferred_by_default(self) -> None:
        outcome = RunOutcome(source=CompletionSource.RESPONSE, text="structured")
        assert ResultPolicy().select(outcome, "streamed") == "streamed"

    def test_structured_when_stream_empty(self) -> None:
        outcome = RunOutcome(source=CompletionSource.RESPONSE, text="structured")
        assert ResultPolicy().select(outcome, "") == "structured"

    def test_structured_preferred_when_configured(self) -> None:
        outcome = RunOutcome(source=CompletionSource.RESPONSE, text="structured")
        assert ResultPolicy(prefer_stream=False).select(outcome, "streamed") == "structured"

    def test_placeholder_when_nothing(self) -> None:
        outcome = RunOutcome(source=CompletionSource.LIFECYCLE)
        assert ResultPolicy().select(outcome, "") == "(no response)"

    def test_error_text_beats_stream(self) -> None:
        outcome = RunOutcome(source=CompletionSource.RESPONSE, text="Error: quota", is_error=True)
        assert ResultPolicy().select(outcome, "half an answer") == "Error: quota"
