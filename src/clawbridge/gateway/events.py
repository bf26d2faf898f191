"""
Event router — unsolicited gateway notifications.

Events are not answers to any request. Three kinds matter:

  connect.challenge   nonce for the handshake; handed to the registered
                      challenge listener
  agent (assistant)   one fragment of streamed assistant output; appended
                      to the StreamBuffer in arrival order
  lifecycle "end"     the run is over; resolves the RunCompletion from the
                      buffer if the completion response has not already

RunCompletion is the single-assignment signal both completion sources race
to settle. The first ``resolve``/``fail`` wins; every later attempt returns
False and changes nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from clawbridge.core.constants import NO_RESPONSE_PLACEHOLDER
from clawbridge.gateway.protocol import (
    ASSISTANT_STREAM,
    LIFECYCLE_END,
    LIFECYCLE_STREAM,
    EventFrame,
    EventName,
)

logger = logging.getLogger(__name__)

ChallengeListener = Callable[[str | None, dict[str, Any]], None]


class CompletionSource(StrEnum):
    RESPONSE = "response"
    LIFECYCLE = "lifecycle"


@dataclass(frozen=True)
class RunOutcome:
    """What a completion source reported for one run."""

    source: CompletionSource
    text: str = ""
    is_error: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


class RunCompletion:
    """One-shot future settled by whichever completion source is first."""

    def __init__(self) -> None:
        self._future: asyncio.Future[RunOutcome] = asyncio.get_running_loop().create_future()

    def resolve(self, outcome: RunOutcome) -> bool:
        if self._future.done():
            logger.debug("Run already settled; ignoring %s completion", outcome.source)
            return False
        self._future.set_result(outcome)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(exc)
        # Mark retrieved so an unobserved failure does not log at GC.
        self._future.exception()
        return True

    def done(self) -> bool:
        return self._future.done()

    def add_done_callback(self, callback: Callable[[RunCompletion], None]) -> None:
        """Call *callback* (via the loop) once the run is settled."""
        self._future.add_done_callback(lambda _future: callback(self))

    async def wait(self) -> RunOutcome:
        return await asyncio.shield(self._future)


class StreamBuffer:
    """Append-only, ordered text fragments for the current run."""

    def __init__(self) -> None:
        self._fragments: list[str] = []

    def append(self, fragment: str) -> None:
        self._fragments.append(fragment)

    def reset(self) -> None:
        self._fragments = []

    def text(self) -> str:
        return "".join(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)


@dataclass(frozen=True)
class ResultPolicy:
    """Pick the final text for a run.

    An error outcome always returns its error text. Otherwise, with
    ``prefer_stream`` the streamed text wins when non-empty, then the
    structured completion text; without it the order is reversed. If both
    are empty the placeholder is returned.
    """

    prefer_stream: bool = True
    placeholder: str = NO_RESPONSE_PLACEHOLDER

    def select(self, outcome: RunOutcome, streamed: str) -> str:
        if outcome.is_error:
            return outcome.text or self.placeholder
        if self.prefer_stream:
            candidates = (streamed, outcome.text)
        else:
            candidates = (outcome.text, streamed)
        for candidate in candidates:
            if candidate:
                return candidate
        return self.placeholder


def _stream_of(frame: EventFrame) -> str | None:
    if frame.stream is not None:
        return frame.stream
    if frame.payload is not None:
        stream = frame.payload.get("stream")
        if isinstance(stream, str):
            return stream
    return None


def _fragment_of(frame: EventFrame) -> str | None:
    if frame.text:
        return frame.text
    payload = frame.payload or {}
    text = payload.get("text")
    if isinstance(text, str) and text:
        return text
    data = payload.get("data")
    if isinstance(data, dict):
        delta = data.get("delta")
        if isinstance(delta, str) and delta:
            return delta
    return None


def _is_lifecycle_end(frame: EventFrame) -> bool:
    payload = frame.payload or {}
    if frame.event == EventName.LIFECYCLE:
        return payload.get("state") == LIFECYCLE_END
    if frame.event == EventName.AGENT and _stream_of(frame) == LIFECYCLE_STREAM:
        data = payload.get("data")
        return isinstance(data, dict) and data.get("phase") == LIFECYCLE_END
    return False


class EventRouter:
    """Dispatch server-pushed events to the handshake and the active run."""

    def __init__(self) -> None:
        self.buffer = StreamBuffer()
        self._challenge_listener: ChallengeListener | None = None
        self._run: RunCompletion | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on_challenge(self, listener: ChallengeListener | None) -> None:
        self._challenge_listener = listener

    def begin_run(self, completion: RunCompletion) -> None:
        """Start collecting fragments for a new run."""
        self.buffer.reset()
        self._run = completion

    def end_run(self) -> None:
        self._run = None

    @property
    def active_run(self) -> RunCompletion | None:
        return self._run

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, frame: EventFrame) -> None:
        if frame.event == EventName.CHALLENGE:
            self._handle_challenge(frame)
            return

        if _is_lifecycle_end(frame):
            self._handle_lifecycle_end()
            return

        if frame.event == EventName.AGENT and _stream_of(frame) == ASSISTANT_STREAM:
            fragment = _fragment_of(frame)
            if fragment and self._run is not None:
                self.buffer.append(fragment)
            return

        logger.debug("Ignoring event %r", frame.event)

    def _handle_challenge(self, frame: EventFrame) -> None:
        payload = frame.payload or {}
        nonce = payload.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            nonce = None
        if self._challenge_listener is None:
            logger.debug("Challenge received with no handshake in progress")
            return
        self._challenge_listener(nonce, payload)

    def _handle_lifecycle_end(self) -> None:
        if self._run is None:
            logger.debug("Lifecycle end with no active run")
            return
        streamed = self.buffer.text()
        if self._run.resolve(RunOutcome(source=CompletionSource.LIFECYCLE, text=streamed)):
            logger.info("Run ended via lifecycle signal (%d chars streamed)", len(streamed))
