"""
Request correlator — match outbound calls to inbound responses by id.

Two call shapes share one table of PendingCall records:

  single   connect and most methods. The first response with the id
           resolves (ok) or rejects (not ok) and removes the record.

  dual     the agent run. The first response is the acknowledgment:
           ``status == "accepted"`` resolves only the acceptance and re-arms
           the record for a second response. The second response settles
           the run's RunCompletion and removes the record. An error status
           on the second response is a result, not an exception, and is
           delivered immediately. If the RunCompletion is settled some
           other way before the acknowledgment arrives, the acceptance
           wait ends with an empty payload and the record is removed.

Every record carries its own timers. Expiry rejects with CallTimeoutError
and removes the record, so an id is never live after its deadline. Ids are
``req-<n>`` with n strictly increasing and never reused.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from clawbridge.core.exceptions import CallTimeoutError, RemoteCallError
from clawbridge.gateway.events import CompletionSource, RunCompletion, RunOutcome
from clawbridge.gateway.protocol import (
    RequestFrame,
    ResponseFrame,
    RunStatus,
    completion_text,
    error_code,
    error_detail,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[RequestFrame], Awaitable[None]]


class CallKind(StrEnum):
    SINGLE = "single"
    DUAL = "dual"


class CallPhase(StrEnum):
    AWAITING_RESPONSE = "awaiting_response"
    AWAITING_ACCEPT = "awaiting_accept"
    AWAITING_COMPLETION = "awaiting_completion"


@dataclass
class PendingCall:
    """One outstanding call.

    ``response`` is the whole answer for a single call and the acceptance
    for a dual call. ``completion`` is only set for dual calls.
    """

    id: str
    method: str
    kind: CallKind
    phase: CallPhase
    response: asyncio.Future[dict[str, Any]]
    completion: RunCompletion | None = None
    accept_timer: asyncio.TimerHandle | None = None
    deadline_timer: asyncio.TimerHandle | None = None

    def cancel_timers(self) -> None:
        for timer in (self.accept_timer, self.deadline_timer):
            if timer is not None:
                timer.cancel()
        self.accept_timer = None
        self.deadline_timer = None


def _settle_exception(future: asyncio.Future[Any], exc: BaseException) -> None:
    if future.done():
        return
    future.set_exception(exc)
    # Mark retrieved; an awaiting caller still receives it.
    future.exception()


def _settle_result(future: asyncio.Future[Any], value: Any) -> None:
    if not future.done():
        future.set_result(value)


class RequestCorrelator:
    """Owns the PendingCall table for one connection."""

    def __init__(self, send: SendFn) -> None:
        self._send = send
        self._counter = 0
        self._pending: dict[str, PendingCall] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def next_id(self) -> str:
        self._counter += 1
        return f"req-{self._counter}"

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, request_id: str) -> PendingCall | None:
        return self._pending.get(request_id)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    # ------------------------------------------------------------------
    # Issuing calls
    # ------------------------------------------------------------------

    async def issue(self, method: str, params: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        """Send a single-phase call and wait for its one response."""
        loop = asyncio.get_running_loop()
        call = self._register(method, CallKind.SINGLE, CallPhase.AWAITING_RESPONSE)
        call.deadline_timer = loop.call_later(timeout, self._expire, call.id, timeout)
        return await self._send_and_wait(call, params)

    async def issue_dual(
        self,
        method: str,
        params: dict[str, Any],
        *,
        completion: RunCompletion,
        accept_timeout: float,
        ceiling: float,
    ) -> tuple[str, dict[str, Any]]:
        """Send a dual-phase call and wait for the acceptance only.

        Returns ``(request_id, acceptance_payload)``. The eventual result is
        delivered through *completion*. *ceiling* bounds the whole call,
        acceptance included.
        """
        loop = asyncio.get_running_loop()
        call = self._register(method, CallKind.DUAL, CallPhase.AWAITING_ACCEPT, completion=completion)
        call.accept_timer = loop.call_later(accept_timeout, self._expire_accept, call.id, accept_timeout)
        call.deadline_timer = loop.call_later(ceiling, self._expire, call.id, ceiling)
        completion.add_done_callback(lambda _completion: self._settled_before_accept(call.id))
        payload = await self._send_and_wait(call, params)
        return call.id, payload

    def _register(
        self,
        method: str,
        kind: CallKind,
        phase: CallPhase,
        completion: RunCompletion | None = None,
    ) -> PendingCall:
        request_id = self.next_id()
        call = PendingCall(
            id=request_id,
            method=method,
            kind=kind,
            phase=phase,
            response=asyncio.get_running_loop().create_future(),
            completion=completion,
        )
        self._pending[request_id] = call
        return call

    async def _send_and_wait(self, call: PendingCall, params: dict[str, Any]) -> dict[str, Any]:
        try:
            await self._send(RequestFrame(id=call.id, method=call.method, params=params))
        except BaseException as exc:
            self._remove(call.id)
            if call.completion is not None and isinstance(exc, Exception):
                call.completion.fail(exc)
            raise
        try:
            return await call.response
        except asyncio.CancelledError:
            # Caller stopped listening: release the id.
            self._remove(call.id)
            raise

    # ------------------------------------------------------------------
    # Inbound responses
    # ------------------------------------------------------------------

    def dispatch(self, frame: ResponseFrame) -> bool:
        """Route one response. Returns False when no call is waiting for it."""
        call = self._pending.get(frame.id)
        if call is None:
            logger.debug("Response for unknown or settled request %s", frame.id)
            return False

        if call.kind is CallKind.SINGLE:
            self._remove(call.id)
            if frame.ok:
                _settle_result(call.response, frame.payload or {})
            else:
                _settle_exception(call.response, self._remote_error(frame))
            return True

        if call.phase is CallPhase.AWAITING_ACCEPT:
            self._handle_acceptance(call, frame)
        else:
            self._handle_completion(call, frame)
        return True

    def _handle_acceptance(self, call: PendingCall, frame: ResponseFrame) -> None:
        if not frame.ok:
            self._remove(call.id)
            exc = self._remote_error(frame)
            _settle_exception(call.response, exc)
            if call.completion is not None:
                call.completion.fail(exc)
            return

        _settle_result(call.response, frame.payload or {})
        if frame.status == RunStatus.ACCEPTED:
            # Re-arm: the next response with this id is the completion.
            call.phase = CallPhase.AWAITING_COMPLETION
            if call.accept_timer is not None:
                call.accept_timer.cancel()
                call.accept_timer = None
            logger.debug("%s %s accepted", call.method, call.id)
            return

        # Server skipped the acknowledgment and answered with the result.
        self._handle_completion(call, frame)

    def _handle_completion(self, call: PendingCall, frame: ResponseFrame) -> None:
        self._remove(call.id)
        payload = frame.payload or {}
        if not frame.ok or frame.status == RunStatus.ERROR:
            detail = error_detail(
                frame.error if frame.error is not None else payload.get("error"),
                default=payload.get("summary") or "Agent run failed",
            )
            outcome = RunOutcome(
                source=CompletionSource.RESPONSE,
                text=f"Error: {detail}",
                is_error=True,
                payload=payload,
            )
            logger.warning("%s %s failed: %s", call.method, call.id, detail)
        else:
            outcome = RunOutcome(
                source=CompletionSource.RESPONSE,
                text=completion_text(payload, frame.error),
                payload=payload,
            )
        if call.completion is not None:
            call.completion.resolve(outcome)

    def _settled_before_accept(self, request_id: str) -> None:
        call = self._pending.get(request_id)
        if call is None or call.phase is not CallPhase.AWAITING_ACCEPT:
            return
        # The lifecycle end won the race; nothing more to wait for on this id.
        self._remove(call.id)
        _settle_result(call.response, {})
        logger.debug("%s %s settled before acceptance", call.method, call.id)

    @staticmethod
    def _remote_error(frame: ResponseFrame) -> RemoteCallError:
        return RemoteCallError(error_detail(frame.error), code=error_code(frame.error))

    # ------------------------------------------------------------------
    # Expiry and teardown
    # ------------------------------------------------------------------

    def _expire_accept(self, request_id: str, timeout: float) -> None:
        call = self._pending.get(request_id)
        if call is None or call.phase is not CallPhase.AWAITING_ACCEPT:
            return
        self._expire(request_id, timeout)

    def _expire(self, request_id: str, timeout: float) -> None:
        call = self._remove(request_id)
        if call is None:
            return
        logger.warning("%s %s timed out after %gs", call.method, call.id, timeout)
        exc = CallTimeoutError(call.method, call.id, timeout)
        _settle_exception(call.response, exc)
        if call.completion is not None:
            call.completion.fail(exc)

    def _remove(self, request_id: str) -> PendingCall | None:
        call = self._pending.pop(request_id, None)
        if call is not None:
            call.cancel_timers()
        return call

    def discard(self, request_id: str) -> None:
        """Forget a call whose outcome was decided elsewhere."""
        call = self._remove(request_id)
        if call is not None and not call.response.done():
            call.response.cancel()

    def fail_all(self, exc: BaseException) -> int:
        """Settle every outstanding call with *exc*. Returns how many there were."""
        calls = list(self._pending.values())
        for call in calls:
            self._remove(call.id)
            _settle_exception(call.response, exc)
            if call.completion is not None:
                call.completion.fail(exc)
        if calls:
            logger.debug("Failed %d pending call(s): %s", len(calls), exc)
        return len(calls)
