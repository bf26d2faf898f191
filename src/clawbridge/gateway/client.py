"""
Gateway client — the three operations the rest of the system uses.

  connect(timeout)               open the socket and authenticate
  call(message, session_key)     run the agent once and return its text
  disconnect()                   release everything; idempotent, never raises

Usage::

    async with GatewayClient(url, token=token) as client:
        text = await client.call("Summarize the open issues")

One reader task owns the socket's inbound side. It parses frames in wire
order and hands responses to the RequestCorrelator and events to the
EventRouter. If the socket dies, every pending call and the active run are
failed with the transport error before anything is torn down.

A run settles through whichever comes first: the second response of the
``agent`` call, the ``lifecycle`` end event (streamed text as fallback), or
the run ceiling. ResultPolicy then picks the text that is returned.

Client state::

    idle -> connecting -> ready -> call_in_flight -> ready
    connecting | ready | call_in_flight -> failed
    any -> closed   (disconnect)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from clawbridge.core.config import ClawBridgeConfig
from clawbridge.core.constants import (
    CHALLENGE_WAIT_SECONDS,
    DEFAULT_CLIENT_ID,
    DEFAULT_CLIENT_MODE,
    DEFAULT_GATEWAY_URL,
    DEFAULT_ROLE,
    DEFAULT_SCOPES,
    DEFAULT_SESSION_KEY,
    HANDSHAKE_TIMEOUT_SECONDS,
    PROTOCOL_VERSION,
    REQUEST_TIMEOUT_SECONDS,
    RUN_TIMEOUT_SECONDS,
)
from clawbridge.core.exceptions import (
    ConnectionClosedError,
    GatewayError,
    GatewayTimeoutError,
    ProtocolError,
    RemoteCallError,
    TransportError,
)
from clawbridge.gateway.correlator import RequestCorrelator
from clawbridge.gateway.events import EventRouter, ResultPolicy, RunCompletion
from clawbridge.gateway.handshake import ConnectionState, Handshake, HandshakeOptions
from clawbridge.gateway.identity import DeviceIdentity
from clawbridge.gateway.protocol import (
    EventFrame,
    Method,
    RequestFrame,
    ResponseFrame,
    encode_frame,
    new_idempotency_key,
    parse_frame,
)
from clawbridge.gateway.transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)


class ClientState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    CALL_IN_FLIGHT = "call_in_flight"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class ClientOptions:
    """Everything about a client except its endpoint and token."""

    handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS
    challenge_wait: float = CHALLENGE_WAIT_SECONDS
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    run_timeout: float = RUN_TIMEOUT_SECONDS
    session_key: str = DEFAULT_SESSION_KEY
    client_id: str = DEFAULT_CLIENT_ID
    client_mode: str = DEFAULT_CLIENT_MODE
    role: str = DEFAULT_ROLE
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    caps: tuple[str, ...] = ()
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION
    result_policy: ResultPolicy = field(default_factory=ResultPolicy)

    @classmethod
    def from_config(cls, config: ClawBridgeConfig) -> ClientOptions:
        gw = config.gateway
        return cls(
            handshake_timeout=config.timeouts.handshake_seconds,
            challenge_wait=config.timeouts.challenge_wait_seconds,
            request_timeout=config.timeouts.request_seconds,
            run_timeout=config.timeouts.run_seconds,
            session_key=config.run.session_key,
            client_id=gw.client_id,
            client_mode=gw.client_mode,
            role=gw.role,
            scopes=tuple(gw.scopes),
            caps=tuple(gw.caps),
            min_protocol=gw.min_protocol,
            max_protocol=gw.max_protocol,
            result_policy=ResultPolicy(
                prefer_stream=config.run.prefer_stream,
                placeholder=config.run.placeholder,
            ),
        )

    def handshake_options(self, token: str | None) -> HandshakeOptions:
        return HandshakeOptions(
            client_id=self.client_id,
            client_mode=self.client_mode,
            role=self.role,
            scopes=self.scopes,
            caps=self.caps,
            min_protocol=self.min_protocol,
            max_protocol=self.max_protocol,
            token=token,
        )


class GatewayClient:
    """Authenticated, correlated connection to one gateway."""

    def __init__(
        self,
        url: str = DEFAULT_GATEWAY_URL,
        token: str | None = None,
        *,
        options: ClientOptions | None = None,
        identity: DeviceIdentity | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._url = url
        self._options = options or ClientOptions()
        self._identity = identity or DeviceIdentity.generate()
        self._transport = transport or WebSocketTransport()
        self._handshake = Handshake(self._identity, self._options.handshake_options(token))
        self._correlator = RequestCorrelator(self._send_frame)
        self._router = EventRouter()
        self._router.on_challenge(self._handshake.receive_challenge)
        self._reader: asyncio.Task[None] | None = None
        self._call_lock = asyncio.Lock()
        self._state = ClientState.IDLE
        self._hello: dict[str, Any] | None = None

    @classmethod
    def from_config(
        cls,
        config: ClawBridgeConfig,
        *,
        identity: DeviceIdentity | None = None,
        transport: Transport | None = None,
    ) -> GatewayClient:
        return cls(
            config.gateway.url,
            token=config.gateway.token_value,
            options=ClientOptions.from_config(config),
            identity=identity,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self._handshake.state

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    @property
    def protocol(self) -> int | None:
        return self._handshake.protocol

    @property
    def hello(self) -> dict[str, Any] | None:
        return self._hello

    @property
    def pending_calls(self) -> int:
        return len(self._correlator)

    # ------------------------------------------------------------------
    # connect
    # ------------------------------------------------------------------

    async def connect(self, timeout: float | None = None) -> dict[str, Any]:
        """Open the transport and complete the signed handshake.

        Returns the server's hello payload. The whole path is bounded by
        *timeout* (default: the configured handshake timeout).
        """
        if self._state is not ClientState.IDLE:
            raise GatewayError(f"Cannot connect from state {self._state}")
        deadline = timeout if timeout is not None else self._options.handshake_timeout
        self._state = ClientState.CONNECTING
        self._handshake.start()
        logger.info("Connecting to gateway at %s (device %s)", self._url, self._identity.fingerprint[:16])

        try:
            async with asyncio.timeout(deadline):
                hello = await self._authenticate(deadline)
        except TimeoutError as exc:
            error = GatewayTimeoutError(f"Gateway handshake timed out after {deadline:g}s")
            await self._abort_connect(error)
            raise error from exc
        except asyncio.CancelledError:
            await self._abort_connect(ConnectionClosedError("Connect cancelled"))
            raise
        except Exception as exc:
            await self._abort_connect(exc)
            raise

        self._hello = hello
        self._state = ClientState.READY
        logger.info("Gateway handshake complete (protocol %s)", self._handshake.protocol)
        return hello

    async def _authenticate(self, deadline: float) -> dict[str, Any]:
        await self._transport.open(self._url)
        if self._state is ClientState.CLOSED:
            raise ConnectionClosedError("Connect cancelled by disconnect")
        self._handshake.transport_opened()
        self._reader = asyncio.create_task(self._read_loop(), name="clawbridge-reader")

        nonce = await self._handshake.wait_for_challenge(self._options.challenge_wait)
        params = self._handshake.build_connect_params(nonce)
        try:
            hello = await self._correlator.issue(Method.CONNECT, params, timeout=deadline)
        except RemoteCallError as exc:
            raise self._handshake.reject(exc.message) from exc
        self._handshake.accept_hello(hello)
        return hello

    async def _abort_connect(self, exc: BaseException) -> None:
        if self._handshake.state is not ConnectionState.FAILED:
            self._handshake.fail(str(exc))
        if self._state is ClientState.CLOSED:
            logger.info("Gateway connect abandoned: %s", exc)
        else:
            self._state = ClientState.FAILED
            logger.error("Gateway connection failed: %s", exc)
        await self._teardown(exc if isinstance(exc, GatewayError) else TransportError(str(exc)))

    # ------------------------------------------------------------------
    # call
    # ------------------------------------------------------------------

    async def call(self, message: str, session_key: str | None = None) -> str:
        """Run the agent on *message* and return the final text.

        An explicit error status from the agent is returned as
        ``"Error: <detail>"``. Transport loss, rejection of the call and
        timeouts raise GatewayError subclasses.
        """
        async with self._call_lock:
            if self._state is not ClientState.READY:
                raise GatewayError(f"Not connected (state: {self._state})")
            self._state = ClientState.CALL_IN_FLIGHT

            completion = RunCompletion()
            self._router.begin_run(completion)
            params = {
                "message": message,
                "sessionKey": session_key or self._options.session_key,
                "idempotencyKey": new_idempotency_key(),
            }
            logger.info("Sending message to agent (%d chars)", len(message))

            request_id: str | None = None
            try:
                request_id, accepted = await self._correlator.issue_dual(
                    Method.AGENT,
                    params,
                    completion=completion,
                    accept_timeout=self._options.request_timeout,
                    ceiling=self._options.run_timeout,
                )
                logger.info("Agent request accepted (run %s), waiting for completion", accepted.get("runId", "?"))
                outcome = await completion.wait()
                streamed = self._router.buffer.text()
            finally:
                if request_id is not None:
                    self._correlator.discard(request_id)
                self._router.end_run()
                if self._state is ClientState.CALL_IN_FLIGHT:
                    self._state = ClientState.READY

        text = self._options.result_policy.select(outcome, streamed)
        logger.info("Agent response complete via %s (%d chars)", outcome.source, len(text))
        return text

    # ------------------------------------------------------------------
    # disconnect
    # ------------------------------------------------------------------

    async def disconnect(self) -> None:
        """Release the connection and settle everything still pending."""
        if self._state is ClientState.CLOSED:
            return
        self._state = ClientState.CLOSED
        self._handshake.close()
        try:
            await self._teardown(ConnectionClosedError("Client disconnected"))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during disconnect: %s", exc)
        logger.info("Disconnected from gateway")

    async def __aenter__(self) -> GatewayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send_frame(self, frame: RequestFrame) -> None:
        logger.debug("-> %s %s", frame.method, frame.id)
        await self._transport.send(encode_frame(frame))

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._transport.recv()
                self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            error: TransportError = exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Gateway reader crashed")
            error = TransportError(f"Reader failed: {exc}")
        await self._connection_lost(error)

    def _handle_raw(self, raw: str) -> None:
        try:
            frame = parse_frame(raw)
        except ProtocolError as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return
        try:
            if isinstance(frame, ResponseFrame):
                self._correlator.dispatch(frame)
            elif isinstance(frame, EventFrame):
                self._router.dispatch(frame)
            else:
                logger.debug("Ignoring server request %s", frame.method)
        except Exception:  # noqa: BLE001
            logger.exception("Error dispatching frame")

    async def _connection_lost(self, error: TransportError) -> None:
        if self._state is ClientState.CLOSED:
            return
        logger.warning("Gateway connection lost: %s", error)
        self._handshake.fail(str(error))
        self._fail_outstanding(error)
        self._state = ClientState.FAILED
        await self._transport.close()

    def _fail_outstanding(self, exc: BaseException) -> None:
        self._correlator.fail_all(exc)
        run = self._router.active_run
        if run is not None:
            run.fail(exc)

    async def _teardown(self, exc: BaseException) -> None:
        self._fail_outstanding(exc)
        self._router.end_run()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self._transport.close()
