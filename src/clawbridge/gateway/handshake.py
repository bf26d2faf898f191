"""
Handshake state machine — from "socket open" to "authenticated".

  disconnected -> connecting -> awaiting_challenge -> authenticating -> ready
  any of connecting .. ready -> failed
  any state -> closed

The server opens with a ``connect.challenge`` event carrying a nonce. The
client signs a canonical assertion that includes that nonce (``v2``) and
sends it in the ``connect`` call. A server that never challenges gets the
legacy ``v1`` assertion once ``challenge_wait`` has elapsed.

This class does no I/O. The client drives it: it reports transport open,
forwards challenge events, asks for the connect params, and hands back the
connect response. Every transition is checked against ``_TRANSITIONS``.
The connect response must be a ``hello-ok`` that names a protocol version
within ``[min_protocol, max_protocol]``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from clawbridge import __version__
from clawbridge.core.constants import (
    DEFAULT_CLIENT_ID,
    DEFAULT_CLIENT_MODE,
    DEFAULT_ROLE,
    DEFAULT_SCOPES,
    PROTOCOL_VERSION,
)
from clawbridge.core.exceptions import ConnectionClosedError, GatewayError, HandshakeError
from clawbridge.gateway.identity import DeviceIdentity
from clawbridge.gateway.protocol import HELLO_OK, build_device_assertion

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.AWAITING_CHALLENGE, ConnectionState.FAILED}),
    ConnectionState.AWAITING_CHALLENGE: frozenset({ConnectionState.AUTHENTICATING, ConnectionState.FAILED}),
    ConnectionState.AUTHENTICATING: frozenset({ConnectionState.READY, ConnectionState.FAILED}),
    ConnectionState.READY: frozenset({ConnectionState.FAILED}),
    ConnectionState.FAILED: frozenset(),
    ConnectionState.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class HandshakeOptions:
    """What the client asks for when it connects."""

    client_id: str = DEFAULT_CLIENT_ID
    client_mode: str = DEFAULT_CLIENT_MODE
    role: str = DEFAULT_ROLE
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    caps: tuple[str, ...] = ()
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION
    token: str | None = None
    client_version: str = __version__
    platform: str = field(default_factory=lambda: sys.platform)


class Handshake:
    """Connection state plus the logic of the connect exchange."""

    def __init__(
        self,
        identity: DeviceIdentity,
        options: HandshakeOptions | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._identity = identity
        self._options = options or HandshakeOptions()
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._challenge: asyncio.Future[str | None] | None = None
        self._nonce: str | None = None
        self._protocol: int | None = None
        self._failure: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def nonce(self) -> str | None:
        return self._nonce

    @property
    def protocol(self) -> int | None:
        return self._protocol

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def _transition(self, target: ConnectionState) -> None:
        if target is ConnectionState.CLOSED:
            self._state = target
            return
        if target not in _TRANSITIONS[self._state]:
            raise GatewayError(f"Invalid handshake transition {self._state} -> {target}")
        logger.debug("Handshake %s -> %s", self._state, target)
        self._state = target

    # ------------------------------------------------------------------
    # Driving events
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._transition(ConnectionState.CONNECTING)

    def transport_opened(self) -> None:
        self._transition(ConnectionState.AWAITING_CHALLENGE)
        self._challenge = asyncio.get_running_loop().create_future()

    def receive_challenge(self, nonce: str | None, payload: dict[str, Any] | None = None) -> None:
        """Record the server nonce. Ignored outside ``awaiting_challenge``."""
        if self._state is not ConnectionState.AWAITING_CHALLENGE or self._challenge is None:
            logger.debug("Ignoring challenge in state %s", self._state)
            return
        if not self._challenge.done():
            self._challenge.set_result(nonce)

    async def wait_for_challenge(self, timeout: float) -> str | None:
        """Return the server nonce, or None if none arrives within *timeout*."""
        if self._challenge is None:
            raise GatewayError("Transport is not open")
        try:
            return await asyncio.wait_for(asyncio.shield(self._challenge), timeout)
        except TimeoutError:
            logger.info("No connect challenge within %gs; using legacy v1 assertion", timeout)
            return None

    def build_connect_params(self, nonce: str | None) -> dict[str, Any]:
        """Sign the device assertion and return the ``connect`` call params."""
        self._transition(ConnectionState.AUTHENTICATING)
        self._nonce = nonce
        opts = self._options
        signed_at = int(self._clock() * 1000)
        assertion = build_device_assertion(
            device_id=self._identity.fingerprint,
            client_id=opts.client_id,
            client_mode=opts.client_mode,
            role=opts.role,
            scopes=opts.scopes,
            signed_at_ms=signed_at,
            token=opts.token,
            nonce=nonce,
        )
        device: dict[str, Any] = {
            "id": self._identity.fingerprint,
            "publicKey": self._identity.public_key_b64url,
            "signature": self._identity.sign_text(assertion),
            "signedAt": signed_at,
        }
        if nonce:
            device["nonce"] = nonce

        params: dict[str, Any] = {
            "minProtocol": opts.min_protocol,
            "maxProtocol": opts.max_protocol,
            "client": {
                "id": opts.client_id,
                "version": opts.client_version,
                "platform": opts.platform,
                "mode": opts.client_mode,
            },
            "role": opts.role,
            "scopes": list(opts.scopes),
            "caps": list(opts.caps),
            "device": device,
        }
        if opts.token:
            params["auth"] = {"token": opts.token}
        return params

    def accept_hello(self, payload: dict[str, Any]) -> int:
        """Validate the connect response and move to ``ready``.

        Returns the negotiated protocol version. Raises HandshakeError (and
        moves to ``failed``) when the payload is not a compatible hello.
        """
        kind = payload.get("type")
        if kind != HELLO_OK:
            raise self.reject(f"unexpected connect response type {kind!r}")
        if "protocol" not in payload:
            raise self.reject("hello is missing the protocol version")
        protocol = payload["protocol"]
        if not isinstance(protocol, int) or isinstance(protocol, bool):
            raise self.reject(f"invalid protocol version {protocol!r}")
        if not self._options.min_protocol <= protocol <= self._options.max_protocol:
            raise self.reject(
                f"protocol mismatch: server speaks {protocol}, client supports "
                f"{self._options.min_protocol}-{self._options.max_protocol}"
            )
        self._protocol = protocol
        self._transition(ConnectionState.READY)
        return protocol

    def reject(self, reason: str) -> HandshakeError:
        """Move to ``failed`` and return the error to raise."""
        self.fail(reason)
        return HandshakeError(reason)

    def fail(self, reason: str) -> None:
        self._failure = reason
        if self._state not in (ConnectionState.FAILED, ConnectionState.CLOSED):
            self._state = ConnectionState.FAILED
        self._drop_challenge()

    def close(self) -> None:
        self._transition(ConnectionState.CLOSED)
        self._drop_challenge()

    def _drop_challenge(self) -> None:
        if self._challenge is not None and not self._challenge.done():
            self._challenge.set_exception(ConnectionClosedError("Handshake aborted"))
            self._challenge.exception()
