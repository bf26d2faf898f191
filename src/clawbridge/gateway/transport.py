"""
Gateway transport — one bidirectional, message-framed connection.

The transport moves text frames and nothing else: it knows nothing about
requests, responses or events. Lifecycle is reported through its methods:

  - ``open()`` returns once the socket is connected (opened)
  - ``recv()`` raises ConnectionClosedError once the peer goes away (closed)
  - any other socket failure surfaces as TransportError (error)

Contract:
  - At most one physical connection per transport instance
  - ``close()`` is idempotent and never raises
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from clawbridge.core.constants import MAX_FRAME_BYTES
from clawbridge.core.exceptions import ConnectionClosedError, TransportError

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Interface for the duplex frame channel to the gateway."""

    @abstractmethod
    async def open(self, url: str) -> None:
        """Connect to *url*. Raises TransportError on failure."""
        ...

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text frame. Raises TransportError if the channel is down."""
        ...

    @abstractmethod
    async def recv(self) -> str:
        """Wait for the next inbound frame.

        Raises ConnectionClosedError when the channel closes.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        ...

    @abstractmethod
    def is_open(self) -> bool:
        """Check whether the channel is currently usable."""
        ...


class WebSocketTransport(Transport):
    """Transport over a ``websockets`` client connection."""

    def __init__(
        self,
        *,
        open_timeout: float | None = 10.0,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        max_size: int = MAX_FRAME_BYTES,
    ) -> None:
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._max_size = max_size
        self._ws: ClientConnection | None = None
        self._closed = False

    async def open(self, url: str) -> None:
        if self._ws is not None or self._closed:
            raise TransportError("Transport is already open or was closed")
        try:
            ws = await connect(
                url,
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                max_size=self._max_size,
            )
        except (OSError, InvalidURI, InvalidHandshake, TimeoutError) as exc:
            raise TransportError(f"Cannot connect to {url}: {exc}") from exc
        if self._closed:
            # close() ran while the upgrade was in progress.
            await ws.close()
            raise ConnectionClosedError("Transport closed while connecting")
        self._ws = ws
        logger.debug("WebSocket connected: %s", url)

    async def send(self, text: str) -> None:
        if self._ws is None or self._closed:
            raise ConnectionClosedError("Transport is not open")
        try:
            await self._ws.send(text)
        except ConnectionClosed as exc:
            raise ConnectionClosedError(f"Connection closed while sending: {exc}") from exc

    async def recv(self) -> str:
        if self._ws is None or self._closed:
            raise ConnectionClosedError("Transport is not open")
        try:
            message = await self._ws.recv()
        except ConnectionClosed as exc:
            raise ConnectionClosedError(f"Connection closed: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"Socket error: {exc}") from exc
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Error closing WebSocket: %s", exc)
        logger.debug("WebSocket closed")

    def is_open(self) -> bool:
        return self._ws is not None and not self._closed
