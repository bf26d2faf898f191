"""clawbridge exception hierarchy."""

from __future__ import annotations


class ClawBridgeError(Exception):
    """Base exception for all clawbridge errors."""


class ConfigError(ClawBridgeError):
    """Raised when the configuration is invalid or cannot be read."""


class ConfigNotFoundError(ConfigError):
    """Raised when an explicitly requested configuration file does not exist."""


class IdentityError(ClawBridgeError):
    """Raised when the device keypair cannot be generated or used for signing."""


class ProcessError(ClawBridgeError):
    """Raised when the gateway subprocess cannot be started."""


class GatewayError(ClawBridgeError):
    """Base class for failures talking to the gateway."""


class TransportError(GatewayError):
    """Raised on socket-level failures."""


class ConnectionClosedError(TransportError):
    """Raised when the connection is closed while a caller is still waiting."""


class ProtocolError(GatewayError):
    """Raised when an inbound frame does not match a known message shape."""


class HandshakeError(GatewayError):
    """Raised when the gateway rejects the signed connect assertion."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Gateway handshake failed: {reason}")
        self.reason = reason


class RemoteCallError(GatewayError):
    """Raised when the gateway answers a call with ``ok: false``."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(f"{code}: {message}" if code else message)
        self.message = message
        self.code = code


class GatewayTimeoutError(GatewayError, TimeoutError):
    """Raised when a deadline expires while waiting on the gateway."""


class CallTimeoutError(GatewayTimeoutError):
    """Raised when a call receives no (final) response before its deadline."""

    def __init__(self, method: str, request_id: str, timeout: float) -> None:
        super().__init__(f"Request timeout: {method} ({request_id}) after {timeout:g}s")
        self.method = method
        self.request_id = request_id
        self.timeout = timeout
