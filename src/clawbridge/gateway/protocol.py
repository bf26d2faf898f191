"""
Gateway wire protocol.

JSON text frames over one WebSocket connection:

  request   {"type": "req",   "id": str, "method": str, "params": {...}}
  response  {"type": "res",   "id": str, "ok": bool, "payload"?: {...},
             "error"?: {...} | str}
  event     {"type": "event", "event": str, "payload"?: {...},
             "stream"?: str, "text"?: str}

Most methods answer once. The ``agent`` run method answers twice on the
same id: ``{"status": "accepted"}`` first, then the completion (or an
``"error"`` status).

Device assertion (signed during the handshake), pipe-delimited:

  v2|<device id>|<client id>|<client mode>|<role>|<scopes csv>|<signed at ms>|<token>|<nonce>

``v1`` is the same string without the trailing nonce, used when the server
never issues a challenge.
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from clawbridge.core.exceptions import ProtocolError


class FrameType(StrEnum):
    REQUEST = "req"
    RESPONSE = "res"
    EVENT = "event"


class EventName(StrEnum):
    CHALLENGE = "connect.challenge"
    AGENT = "agent"
    LIFECYCLE = "lifecycle"


class Method(StrEnum):
    CONNECT = "connect"
    AGENT = "agent"


class RunStatus(StrEnum):
    ACCEPTED = "accepted"
    OK = "ok"
    ERROR = "error"


HELLO_OK = "hello-ok"
ASSISTANT_STREAM = "assistant"
LIFECYCLE_STREAM = "lifecycle"
LIFECYCLE_END = "end"


@dataclass(frozen=True)
class RequestFrame:
    id: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": FrameType.REQUEST.value, "id": self.id, "method": self.method, "params": self.params}


@dataclass(frozen=True)
class ResponseFrame:
    id: str
    ok: bool
    payload: dict[str, Any] | None = None
    error: dict[str, Any] | str | None = None

    @property
    def status(self) -> str | None:
        if isinstance(self.payload, dict):
            status = self.payload.get("status")
            return status if isinstance(status, str) else None
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": FrameType.RESPONSE.value, "id": self.id, "ok": self.ok}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class EventFrame:
    event: str
    payload: dict[str, Any] | None = None
    stream: str | None = None
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": FrameType.EVENT.value, "event": self.event}
        for key in ("payload", "stream", "text"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


Frame = RequestFrame | ResponseFrame | EventFrame


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------


def encode_frame(frame: Frame) -> str:
    return json.dumps(frame.to_dict(), separators=(",", ":"), ensure_ascii=False)


def _optional_dict(raw: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ProtocolError(f"'{key}' must be an object, got {type(value).__name__}")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def parse_frame(raw: str | bytes) -> Frame:
    """Decode one inbound frame. Raises ProtocolError on anything unrecognized."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Frame must be a JSON object, got {type(data).__name__}")

    kind = data.get("type")
    if kind == FrameType.RESPONSE:
        frame_id = data.get("id")
        ok = data.get("ok")
        if not isinstance(frame_id, str) or not isinstance(ok, bool):
            raise ProtocolError("Response frame needs a string 'id' and a boolean 'ok'")
        error = data.get("error")
        if error is not None and not isinstance(error, dict | str):
            raise ProtocolError("'error' must be an object or a string")
        return ResponseFrame(id=frame_id, ok=ok, payload=_optional_dict(data, "payload"), error=error)

    if kind == FrameType.EVENT:
        name = data.get("event")
        if not isinstance(name, str) or not name:
            raise ProtocolError("Event frame needs a non-empty string 'event'")
        return EventFrame(
            event=name,
            payload=_optional_dict(data, "payload"),
            stream=_optional_str(data, "stream"),
            text=_optional_str(data, "text"),
        )

    if kind == FrameType.REQUEST:
        frame_id = data.get("id")
        method = data.get("method")
        if not isinstance(frame_id, str) or not isinstance(method, str):
            raise ProtocolError("Request frame needs string 'id' and 'method'")
        return RequestFrame(id=frame_id, method=method, params=_optional_dict(data, "params") or {})

    raise ProtocolError(f"Unknown frame type: {kind!r}")


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def error_detail(error: dict[str, Any] | str | None, default: str = "Request failed") -> str:
    """Flatten a response ``error`` field (object or string) into one line."""
    if isinstance(error, str):
        return error or default
    if isinstance(error, dict):
        message = error.get("message") or error.get("error")
        if isinstance(message, str) and message:
            return message
        code = error.get("code")
        if isinstance(code, str) and code:
            return code
    return default


def error_code(error: dict[str, Any] | str | None) -> str | None:
    if isinstance(error, dict):
        code = error.get("code")
        if isinstance(code, str) and code:
            return code
    return None


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        text = result.get("text")
        if isinstance(text, str):
            return text
        payloads = result.get("payloads")
        if isinstance(payloads, list):
            parts = [p["text"] for p in payloads if isinstance(p, dict) and isinstance(p.get("text"), str)]
            return "\n\n".join(part for part in parts if part)
    return ""


def completion_text(payload: dict[str, Any] | None, error: dict[str, Any] | str | None = None) -> str:
    """Pull the result text out of a completion payload.

    Order: ``payload.result`` (string, ``{text}`` or ``{payloads: [{text}]}``),
    then ``payload.summary``, then any error detail. Empty string if none.
    """
    payload = payload or {}
    text = _result_text(payload.get("result"))
    if text:
        return text
    summary = payload.get("summary")
    if isinstance(summary, str) and summary:
        return summary
    if error is not None or payload.get("error") is not None:
        return error_detail(error if error is not None else payload.get("error"), default="")
    return ""


def build_device_assertion(
    *,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: list[str] | tuple[str, ...],
    signed_at_ms: int,
    token: str | None,
    nonce: str | None,
) -> str:
    """Return the canonical string the device key signs during connect."""
    version = "v2" if nonce else "v1"
    parts = [
        version,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
    ]
    if nonce:
        parts.append(nonce)
    return "|".join(parts)


def new_idempotency_key() -> str:
    """Time-based key with a random suffix, unique per run call."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"
