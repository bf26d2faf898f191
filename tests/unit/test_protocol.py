"""Unit tests for clawbridge.gateway.protocol — frame codec and payload helpers."""

from __future__ import annotations

import json

import pytest

from clawbridge.core.exceptions import ProtocolError
from clawbridge.gateway.protocol import (
    EventFrame,
    RequestFrame,
    ResponseFrame,
    build_device_assertion,
    completion_text,
    encode_frame,
    error_code,
    error_detail,
    new_idempotency_key,
    parse_frame,
)

# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


class TestEncode:
    def test_request_frame_shape(self) -> None:
        raw = encode_frame(RequestFrame(id="req-1", method="agent", params={"message": "hi"}))
        assert json.loads(raw) == {"type": "req", "id": "req-1", "method": "agent", "params": {"message": "hi"}}

    def test_event_frame_omits_unset_fields(self) -> None:
        data = json.loads(encode_frame(EventFrame(event="lifecycle", payload={"state": "end"})))
        assert data == {"type": "event", "event": "lifecycle", "payload": {"state": "end"}}


class TestParse:
    def test_response(self) -> None:
        frame = parse_frame('{"type":"res","id":"req-3","ok":true,"payload":{"status":"accepted"}}')
        assert isinstance(frame, ResponseFrame)
        assert frame.id == "req-3"
        assert frame.ok is True
        assert frame.status == "accepted"

    def test_response_with_string_error(self) -> None:
        frame = parse_frame('{"type":"res","id":"req-3","ok":false,"error":"nope"}')
        assert isinstance(frame, ResponseFrame)
        assert frame.error == "nope"
        assert frame.status is None

    def test_event_with_stream_and_text(self) -> None:
        frame = parse_frame('{"type":"event","event":"agent","stream":"assistant","text":"Hi"}')
        assert isinstance(frame, EventFrame)
        assert frame.stream == "assistant"
        assert frame.text == "Hi"

    def test_request_from_server(self) -> None:
        frame = parse_frame('{"type":"req","id":"s-1","method":"ping"}')
        assert isinstance(frame, RequestFrame)
        assert frame.params == {}

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            '{"type":"bogus"}',
            '{"type":"res","id":1,"ok":true}',
            '{"type":"res","id":"a","ok":"yes"}',
            '{"type":"res","id":"a","ok":true,"payload":[]}',
            '{"type":"event"}',
            '{"type":"event","event":"agent","text":5}',
        ],
    )
    def test_malformed_frames_raise(self, raw: str) -> None:
        with pytest.raises(ProtocolError):
            parse_frame(raw)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


class TestErrorDetail:
    def test_object_message(self) -> None:
        assert error_detail({"message": "rate limited", "code": "429"}) == "rate limited"

    def test_falls_back_to_code(self) -> None:
        assert error_detail({"code": "UNAUTHORIZED"}) == "UNAUTHORIZED"

    def test_plain_string(self) -> None:
        assert error_detail("boom") == "boom"

    def test_default_when_missing(self) -> None:
        assert error_detail(None, default="Agent run failed") == "Agent run failed"

    def test_error_code_only_from_objects(self) -> None:
        assert error_code({"code": "E1"}) == "E1"
        assert error_code("E1") is None


class TestCompletionText:
    def test_result_string(self) -> None:
        assert completion_text({"result": "done"}) == "done"

    def test_result_text_field(self) -> None:
        assert completion_text({"result": {"text": "done"}}) == "done"

    def test_result_payloads_joined(self) -> None:
        payload = {"result": {"payloads": [{"text": "one"}, {"media": "x"}, {"text": "two"}]}}
        assert completion_text(payload) == "one\n\ntwo"

    def test_summary_fallback(self) -> None:
        assert completion_text({"status": "ok", "summary": "completed"}) == "completed"

    def test_empty_when_nothing_usable(self) -> None:
        assert completion_text({"status": "ok"}) == ""
        assert completion_text(None) == ""


class TestDeviceAssertion:
    _BASE = dict(
        device_id="abc",
        client_id="gateway-client",
        client_mode="backend",
        role="operator",
        scopes=["operator.admin", "operator.read"],
        signed_at_ms=1700000000000,
    )

    def test_v2_includes_nonce_last(self) -> None:
        assertion = build_device_assertion(**self._BASE, token="tok", nonce="n-1")
        assert assertion == "v2|abc|gateway-client|backend|operator|operator.admin,operator.read|1700000000000|tok|n-1"

    def test_v1_without_nonce(self) -> None:
        assertion = build_device_assertion(**self._BASE, token="tok", nonce=None)
        assert assertion == "v1|abc|gateway-client|backend|operator|operator.admin,operator.read|1700000000000|tok"

    def test_missing_token_is_empty_field(self) -> None:
        assertion = build_device_assertion(**self._BASE, token=None, nonce="n")
        assert assertion.split("|")[7] == ""


class TestIdempotencyKey:
    def test_keys_are_unique(self) -> None:
        keys = {new_idempotency_key() for _ in range(200)}
        assert len(keys) == 200
