"""Unit tests for the handshake state machine and connect params."""

from __future__ import annotations

import asyncio

import pytest

from clawbridge.core.exceptions import ConnectionClosedError, GatewayError, HandshakeError
from clawbridge.gateway.handshake import ConnectionState, Handshake, HandshakeOptions
from clawbridge.gateway.identity import DeviceIdentity
from tests.fakes import verify_connect

_FIXED_CLOCK = lambda: 1700000000.5  # noqa: E731


def _handshake(**options) -> Handshake:
    return Handshake(DeviceIdentity.generate(), HandshakeOptions(**options), clock=_FIXED_CLOCK)


async def _opened(**options) -> Handshake:
    hs = _handshake(**options)
    hs.start()
    hs.transport_opened()
    return hs


class TestStates:
    def test_starts_disconnected(self) -> None:
        assert _handshake().state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_happy_path_transitions(self) -> None:
        hs = await _opened()
        assert hs.state is ConnectionState.AWAITING_CHALLENGE
        hs.build_connect_params("n")
        assert hs.state is ConnectionState.AUTHENTICATING
        assert hs.accept_hello({"type": "hello-ok", "protocol": 3}) == 3
        assert hs.is_ready
        assert hs.protocol == 3

    def test_invalid_transition_raises(self) -> None:
        hs = _handshake()
        with pytest.raises(GatewayError, match="Invalid handshake transition"):
            hs.build_connect_params(None)

    def test_close_is_allowed_from_any_state(self) -> None:
        hs = _handshake()
        hs.close()
        assert hs.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_fail_records_reason(self) -> None:
        hs = await _opened()
        hs.fail("socket reset")
        assert hs.state is ConnectionState.FAILED
        assert hs.failure == "socket reset"


class TestChallenge:
    @pytest.mark.asyncio
    async def test_wait_returns_nonce(self) -> None:
        hs = await _opened()
        hs.receive_challenge("nonce-1", {"nonce": "nonce-1"})
        assert await hs.wait_for_challenge(1.0) == "nonce-1"

    @pytest.mark.asyncio
    async def test_wait_times_out_to_none(self) -> None:
        hs = await _opened()
        assert await hs.wait_for_challenge(0.01) is None
        assert hs.state is ConnectionState.AWAITING_CHALLENGE

    @pytest.mark.asyncio
    async def test_challenge_outside_waiting_state_ignored(self) -> None:
        hs = await _opened()
        hs.build_connect_params(None)
        hs.receive_challenge("late", {})
        assert hs.state is ConnectionState.AUTHENTICATING

    @pytest.mark.asyncio
    async def test_fail_wakes_waiter(self) -> None:
        hs = await _opened()
        waiter = asyncio.create_task(hs.wait_for_challenge(5.0))
        await asyncio.sleep(0)
        hs.fail("closed")
        with pytest.raises(ConnectionClosedError):
            await waiter


class TestConnectParams:
    @pytest.mark.asyncio
    async def test_params_shape(self) -> None:
        hs = await _opened(token="secret-token", caps=("tool-events",))
        params = hs.build_connect_params("nonce-xyz")
        assert params["minProtocol"] == 3
        assert params["maxProtocol"] == 3
        assert params["client"]["id"] == "gateway-client"
        assert params["client"]["mode"] == "backend"
        assert params["role"] == "operator"
        assert params["scopes"] == ["operator.admin"]
        assert params["caps"] == ["tool-events"]
        assert params["auth"] == {"token": "secret-token"}
        device = params["device"]
        assert device["signedAt"] == 1700000000500
        assert device["nonce"] == "nonce-xyz"
        assert hs.nonce == "nonce-xyz"

    @pytest.mark.asyncio
    async def test_v2_signature_verifies(self) -> None:
        hs = await _opened(token="tok")
        params = hs.build_connect_params("nonce-xyz")
        assert verify_connect(params, token="tok")

    @pytest.mark.asyncio
    async def test_signature_bound_to_token(self) -> None:
        hs = await _opened(token="tok")
        params = hs.build_connect_params("nonce-xyz")
        assert not verify_connect(params, token="other")

    @pytest.mark.asyncio
    async def test_v1_fallback_has_no_nonce(self) -> None:
        hs = await _opened()
        params = hs.build_connect_params(None)
        assert "nonce" not in params["device"]
        assert "auth" not in params
        assert verify_connect(params)


class TestHello:
    @pytest.mark.asyncio
    async def test_protocol_mismatch_rejected(self) -> None:
        hs = await _opened()
        hs.build_connect_params("n")
        with pytest.raises(HandshakeError, match="protocol mismatch"):
            hs.accept_hello({"type": "hello-ok", "protocol": 2})
        assert hs.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_type_rejected(self) -> None:
        hs = await _opened()
        hs.build_connect_params("n")
        with pytest.raises(HandshakeError):
            hs.accept_hello({"type": "goodbye"})

    @pytest.mark.asyncio
    async def test_missing_protocol_rejected(self) -> None:
        hs = await _opened()
        hs.build_connect_params("n")
        with pytest.raises(HandshakeError, match="missing the protocol"):
            hs.accept_hello({"type": "hello-ok"})
        assert hs.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_empty_payload_rejected(self) -> None:
        hs = await _opened()
        hs.build_connect_params("n")
        with pytest.raises(HandshakeError, match="unexpected connect response"):
            hs.accept_hello({})
        assert not hs.is_ready

    def test_reject_returns_error_with_reason(self) -> None:
        hs = _handshake()
        exc = hs.reject("device signature invalid")
        assert isinstance(exc, HandshakeError)
        assert exc.reason == "device signature invalid"
        assert hs.state is ConnectionState.FAILED
