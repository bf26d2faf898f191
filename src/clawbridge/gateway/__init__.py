"""
clawbridge.gateway — protocol client for a local agent gateway.

Layers, leaves first:

  identity     ephemeral Ed25519 device key and fingerprint
  protocol     JSON frames and the canonical device assertion
  transport    one WebSocket connection, text frames only
  handshake    challenge/response state machine
  correlator   request id -> pending call (single and dual-phase)
  events       stream buffer, lifecycle fallback, result policy
  client       connect / call / disconnect
  process      optional supervisor for a local gateway subprocess
"""

from __future__ import annotations

from clawbridge.gateway.client import ClientOptions, ClientState, GatewayClient
from clawbridge.gateway.events import ResultPolicy
from clawbridge.gateway.handshake import ConnectionState
from clawbridge.gateway.identity import DeviceIdentity

__all__ = [
    "ClientOptions",
    "ClientState",
    "ConnectionState",
    "DeviceIdentity",
    "GatewayClient",
    "ResultPolicy",
]
