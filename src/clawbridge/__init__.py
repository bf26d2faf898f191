"""
clawbridge — asyncio client for a local agent gateway.

clawbridge talks to a long-running agent process over one WebSocket
connection. It proves possession of an ephemeral Ed25519 device key during
a challenge/response handshake, issues a run call that is acknowledged
first and completed later, and reconciles that completion with the
assistant output streamed alongside it.

Package layout (src/clawbridge/):
  core/       — configuration, constants, exceptions, logging setup
  gateway/    — identity, wire protocol, transport, handshake, correlator,
                event router, client, gateway process supervisor
  cli/        — Click CLI entry point
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
