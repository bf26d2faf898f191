"""clawbridge constants: filesystem layout, protocol defaults, timeouts."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    NETWORK_ERROR = 4
    HANDSHAKE_ERROR = 5
    TIMEOUT = 6


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CLAWBRIDGE_DIR_NAME = ".clawbridge"
CONFIG_FILENAME = "config.toml"
GATEWAY_CONFIG_DIR = ".config"
GATEWAY_CONFIG_FILENAME = "config.json"

# ---------------------------------------------------------------------------
# Gateway endpoint and protocol
# ---------------------------------------------------------------------------

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
PROTOCOL_VERSION = 3

DEFAULT_CLIENT_ID = "gateway-client"
DEFAULT_CLIENT_MODE = "backend"
DEFAULT_ROLE = "operator"
DEFAULT_SCOPES: tuple[str, ...] = ("operator.admin",)

DEFAULT_SESSION_KEY = "github-action"
NO_RESPONSE_PLACEHOLDER = "(no response)"

# Hard caps on inbound frames
MAX_FRAME_BYTES = 25 * 1024 * 1024

# ---------------------------------------------------------------------------
# Timeouts (seconds)
# ---------------------------------------------------------------------------

HANDSHAKE_TIMEOUT_SECONDS = 30.0
CHALLENGE_WAIT_SECONDS = 2.0
REQUEST_TIMEOUT_SECONDS = 60.0
RUN_TIMEOUT_SECONDS = 300.0

GATEWAY_READY_TIMEOUT_SECONDS = 30.0
GATEWAY_STARTUP_GRACE_SECONDS = 2.0
GATEWAY_STOP_GRACE_SECONDS = 5.0
