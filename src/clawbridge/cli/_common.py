"""Helpers shared by the CLI command modules."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn

from rich.console import Console

from clawbridge.core.config import ClawBridgeConfig, load_config
from clawbridge.core.constants import ExitCode
from clawbridge.core.exceptions import (
    ConfigError,
    GatewayTimeoutError,
    HandshakeError,
    TransportError,
)
from clawbridge.core.logging import configure_logging


def load_or_exit(console: Console, path: Path | None = None, *, verbose: bool = False) -> ClawBridgeConfig:
    """Load config and install logging, or print the problem and exit."""
    try:
        config = load_config(path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    level = "DEBUG" if verbose else config.logging.level
    configure_logging(level, config.logging.format)
    return config


def exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, GatewayTimeoutError):
        return ExitCode.TIMEOUT
    if isinstance(exc, HandshakeError):
        return ExitCode.HANDSHAKE_ERROR
    if isinstance(exc, TransportError):
        return ExitCode.NETWORK_ERROR
    if isinstance(exc, ConfigError):
        return ExitCode.CONFIG_ERROR
    return ExitCode.ERROR


def fail(console: Console, label: str, exc: BaseException) -> NoReturn:
    console.print(f"[red]{label}:[/red] {exc}")
    sys.exit(exit_code_for(exc))
