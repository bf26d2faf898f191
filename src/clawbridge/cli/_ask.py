"""clawbridge ask / ping — talk to an already running gateway."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from rich.console import Console

from clawbridge.core.config import ClawBridgeConfig, GatewayConfig, TimeoutsConfig
from clawbridge.core.exceptions import ClawBridgeError


def apply_overrides(
    config: ClawBridgeConfig,
    *,
    url: str | None = None,
    token: str | None = None,
    timeout: float | None = None,
) -> ClawBridgeConfig:
    """Return *config* with command-line overrides validated and applied."""
    gateway: dict[str, Any] = config.gateway.model_dump()
    if url:
        gateway["url"] = url
    if token:
        gateway["token"] = token
    timeouts: dict[str, Any] = config.timeouts.model_dump()
    if timeout:
        timeouts["run_seconds"] = timeout
    try:
        return config.model_copy(
            update={
                "gateway": GatewayConfig.model_validate(gateway),
                "timeouts": TimeoutsConfig.model_validate(timeouts),
            }
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def cmd_ask(
    config: ClawBridgeConfig,
    message: str,
    session_key: str | None,
    as_json: bool,
    console: Console,
) -> None:
    """Connect, run one message through the agent, print the answer."""
    from clawbridge.cli._common import fail

    try:
        text, fingerprint = asyncio.run(_ask_async(config, message, session_key))
    except ClawBridgeError as exc:
        fail(console, "Gateway error", exc)

    if as_json:
        click.echo(json.dumps({"response": text, "device": fingerprint}, indent=2))
    else:
        click.echo(text)


async def _ask_async(config: ClawBridgeConfig, message: str, session_key: str | None) -> tuple[str, str]:
    from clawbridge.gateway.client import GatewayClient

    client = GatewayClient.from_config(config)
    try:
        await client.connect()
        text = await client.call(message, session_key)
    finally:
        await client.disconnect()
    return text, client.identity.fingerprint


def cmd_ping(config: ClawBridgeConfig, as_json: bool, console: Console) -> None:
    """Handshake only; report what the gateway said."""
    from clawbridge.cli._common import fail

    try:
        info = asyncio.run(_ping_async(config))
    except ClawBridgeError as exc:
        fail(console, "Gateway unreachable", exc)

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return
    console.print(f"[green]Gateway OK[/green] at {info['url']}")
    console.print(f"  protocol: {info['protocol']}")
    console.print(f"  device:   {info['device']}")


async def _ping_async(config: ClawBridgeConfig) -> dict[str, Any]:
    from clawbridge.gateway.client import GatewayClient

    client = GatewayClient.from_config(config)
    try:
        await client.connect()
        return {
            "url": client.url,
            "protocol": client.protocol,
            "device": client.identity.fingerprint,
        }
    finally:
        await client.disconnect()
