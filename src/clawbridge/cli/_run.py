"""clawbridge run — start a local gateway, ask once, stop it."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console

from clawbridge.core.config import ClawBridgeConfig
from clawbridge.core.exceptions import ClawBridgeError


def cmd_run(config: ClawBridgeConfig, message: str, session_key: str | None, console: Console) -> None:
    from clawbridge.cli._common import fail

    console.print(f"[bold]clawbridge[/bold] starting gateway: [cyan]{' '.join(config.process.command)}[/cyan]")
    try:
        text = asyncio.run(_run_async(config, message, session_key))
    except ClawBridgeError as exc:
        fail(console, "Run failed", exc)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise SystemExit(130) from None
    click.echo(text)


async def _run_async(config: ClawBridgeConfig, message: str, session_key: str | None) -> str:
    from clawbridge.gateway.client import ClientOptions, GatewayClient
    from clawbridge.gateway.process import GatewayProcess

    proc = GatewayProcess(
        config.process,
        url=config.gateway.url,
        token=config.gateway.token_value,
    )
    try:
        await proc.start()
        await proc.wait_until_ready()
        client = GatewayClient(
            config.gateway.url,
            token=proc.token,
            options=ClientOptions.from_config(config),
        )
        try:
            await client.connect()
            return await client.call(message, session_key)
        finally:
            await client.disconnect()
    finally:
        await proc.stop()
