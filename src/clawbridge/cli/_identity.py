"""clawbridge identity — show a freshly generated device identity."""

from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

from clawbridge.gateway.identity import DeviceIdentity


def cmd_identity(as_json: bool, console: Console) -> None:
    """Print the fingerprint and public key of a new ephemeral identity.

    Each process generates its own keypair, so this is only useful to check
    that key generation works and to see the encodings the gateway receives.
    """
    identity = DeviceIdentity.generate()
    data = {
        "fingerprint": identity.fingerprint,
        "public_key": identity.public_key_b64url,
        "algorithm": "Ed25519",
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="Ephemeral device identity", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, value)
    console.print(table)
    console.print("[dim]Not persisted: every clawbridge process generates a new keypair.[/dim]")
