"""CLI commands: clawbridge config show | validate | init."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.console import Console

from clawbridge.core.constants import ExitCode

console = Console()


@click.group("config")
def config_group() -> None:
    """View, validate, and initialise clawbridge configuration."""


@config_group.command("show")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
@click.option("--redact/--no-redact", default=True, help="Redact secrets (default: redact)")
def config_show(as_json, redact):
    """Display the effective configuration (file + environment + defaults)."""
    from clawbridge.core.config import _config_file_path, config_to_dict, load_config

    try:
        cfg = load_config()
    except Exception as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)

    data = config_to_dict(cfg, redact=redact)
    data["_config_path"] = str(cfg.config_path or _config_file_path())
    data["_config_file_exists"] = cfg.config_path is not None

    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        _print_config_rich(data, console)


@config_group.command("validate")
@click.argument("path", required=False, type=click.Path(dir_okay=False, path_type=Path))
def config_validate(path):
    """Validate a config file against the schema."""
    from clawbridge.core.config import _config_file_path, load_config

    cfg_path = path or _config_file_path()
    if not cfg_path.exists():
        console.print(f"[red]Config not found:[/red] {cfg_path}")
        sys.exit(ExitCode.CONFIG_ERROR)

    try:
        load_config(cfg_path)
        console.print(f"[green]Config is valid:[/green] {cfg_path}")
    except Exception as exc:
        console.print(f"[red]Config validation failed:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)


@config_group.command("init")
@click.option("--url", default=None, help="Gateway WebSocket URL")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def config_init(url, force):
    """Write a config file populated with the defaults."""
    from clawbridge.core.config import (
        ClawBridgeConfig,
        GatewayConfig,
        _config_file_path,
        config_to_dict,
        save_config,
    )

    cfg_path = _config_file_path()
    if cfg_path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {cfg_path} (use --force)")
        sys.exit(ExitCode.ERROR)

    cfg = ClawBridgeConfig()
    if url:
        try:
            cfg.gateway = GatewayConfig(url=url)
        except ValueError as exc:
            console.print(f"[red]Invalid url:[/red] {exc}")
            sys.exit(ExitCode.CONFIG_ERROR)
    written = save_config(config_to_dict(cfg, redact=False), cfg_path)
    console.print(f"[green]Config written:[/green] {written}")


def _print_config_rich(data: dict, con: Console) -> None:
    from rich.table import Table

    table = Table(title="clawbridge configuration", show_header=True)
    table.add_column("Section", style="cyan")
    table.add_column("Key", style="bold")
    table.add_column("Value")

    for section, values in data.items():
        if section.startswith("_"):
            continue
        if isinstance(values, dict):
            for key, val in values.items():
                table.add_row(section, key, str(val))
        else:
            table.add_row("", section, str(values))

    con.print(table)
    con.print(f"\n[dim]Config path: {data.get('_config_path', '?')}[/dim]")
