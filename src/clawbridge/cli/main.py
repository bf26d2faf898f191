"""
clawbridge CLI entry point.

Commands:
  clawbridge ask MESSAGE     — send one message to a running gateway
  clawbridge ping            — handshake only; check the gateway answers
  clawbridge run MESSAGE     — start a local gateway, ask once, stop it
  clawbridge identity        — show a fresh ephemeral device identity
  clawbridge config show     — effective configuration (secrets redacted)
  clawbridge config validate — check a config file against the schema
  clawbridge config init     — write a config file with the defaults
"""

from __future__ import annotations

import click
from rich.console import Console

from clawbridge import __version__
from clawbridge.cli._config_cmd import config_group

console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="clawbridge %(version)s")
def cli() -> None:
    """clawbridge — signed WebSocket client for a local agent gateway."""


cli.add_command(config_group)


# ---------------------------------------------------------------------------
# ask / ping
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("message")
@click.option("--session-key", default=None, help="Session key grouping related runs")
@click.option("--url", default=None, help="Gateway WebSocket URL (overrides config)")
@click.option("--token", default=None, help="Gateway bearer token")
@click.option("--timeout", type=float, default=None, help="Run timeout in seconds")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def ask(
    message: str,
    session_key: str | None,
    url: str | None,
    token: str | None,
    timeout: float | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Send MESSAGE to the agent and print its response."""
    from clawbridge.cli._ask import apply_overrides, cmd_ask
    from clawbridge.cli._common import load_or_exit

    config = load_or_exit(err_console, verbose=verbose)
    config = apply_overrides(config, url=url, token=token, timeout=timeout)
    cmd_ask(config, message, session_key, as_json=as_json, console=err_console)


@cli.command()
@click.option("--url", default=None, help="Gateway WebSocket URL (overrides config)")
@click.option("--token", default=None, help="Gateway bearer token")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def ping(url: str | None, token: str | None, as_json: bool, verbose: bool) -> None:
    """Authenticate against the gateway without running the agent."""
    from clawbridge.cli._ask import apply_overrides, cmd_ping
    from clawbridge.cli._common import load_or_exit

    config = load_or_exit(err_console, verbose=verbose)
    config = apply_overrides(config, url=url, token=token)
    cmd_ping(config, as_json=as_json, console=console)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("message")
@click.option("--provider", default=None, help="Model provider for the gateway")
@click.option("--model", default=None, help="Model id (provider default if omitted)")
@click.option("--workspace", default=None, help="Gateway workspace directory")
@click.option("--session-key", default=None, help="Session key grouping related runs")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def run(
    message: str,
    provider: str | None,
    model: str | None,
    workspace: str | None,
    session_key: str | None,
    verbose: bool,
) -> None:
    """Start a local gateway, send MESSAGE, print the response, stop the gateway."""
    from clawbridge.cli._common import load_or_exit
    from clawbridge.cli._run import cmd_run

    config = load_or_exit(err_console, verbose=verbose)
    updates = {
        key: value
        for key, value in (("provider", provider), ("model", model), ("workspace", workspace))
        if value is not None
    }
    if updates:
        config = config.model_copy(update={"process": config.process.model_copy(update=updates)})
    cmd_run(config, message, session_key, console=err_console)


# ---------------------------------------------------------------------------
# identity
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
def identity(as_json: bool) -> None:
    """Generate and show an ephemeral device identity."""
    from clawbridge.cli._identity import cmd_identity

    cmd_identity(as_json=as_json, console=console)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
