"""
Gateway process supervisor — run a local gateway for one job.

Lifecycle::

    proc = GatewayProcess(config.process, url=config.gateway.url, token=token)
    await proc.start()              # write config.json, spawn, pump logs
    await proc.wait_until_ready()   # probe the WebSocket endpoint
    ...                             # talk to it with GatewayClient
    await proc.stop()               # SIGTERM, then SIGKILL after the grace

The gateway reads its provider settings from
``<workspace>/.config/config.json`` (path passed in ``OPENCLAW_CONFIG``).
The bearer token is generated here when none is given and handed to the
gateway through ``OPENCLAW_GATEWAY_TOKEN``; callers read it back from
``proc.token`` and pass it to the client explicitly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
from collections.abc import Callable
from pathlib import Path
from typing import Any

from clawbridge.core.config import ProcessConfig
from clawbridge.core.constants import (
    DEFAULT_GATEWAY_URL,
    GATEWAY_CONFIG_DIR,
    GATEWAY_CONFIG_FILENAME,
)
from clawbridge.core.exceptions import ConfigError, GatewayTimeoutError, ProcessError, TransportError
from clawbridge.gateway.transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)

# Used when no model is configured for a provider
DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o",
}

_PROBE_TIMEOUT_SECONDS = 2.0
_PROBE_INTERVAL_SECONDS = 1.0


def resolve_model(provider: str, model: str = "") -> str:
    """Return a ``provider/model`` id, filling in the provider default.

    A model that already carries a provider prefix is returned unchanged.
    """
    provider = provider.strip().lower()
    model = model.strip()
    if "/" in model:
        return model
    if not model:
        model = DEFAULT_MODELS.get(provider, "")
        if not model:
            raise ConfigError(f"No default model for provider {provider!r}; set process.model")
    return f"{provider}/{model}"


class GatewayProcess:
    """One gateway subprocess, owned by the caller."""

    def __init__(
        self,
        config: ProcessConfig,
        *,
        url: str = DEFAULT_GATEWAY_URL,
        token: str | None = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
    ) -> None:
        self._config = config
        self._url = url
        self.token = token or secrets.token_hex(24)
        self._transport_factory = transport_factory
        self._proc: asyncio.subprocess.Process | None = None
        self._pump: asyncio.Task[None] | None = None

    @property
    def workspace(self) -> Path:
        return self._config.workspace_path

    @property
    def config_path(self) -> Path:
        return self.workspace / GATEWAY_CONFIG_DIR / GATEWAY_CONFIG_FILENAME

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def gateway_config(self) -> dict[str, Any]:
        cfg = self._config
        api_key = cfg.api_key.get_secret_value() if cfg.api_key is not None else ""
        return {
            "providers": {
                cfg.provider: {
                    "apiKey": api_key,
                    "model": resolve_model(cfg.provider, cfg.model),
                }
            },
            "channels": {},
            "workspace": str(self.workspace),
        }

    def write_gateway_config(self) -> Path:
        """Write the gateway's config.json (0600) and return its path."""
        path = self.config_path
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        tmp_path = path.with_suffix(".tmp")
        tmp_path.unlink(missing_ok=True)
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.gateway_config(), f, indent=2)
            tmp_path.replace(path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise ProcessError(f"Cannot write gateway config to {path}: {exc}") from exc
        logger.info("Gateway config written to %s", path)
        return path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the gateway and give it a moment to bind its port."""
        if self.is_running():
            raise ProcessError("Gateway process is already running")
        config_path = self.write_gateway_config()
        env = {
            **os.environ,
            "OPENCLAW_CONFIG": str(config_path),
            "OPENCLAW_GATEWAY_TOKEN": self.token,
        }
        command = self._config.command
        logger.info("Starting gateway: %s", " ".join(command))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.workspace),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (OSError, ValueError) as exc:
            raise ProcessError(f"Cannot start gateway {command[0]!r}: {exc}") from exc

        self._pump = asyncio.create_task(self._pump_output(), name="clawbridge-gateway-log")
        await asyncio.sleep(self._config.startup_grace_seconds)
        if not self.is_running():
            code = self._proc.returncode
            await self._drain_pump()
            raise ProcessError(f"Gateway exited during startup with code {code}")

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Probe the endpoint until a WebSocket opens or *timeout* passes."""
        deadline = timeout if timeout is not None else self._config.ready_timeout_seconds
        logger.info("Waiting for gateway at %s", self._url)
        loop = asyncio.get_running_loop()
        give_up = loop.time() + deadline
        attempt = 0
        while True:
            attempt += 1
            if self._proc is not None and self._proc.returncode is not None:
                raise ProcessError(f"Gateway exited with code {self._proc.returncode}")
            if await self._probe():
                logger.info("Gateway is ready (attempt %d)", attempt)
                return
            if loop.time() + _PROBE_INTERVAL_SECONDS > give_up:
                raise GatewayTimeoutError(f"Gateway failed to become ready within {deadline:g}s")
            await asyncio.sleep(_PROBE_INTERVAL_SECONDS)

    async def _probe(self) -> bool:
        transport = self._transport_factory()
        try:
            async with asyncio.timeout(_PROBE_TIMEOUT_SECONDS):
                await transport.open(self._url)
        except (TransportError, TimeoutError) as exc:
            logger.debug("Gateway probe failed: %s", exc)
            return False
        finally:
            await transport.close()
        return True

    async def stop(self) -> None:
        """Terminate the gateway. Idempotent; never raises."""
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.returncode is None:
            logger.info("Stopping gateway (pid %s)", proc.pid)
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), self._config.stop_grace_seconds)
                except TimeoutError:
                    logger.warning("Gateway did not exit after SIGTERM; sending SIGKILL")
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error stopping gateway: %s", exc)
        if proc.returncode not in (None, 0):
            logger.warning("Gateway exited with code %s", proc.returncode)
        await self._drain_pump()
        logger.info("Gateway stopped")

    async def _pump_output(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        async for line in proc.stdout:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("[gateway] %s", text)

    async def _drain_pump(self) -> None:
        pump, self._pump = self._pump, None
        if pump is None:
            return
        try:
            await asyncio.wait_for(pump, 1.0)
        except TimeoutError:
            logger.debug("Gateway log pump still running; cancelled")
        except Exception as exc:  # noqa: BLE001
            logger.debug("Gateway log pump failed: %s", exc)
