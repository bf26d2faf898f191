"""clawbridge configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

from clawbridge.core.constants import (
    CHALLENGE_WAIT_SECONDS,
    CLAWBRIDGE_DIR_NAME,
    CONFIG_FILENAME,
    DEFAULT_CLIENT_ID,
    DEFAULT_CLIENT_MODE,
    DEFAULT_GATEWAY_URL,
    DEFAULT_ROLE,
    DEFAULT_SCOPES,
    DEFAULT_SESSION_KEY,
    GATEWAY_READY_TIMEOUT_SECONDS,
    GATEWAY_STARTUP_GRACE_SECONDS,
    GATEWAY_STOP_GRACE_SECONDS,
    HANDSHAKE_TIMEOUT_SECONDS,
    NO_RESPONSE_PLACEHOLDER,
    PROTOCOL_VERSION,
    REQUEST_TIMEOUT_SECONDS,
    RUN_TIMEOUT_SECONDS,
)
from clawbridge.core.exceptions import ConfigError, ConfigNotFoundError


def clawbridge_dir() -> Path:
    """Return the clawbridge config directory (~/.clawbridge)."""
    return Path.home() / CLAWBRIDGE_DIR_NAME


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class GatewayConfig(BaseModel):
    url: str = DEFAULT_GATEWAY_URL
    token: SecretStr | None = None
    client_id: str = DEFAULT_CLIENT_ID
    client_mode: str = DEFAULT_CLIENT_MODE
    role: str = DEFAULT_ROLE
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    caps: list[str] = Field(default_factory=list)
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("Gateway url must start with ws:// or wss://")
        return v

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, v: Any) -> Any:
        """Accept both list and comma-separated string."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def token_value(self) -> str | None:
        if self.token is None:
            return None
        return self.token.get_secret_value() or None


class TimeoutsConfig(BaseModel):
    handshake_seconds: float = HANDSHAKE_TIMEOUT_SECONDS
    challenge_wait_seconds: float = CHALLENGE_WAIT_SECONDS
    request_seconds: float = REQUEST_TIMEOUT_SECONDS
    run_seconds: float = RUN_TIMEOUT_SECONDS

    @field_validator("handshake_seconds", "request_seconds", "run_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be greater than zero")
        return v

    @field_validator("challenge_wait_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("challenge_wait_seconds cannot be negative")
        return v


class RunConfig(BaseModel):
    session_key: str = DEFAULT_SESSION_KEY
    # When both are available, streamed assistant text wins over the
    # structured completion text.
    prefer_stream: bool = True
    placeholder: str = NO_RESPONSE_PLACEHOLDER


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v.lower()


class ProcessConfig(BaseModel):
    """How to launch a local gateway process for ``clawbridge run``."""

    command: list[str] = Field(default_factory=lambda: ["openclaw", "gateway"])
    workspace: str = ".openclaw"
    provider: str = "anthropic"
    model: str = ""
    api_key: SecretStr | None = None
    startup_grace_seconds: float = GATEWAY_STARTUP_GRACE_SECONDS
    ready_timeout_seconds: float = GATEWAY_READY_TIMEOUT_SECONDS
    stop_grace_seconds: float = GATEWAY_STOP_GRACE_SECONDS

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser().resolve()


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class ClawBridgeConfig(BaseModel):
    """Root clawbridge configuration model."""

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)

    _config_path: Path | None = None

    @property
    def config_path(self) -> Path | None:
        return self._config_path


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("CLAWBRIDGE_CONFIG"):
        return Path(env_path)
    return clawbridge_dir() / CONFIG_FILENAME


def load_config(path: Path | None = None) -> ClawBridgeConfig:
    """
    Load ClawBridgeConfig from a TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (CLAWBRIDGE_*)
      2. Config file (~/.clawbridge/config.toml or $CLAWBRIDGE_CONFIG)
      3. Built-in defaults

    A missing default file is not an error. A missing file that was asked
    for explicitly (argument or $CLAWBRIDGE_CONFIG) raises ConfigNotFoundError.
    """
    import tomllib

    explicit = path is not None or "CLAWBRIDGE_CONFIG" in os.environ
    cfg_path = path or _config_file_path()

    data: dict[str, Any] = {}
    if cfg_path.exists():
        try:
            with open(cfg_path, "rb") as f:
                data = tomllib.load(f)
        except Exception as exc:
            raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc
    elif explicit:
        raise ConfigNotFoundError(f"Config file not found: {cfg_path}")

    _apply_env_overrides(data)

    try:
        config = ClawBridgeConfig.model_validate(data)
    except Exception as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc

    if cfg_path.exists():
        config._config_path = cfg_path
    return config


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay CLAWBRIDGE_* environment variables onto the parsed TOML data."""
    if url := os.environ.get("CLAWBRIDGE_GATEWAY_URL"):
        data.setdefault("gateway", {})["url"] = url
    if token := os.environ.get("CLAWBRIDGE_GATEWAY_TOKEN"):
        data.setdefault("gateway", {})["token"] = token
    if session_key := os.environ.get("CLAWBRIDGE_SESSION_KEY"):
        data.setdefault("run", {})["session_key"] = session_key
    if timeout := os.environ.get("CLAWBRIDGE_RUN_TIMEOUT_SECONDS"):
        try:
            data.setdefault("timeouts", {})["run_seconds"] = float(timeout)
        except ValueError as exc:
            raise ConfigError(f"CLAWBRIDGE_RUN_TIMEOUT_SECONDS is not a number: {timeout!r}") from exc
    if level := os.environ.get("CLAWBRIDGE_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level
    if api_key := os.environ.get("CLAWBRIDGE_API_KEY"):
        data.setdefault("process", {})["api_key"] = api_key


def config_to_dict(config: ClawBridgeConfig, redact: bool = True) -> dict[str, Any]:
    """Dump *config* to plain TOML-compatible data, redacting secrets by default."""
    data = config.model_dump(mode="python", exclude_none=True)
    for section, key in (("gateway", "token"), ("process", "api_key")):
        secret = getattr(getattr(config, section), key)
        if secret is None:
            continue
        data[section][key] = "**********" if redact else secret.get_secret_value()
    return data


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    tmp_path = cfg_path.with_suffix(".tmp")
    tmp_path.unlink(missing_ok=True)
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.replace(cfg_path)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
