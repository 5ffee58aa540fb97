"""shimmerdesk configuration: Pydantic models, TOML load, and env overlays."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shimmerdesk.core.constants import (
    ARCHIVE_LIMIT,
    COMMAND_IDLE_SECONDS,
    CONFIG_FILENAME,
    DB_FILENAME,
    DEFAULT_COLS,
    DEFAULT_ROWS,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    GRACEFUL_STOP_SECONDS,
    HISTORY_LIMIT,
    KILL_GRACE_SECONDS,
    LIVENESS_WINDOW_SECONDS,
    LOG_BUFFER_CAPACITY,
    OUTPUT_CHAR_LIMIT,
    OUTPUT_LINE_LIMIT,
    _default_data_dir,
)
from shimmerdesk.core.exceptions import ConfigError, ConfigNotFoundError


def shimmerdesk_dir() -> Path:
    """
    Return the shimmerdesk data directory, creating it if needed.

    macOS : ~/Library/Application Support/shimmerdesk
    Linux : ~/.config/shimmerdesk  (or $XDG_CONFIG_HOME/shimmerdesk)
    Other : ~/.shimmerdesk
    """
    d = _default_data_dir()
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Server start options
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """
    Options recognised by ``ServerSupervisor.start()``.

    Field names are snake_case; the camelCase spelling used by the UI layer
    (``modelPath``, ``gpuLayers``...) is accepted as an alias.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
        protected_namespaces=(),
    )

    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT
    model_path: str | None = None
    context_size: int | None = None
    batch_size: int | None = None
    gpu_layers: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    repeat_penalty: float | None = None
    additional_args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("host must not be empty")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("context_size", "batch_size")
    @classmethod
    def validate_positive(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("gpu_layers", "top_k")
    @classmethod
    def validate_non_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


# ---------------------------------------------------------------------------
# Supervisor / terminal settings
# ---------------------------------------------------------------------------


class SupervisorConfig(BaseModel):
    """Server supervisor tuning and binary location."""

    model_config = {"extra": "forbid"}

    binary_path: str = ""  # explicit override; empty = resolve from resources_dir
    resources_dir: str = ""  # root holding shimmy/<platform>/<arch>/shimmy
    liveness_window_s: float = LIVENESS_WINDOW_SECONDS
    graceful_stop_s: float = GRACEFUL_STOP_SECONDS
    log_capacity: int = LOG_BUFFER_CAPACITY

    @field_validator("liveness_window_s", "graceful_stop_s")
    @classmethod
    def validate_window(cls, v: float) -> float:
        if not (0.0 < v <= 120.0):
            raise ValueError("must be between 0 and 120 seconds")
        return v

    @field_validator("log_capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("log_capacity must be at least 1")
        return v


class TerminalConfig(BaseModel):
    """Terminal multiplexer defaults."""

    model_config = {"extra": "forbid"}

    shell: str = ""  # empty = platform default
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    completion: Literal["idle", "sentinel"] = "idle"
    command_idle_s: float = COMMAND_IDLE_SECONDS
    history_limit: int = HISTORY_LIMIT
    output_line_limit: int = OUTPUT_LINE_LIMIT
    output_char_limit: int = OUTPUT_CHAR_LIMIT
    archive_limit: int = ARCHIVE_LIMIT
    kill_grace_s: float = KILL_GRACE_SECONDS

    @field_validator(
        "cols", "rows", "history_limit", "output_line_limit", "output_char_limit", "archive_limit"
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("command_idle_s", "kill_grace_s")
    @classmethod
    def validate_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class LoggingConfig(BaseModel):
    level: str = "WARNING"
    format: Literal["text", "json"] = "text"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"Invalid log level {v!r}. Must be one of: {sorted(valid)}")
        return upper


class DatabaseConfig(BaseModel):
    enabled: bool = True
    path: str = ""  # empty = <data_dir>/shimmerdesk.db


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class ShimmerConfig(BaseModel):
    """Root shimmerdesk configuration model."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @property
    def db_path(self) -> Path:
        if self.database.path:
            return Path(self.database.path).expanduser()
        return shimmerdesk_dir() / DB_FILENAME


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("SHIMMERDESK_CONFIG"):
        return Path(env_path)
    return _default_data_dir() / CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> ShimmerConfig:
    """
    Load ShimmerConfig from a TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (SHIMMERDESK_*)
      2. Config file (``path``, $SHIMMERDESK_CONFIG, or data dir / config.toml)
      3. Built-in defaults

    An explicitly requested file that does not exist raises
    ``ConfigNotFoundError``; a missing default file just yields defaults.
    """
    import tomllib

    explicit = path is not None or bool(os.environ.get("SHIMMERDESK_CONFIG"))
    cfg_path = Path(path) if path is not None else _config_file_path()

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
        return ShimmerConfig.model_validate(data)
    except Exception as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay SHIMMERDESK_* environment variables onto parsed TOML."""

    def _env(name: str) -> str:
        return os.environ.get(name, "")

    if host := _env("SHIMMERDESK_SERVER_HOST"):
        data.setdefault("server", {})["host"] = host
    if port := _env("SHIMMERDESK_SERVER_PORT"):
        data.setdefault("server", {})["port"] = port
    if model := _env("SHIMMERDESK_MODEL_PATH"):
        data.setdefault("server", {})["model_path"] = model
    if binary := _env("SHIMMERDESK_BINARY_PATH"):
        data.setdefault("supervisor", {})["binary_path"] = binary
    if resources := _env("SHIMMERDESK_RESOURCES_DIR"):
        data.setdefault("supervisor", {})["resources_dir"] = resources
    if shell := _env("SHIMMERDESK_SHELL"):
        data.setdefault("terminal", {})["shell"] = shell
    if level := _env("SHIMMERDESK_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level
    if db := _env("SHIMMERDESK_DB_PATH"):
        data.setdefault("database", {})["path"] = db
