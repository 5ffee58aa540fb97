"""Helpers shared by CLI commands."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import click
from rich.console import Console

from shimmerdesk.core.constants import ExitCode

if TYPE_CHECKING:
    from shimmerdesk.core.config import ShimmerConfig
    from shimmerdesk.core.store.database import Database
    from shimmerdesk.core.store.sink import HistorySink


def load_config_or_exit(console: Console, path: str | None = None) -> ShimmerConfig:
    from shimmerdesk.core.config import load_config
    from shimmerdesk.core.exceptions import ConfigError, ConfigNotFoundError

    try:
        return load_config(path)
    except ConfigNotFoundError as exc:
        console.print(f"[red]Config not found:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)


def open_db(config: ShimmerConfig, *, create: bool = True) -> Database | None:
    """Open the history database, or return None when disabled or absent."""
    if not config.database.enabled:
        return None
    db_path = config.db_path
    if not create and not db_path.exists():
        return None
    from shimmerdesk.core.store.database import Database

    db = Database(db_path)
    db.connect()
    return db


def open_sink(config: ShimmerConfig) -> tuple[HistorySink, Database | None]:
    from shimmerdesk.core.store.sink import DatabaseSink, NullSink

    db = open_db(config)
    if db is None:
        return NullSink(), None
    return DatabaseSink(db), db


def load_context_config(console: Console, ctx: click.Context) -> ShimmerConfig:
    """Load config for a command and apply its ``[logging]`` section."""
    from shimmerdesk.core.logging import configure_from_config

    obj = ctx.obj or {}
    config = load_config_or_exit(console, obj.get("config_path"))
    configure_from_config(config.logging, level=obj.get("log_level"), json_output=obj.get("log_json"))
    return config
