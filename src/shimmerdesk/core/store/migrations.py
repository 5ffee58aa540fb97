"""
Schema migrations for the shimmerdesk SQLite database.

Uses PRAGMA user_version as the version counter (atomic, no extra table).
Each migration is an idempotent function that upgrades from version N to N+1.

Migration contract:
  - Migrations run inside an explicit transaction (BEGIN / COMMIT).
  - Each migration MUST be idempotent: safe to re-run after a mid-flight crash.
  - After all migrations succeed, PRAGMA user_version is bumped.
  - If any migration fails, the transaction is rolled back and the error is
    surfaced with the DB path so the user can take recovery action.

Version history:
  0 → 1: Terminal history (terminal_sessions, terminal_commands)
  1 → 2: Server log capture (server_logs) and terminal exit signal column
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path

import structlog

logger = structlog.get_logger()

# Bump this when adding a new migration.
LATEST_SCHEMA_VERSION = 2


# ---------------------------------------------------------------------------
# Individual migrations
# ---------------------------------------------------------------------------


def _migrate_0_to_1(conn: sqlite3.Connection) -> None:
    """Version 0 → 1: terminal session and command tables."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS terminal_sessions (
            id                TEXT PRIMARY KEY,
            name              TEXT NOT NULL DEFAULT '',
            shell             TEXT NOT NULL DEFAULT '',
            cwd               TEXT NOT NULL DEFAULT '',
            pid               INTEGER,
            state             TEXT NOT NULL DEFAULT 'created',
            is_active         INTEGER NOT NULL DEFAULT 1,
            exit_code         INTEGER,
            created_at        TEXT NOT NULL DEFAULT (datetime('now')),
            last_activity_at  TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS terminal_commands (
            id           TEXT PRIMARY KEY,
            session_id   TEXT NOT NULL REFERENCES terminal_sessions(id),
            command      TEXT NOT NULL,
            output       TEXT NOT NULL DEFAULT '',
            exit_code    INTEGER,
            started_at   TEXT NOT NULL DEFAULT (datetime('now')),
            duration_ms  INTEGER NOT NULL DEFAULT 0
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_terminal_commands_session
            ON terminal_commands(session_id, started_at)
    """)


def _migrate_1_to_2(conn: sqlite3.Connection) -> None:
    """Version 1 → 2: server_logs table; record the signal that ended a session."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS server_logs (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            stream     TEXT NOT NULL DEFAULT 'system',
            text       TEXT NOT NULL,
            timestamp  TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_server_logs_timestamp
            ON server_logs(timestamp)
    """)
    _add_column_if_missing(conn, "terminal_sessions", "exit_signal", "TEXT")


# ---------------------------------------------------------------------------
# Migration registry (version_from → callable)
# ---------------------------------------------------------------------------


_MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {
    0: _migrate_0_to_1,
    1: _migrate_1_to_2,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _add_column_if_missing(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    column_def: str,
) -> None:
    """Add a column to *table* if it does not already exist."""
    cursor = conn.execute(f"PRAGMA table_info({table})")  # noqa: S608
    existing = {row[1] for row in cursor.fetchall()}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_def}")  # noqa: S608
        logger.info("migration_added_column", table=table, column=column)


def get_user_version(conn: sqlite3.Connection) -> int:
    """Read the current PRAGMA user_version."""
    row = conn.execute("PRAGMA user_version").fetchone()
    return row[0] if row else 0


def _set_user_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {version}")  # noqa: S608


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_migrations(conn: sqlite3.Connection, db_path: Path) -> None:
    """
    Run all pending schema migrations on *conn*.

    Raises ``RuntimeError`` with a user-friendly message (including the DB
    path) if any migration fails, so the caller can display recovery steps.
    """
    current = get_user_version(conn)

    if current > LATEST_SCHEMA_VERSION:
        raise RuntimeError(
            f"Database {db_path} has schema version {current}, but this build of "
            f"shimmerdesk only supports up to version {LATEST_SCHEMA_VERSION}. "
            f"Please upgrade shimmerdesk or remove the database file."
        )

    if current == LATEST_SCHEMA_VERSION:
        return

    logger.info("migration_starting", from_version=current, to_version=LATEST_SCHEMA_VERSION)

    for from_version in range(current, LATEST_SCHEMA_VERSION):
        migration = _MIGRATIONS.get(from_version)
        if migration is None:
            raise RuntimeError(
                f"No migration registered for v{from_version} → v{from_version + 1}. "
                f"Database: {db_path}"
            )

        target = from_version + 1
        logger.info("migration_step", from_version=from_version, to_version=target)

        try:
            migration(conn)
            _set_user_version(conn, target)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            raise RuntimeError(
                f"Schema migration v{from_version} → v{target} failed: {exc}\n"
                f"Database path: {db_path}\n"
                f"Recovery: delete (or rename) the database file and restart.\n"
                f"  mv '{db_path}' '{db_path}.bak'"
            ) from exc

    logger.info("migration_complete", version=get_user_version(conn))
