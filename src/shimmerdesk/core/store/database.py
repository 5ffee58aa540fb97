"""
SQLite-backed history store.

Schema (3 tables):
  terminal_sessions  — one row per shell session, updated when it ends
  terminal_commands  — finished commands with captured output
  server_logs        — captured server output lines

Thread safety:
  SQLite WAL mode is enabled. The database is opened with check_same_thread=False
  because asyncio runs all coroutines on the same thread, but executor calls
  may cross thread boundaries. All writes use parameterised queries.

Schema versioning:
  Uses PRAGMA user_version and the migrations module. On connect(), WAL mode
  and foreign keys are set first, then run_migrations() applies any pending
  schema changes idempotently.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class Database:
    """SQLite persistence layer for shimmerdesk."""

    def __init__(self, db_path: Path) -> None:
        self._path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> None:
        from shimmerdesk.core.store.migrations import run_migrations

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # Set pragmas before any DDL / migration work
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        run_migrations(self._conn, self._path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Terminal sessions
    # ------------------------------------------------------------------

    def save_terminal_session(
        self,
        session_id: str,
        *,
        name: str = "",
        shell: str = "",
        cwd: str = "",
        pid: int | None = None,
        state: str = "created",
        created_at: datetime | None = None,
    ) -> None:
        created = (created_at or datetime.now(UTC)).isoformat()
        self._db.execute(
            """
            INSERT OR IGNORE INTO terminal_sessions
              (id, name, shell, cwd, pid, state, is_active, created_at, last_activity_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (session_id, name, shell, cwd, pid, state, created, created),
        )
        self._db.commit()

    # Columns that callers may update on the terminal_sessions table.  Any key
    # not in this set is rejected to prevent accidental SQL column injection.
    _ALLOWED_SESSION_COLUMNS: frozenset[str] = frozenset(
        {
            "pid",
            "state",
            "is_active",
            "exit_code",
            "exit_signal",
            "last_activity_at",
        }
    )

    def update_terminal_session(self, session_id: str, **kwargs: Any) -> None:
        if not kwargs:
            return
        bad = set(kwargs) - self._ALLOWED_SESSION_COLUMNS
        if bad:
            raise ValueError(
                f"update_terminal_session: disallowed column(s): {sorted(bad)}. "
                f"Allowed: {sorted(self._ALLOWED_SESSION_COLUMNS)}"
            )
        columns = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values()) + [session_id]
        self._db.execute(
            f"UPDATE terminal_sessions SET {columns} WHERE id = ?",  # noqa: S608
            values,
        )
        self._db.commit()

    def get_terminal_session(self, session_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT * FROM terminal_sessions WHERE id = ?", (session_id,)
        ).fetchone()

    def list_terminal_sessions(self, *, active_only: bool = False, limit: int = 100) -> list[sqlite3.Row]:
        where = "WHERE is_active = 1" if active_only else ""
        return self._db.execute(
            f"SELECT * FROM terminal_sessions {where} ORDER BY created_at DESC LIMIT ?",  # noqa: S608
            (limit,),
        ).fetchall()

    def deactivate_stale_sessions(self) -> int:
        """Mark sessions left active by a previous process as inactive."""
        cur = self._db.execute(
            "UPDATE terminal_sessions SET is_active = 0, state = 'exited' WHERE is_active = 1"
        )
        self._db.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Terminal commands
    # ------------------------------------------------------------------

    def save_terminal_command(
        self,
        command_id: str,
        session_id: str,
        command: str,
        output: str,
        exit_code: int | None,
        started_at: datetime,
        duration_ms: int,
    ) -> None:
        self._db.execute(
            """
            INSERT OR REPLACE INTO terminal_commands
              (id, session_id, command, output, exit_code, started_at, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                command_id,
                session_id,
                command,
                output,
                exit_code,
                started_at.isoformat(),
                duration_ms,
            ),
        )
        self._db.commit()

    def list_terminal_commands(self, session_id: str) -> list[sqlite3.Row]:
        return self._db.execute(
            "SELECT * FROM terminal_commands WHERE session_id = ? ORDER BY started_at",
            (session_id,),
        ).fetchall()

    # ------------------------------------------------------------------
    # Server logs
    # ------------------------------------------------------------------

    def append_server_logs(self, rows: Iterable[tuple[str, str, datetime]]) -> None:
        """Insert (stream, text, timestamp) rows in one transaction."""
        self._db.executemany(
            "INSERT INTO server_logs (stream, text, timestamp) VALUES (?, ?, ?)",
            [(stream, text, ts.isoformat()) for stream, text, ts in rows],
        )
        self._db.commit()

    def list_server_logs(self, limit: int = 1000) -> list[sqlite3.Row]:
        """Most recent *limit* lines, oldest first."""
        rows = self._db.execute(
            "SELECT * FROM server_logs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return list(reversed(rows))

    def prune_server_logs(self, keep: int) -> int:
        cur = self._db.execute(
            """
            DELETE FROM server_logs
             WHERE id NOT IN (SELECT id FROM server_logs ORDER BY id DESC LIMIT ?)
            """,
            (keep,),
        )
        self._db.commit()
        return cur.rowcount
