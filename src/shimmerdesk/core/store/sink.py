"""
History sinks: where supervisors send records worth keeping.

The supervisors only know the ``HistorySink`` protocol.  ``NullSink`` is the
default; ``DatabaseSink`` writes through to the SQLite ``Database``.  A sink
must never raise into a supervisor: storage failures are logged and dropped.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

import structlog

from shimmerdesk.core.logbuffer import LogEntry

if TYPE_CHECKING:
    from shimmerdesk.core.store.database import Database
    from shimmerdesk.core.terminal.history import TerminalCommand
    from shimmerdesk.core.terminal.models import TerminalSession

logger = structlog.get_logger()


class HistorySink(Protocol):
    def session_started(self, session: TerminalSession) -> None: ...

    def session_ended(self, session: TerminalSession) -> None: ...

    def command_finished(self, session_id: str, command: TerminalCommand) -> None: ...

    def server_log(self, entries: Sequence[LogEntry]) -> None: ...


class NullSink:
    """Discards everything."""

    def session_started(self, session: TerminalSession) -> None:
        pass

    def session_ended(self, session: TerminalSession) -> None:
        pass

    def command_finished(self, session_id: str, command: TerminalCommand) -> None:
        pass

    def server_log(self, entries: Sequence[LogEntry]) -> None:
        pass


class DatabaseSink:
    """Writes history records to a connected ``Database``."""

    def __init__(self, db: Database, server_log_keep: int = 10_000) -> None:
        self._db = db
        self._server_log_keep = server_log_keep
        self._log_writes = 0

    def session_started(self, session: TerminalSession) -> None:
        try:
            self._db.save_terminal_session(
                session.id,
                name=session.name,
                shell=session.shell,
                cwd=session.working_directory,
                pid=session.pid,
                state=session.state.value,
                created_at=session.created_at,
            )
        except sqlite3.Error as exc:
            logger.warning("history_write_failed", record="session", session_id=session.id, error=str(exc))

    def session_ended(self, session: TerminalSession) -> None:
        try:
            self._db.update_terminal_session(
                session.id,
                state=session.state.value,
                is_active=0,
                exit_code=session.exit_code,
                exit_signal=session.exit_signal,
                last_activity_at=session.last_activity_at.isoformat(),
            )
        except sqlite3.Error as exc:
            logger.warning("history_write_failed", record="session", session_id=session.id, error=str(exc))

    def command_finished(self, session_id: str, command: TerminalCommand) -> None:
        try:
            self._db.save_terminal_command(
                command.id,
                session_id,
                command.command,
                command.output,
                command.exit_code,
                command.started_at,
                command.duration_ms,
            )
        except sqlite3.Error as exc:
            logger.warning("history_write_failed", record="command", session_id=session_id, error=str(exc))

    def server_log(self, entries: Sequence[LogEntry]) -> None:
        if not entries:
            return
        try:
            self._db.append_server_logs((e.stream.value, e.text, e.timestamp) for e in entries)
            self._log_writes += 1
            # Trim occasionally rather than on every chunk.
            if self._log_writes % 100 == 0:
                self._db.prune_server_logs(self._server_log_keep)
        except sqlite3.Error as exc:
            logger.warning("history_write_failed", record="server_log", error=str(exc))
