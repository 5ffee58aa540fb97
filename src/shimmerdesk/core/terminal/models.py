"""
Terminal session domain models.

A TerminalSession represents one interactive shell owned by the
TerminalMultiplexer.  Sessions are identified by a UUID that is never
reused; once a session exits or is killed it moves to the history archive.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from shimmerdesk.core.events import Event
from shimmerdesk.core.terminal.history import CommandHistory, TerminalCommand


class SessionState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"  # Process died on its own
    KILLED = "killed"  # Terminated through kill()


@dataclass
class TerminalSession:
    """One shell session and everything recorded about it."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    shell: str = ""
    working_directory: str = ""
    pid: int | None = None
    state: SessionState = SessionState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    exit_code: int | None = None
    exit_signal: str | None = None
    history: CommandHistory = field(default_factory=CommandHistory)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"Terminal {self.id[:8]}"

    def mark_running(self, pid: int | None) -> None:
        self.pid = pid
        self.state = SessionState.RUNNING
        self.touch()

    def mark_killed(self) -> None:
        """Leave the active set now; exit details arrive later via mark_ended()."""
        self.state = SessionState.KILLED
        self.touch()

    def mark_ended(
        self, exit_code: int | None, exit_signal: str | None = None, killed: bool = False
    ) -> None:
        self.exit_code = exit_code
        self.exit_signal = exit_signal
        if killed or self.state == SessionState.KILLED:
            self.state = SessionState.KILLED
        else:
            self.state = SessionState.EXITED
        self.touch()

    def touch(self) -> None:
        self.last_activity_at = datetime.now(UTC)

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.CREATED, SessionState.RUNNING)

    @property
    def commands(self) -> list[TerminalCommand]:
        return self.history.commands

    def export(self) -> str:
        return self.history.export(
            name=self.name,
            created_at=self.created_at,
            working_directory=self.working_directory,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "shell": self.shell,
            "working_directory": self.working_directory,
            "pid": self.pid,
            "state": self.state.value,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
            "commands": [c.to_dict() for c in self.commands],
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TerminalData(Event):
    channel = "terminal.data"

    session_id: str
    data: str


@dataclass(frozen=True)
class TerminalExit(Event):
    channel = "terminal.exit"

    session_id: str
    exit_code: int | None
    signal: str | None


@dataclass(frozen=True)
class TerminalCommandFinished(Event):
    channel = "terminal.commandFinished"

    session_id: str
    command: dict[str, Any]
