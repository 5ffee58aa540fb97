"""Server supervisor status and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from shimmerdesk.core.events import Event


class ServerState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class ServerStatus:
    """Immutable snapshot of the supervisor's view of the server."""

    state: ServerState = ServerState.STOPPED
    pid: int | None = None  # set only while RUNNING
    message: str = ""  # set only in ERROR
    binary_path: str = ""
    binary_exists: bool = False
    started_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self.state == ServerState.RUNNING

    @property
    def uptime_seconds(self) -> float:
        if self.started_at is None or not self.running:
            return 0.0
        return (datetime.now(UTC) - self.started_at).total_seconds()

    @property
    def uptime_display(self) -> str:
        secs = int(self.uptime_seconds)
        if secs < 60:
            return f"{secs}s"
        if secs < 3600:
            return f"{secs // 60}m {secs % 60}s"
        hours = secs // 3600
        mins = (secs % 3600) // 60
        return f"{hours}h {mins}m"

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "state": self.state.value,
            "pid": self.pid,
            "message": self.message,
            "binary_path": self.binary_path,
            "binary_exists": self.binary_exists,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime": self.uptime_seconds,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerStatusChanged(Event):
    channel = "server.statusChanged"

    status: ServerStatus = field(default_factory=ServerStatus)

    def payload(self) -> dict[str, Any]:
        return self.status.to_dict()


@dataclass(frozen=True)
class ServerLogLines(Event):
    channel = "server.logLines"

    lines: tuple[str, ...] = ()
