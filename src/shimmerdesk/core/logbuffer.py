"""
Bounded event log — fixed-capacity ring buffer of captured output lines.

Both supervisors route subprocess output through a ``BoundedEventLog`` so
that memory use stays flat no matter how chatty the child is.  Eviction is
enforced on every append by ``collections.deque(maxlen=...)``.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from shimmerdesk.core.constants import LOG_BUFFER_CAPACITY


class LogStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"


@dataclass(frozen=True)
class LogEntry:
    """One captured line.  Never mutated after creation."""

    text: str
    stream: LogStream = LogStream.SYSTEM
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, str]:
        return {
            "text": self.text,
            "stream": self.stream.value,
            "timestamp": self.timestamp.isoformat(),
        }


class BoundedEventLog:
    """Ring buffer of ``LogEntry`` objects, oldest evicted first."""

    def __init__(self, capacity: int = LOG_BUFFER_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, chunk: str, stream: LogStream = LogStream.SYSTEM) -> list[LogEntry]:
        """
        Split *chunk* into lines and append each non-blank line.

        Returns the entries that were added (possibly empty), so callers can
        forward exactly what landed in the buffer.
        """
        added: list[LogEntry] = []
        for line in chunk.splitlines():
            if not line.strip():
                continue
            entry = LogEntry(text=line, stream=stream)
            self._entries.append(entry)
            added.append(entry)
        return added

    def snapshot(self) -> tuple[LogEntry, ...]:
        """Current contents, oldest → newest."""
        return tuple(self._entries)

    def lines(self) -> list[str]:
        return [e.text for e in self._entries]

    def clear(self) -> None:
        self._entries.clear()
