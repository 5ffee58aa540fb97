"""
Per-session command history.

Two views of what the user has typed into a terminal session:

  commands — ordered ``TerminalCommand`` records with captured output,
             exit code and duration (one per ``execute_command`` call)
  recall   — the lines available to up/down navigation, with blank lines
             and consecutive duplicates skipped, bounded by ``limit``
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from shimmerdesk.core.constants import HISTORY_LIMIT, OUTPUT_CHAR_LIMIT, OUTPUT_LINE_LIMIT


@dataclass
class TerminalCommand:
    """
    One executed command.  Mutated in place until ``finish()``.

    ``output`` keeps only the most recent ``max_output_lines`` lines (and at
    most ``max_output_chars`` characters); ``truncated`` is set once anything
    has been dropped from the front.
    """

    command: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    output: str = ""
    exit_code: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int = 0
    is_running: bool = True
    truncated: bool = False
    max_output_lines: int = field(default=OUTPUT_LINE_LIMIT, repr=False)
    max_output_chars: int = field(default=OUTPUT_CHAR_LIMIT, repr=False)
    _newlines: int = field(default=0, init=False, repr=False, compare=False)

    def append_output(self, text: str) -> None:
        if not self.is_running or not text:
            return
        self.output += text
        self._newlines += text.count("\n")

        excess = self._newlines - self.max_output_lines
        if excess > 0:
            cut = -1
            for _ in range(excess):
                cut = self.output.index("\n", cut + 1)
            self.output = self.output[cut + 1 :]
            self._newlines = self.max_output_lines
            self.truncated = True
        if len(self.output) > self.max_output_chars:
            self.output = self.output[-self.max_output_chars :]
            self._newlines = self.output.count("\n")
            self.truncated = True

    def set_output(self, text: str) -> None:
        """Replace the captured output (used when stripping completion markers)."""
        self.output = text
        self._newlines = text.count("\n")

    def finish(self, exit_code: int | None) -> bool:
        """Mark complete.  Returns False if the command had already finished."""
        if not self.is_running:
            return False
        self.is_running = False
        self.exit_code = exit_code
        elapsed = datetime.now(UTC) - self.started_at
        self.duration_ms = int(elapsed.total_seconds() * 1000)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "output": self.output,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "is_running": self.is_running,
            "truncated": self.truncated,
        }


class CommandHistory:
    """Executed commands plus the navigable recall list."""

    def __init__(
        self,
        limit: int = HISTORY_LIMIT,
        *,
        output_lines: int = OUTPUT_LINE_LIMIT,
        output_chars: int = OUTPUT_CHAR_LIMIT,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._output_lines = output_lines
        self._output_chars = output_chars
        self.commands: list[TerminalCommand] = []
        self._recall: deque[str] = deque(maxlen=limit)
        self._index = -1  # -1 = not navigating

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_command(self, command: str) -> TerminalCommand:
        cmd = TerminalCommand(
            command=command,
            max_output_lines=self._output_lines,
            max_output_chars=self._output_chars,
        )
        self.commands.append(cmd)
        self.add_line(command)
        return cmd

    @property
    def running(self) -> TerminalCommand | None:
        """The most recent command if it is still running."""
        if self.commands and self.commands[-1].is_running:
            return self.commands[-1]
        return None

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    def add_line(self, line: str) -> None:
        line = line.strip()
        if not line or (self._recall and self._recall[-1] == line):
            return
        self._recall.append(line)
        self._index = -1

    @property
    def lines(self) -> list[str]:
        return list(self._recall)

    def navigate(self, direction: Literal["up", "down"]) -> str:
        """
        Move the recall cursor and return the line under it.

        "up" walks towards older lines and stops at the oldest.  "down" walks
        back towards the newest; stepping past the newest line leaves
        navigation and returns "".
        """
        if not self._recall:
            return ""
        last = len(self._recall) - 1
        if direction == "up":
            self._index = last if self._index == -1 else max(0, self._index - 1)
        elif direction == "down":
            if self._index in (-1, last):
                self._index = -1
            else:
                self._index += 1
        else:
            raise ValueError(f"direction must be 'up' or 'down', not {direction!r}")
        return "" if self._index == -1 else self._recall[self._index]

    def clear(self) -> None:
        """Forget recalled lines.  Executed command records are kept."""
        self._recall.clear()
        self._index = -1

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, *, name: str, created_at: datetime, working_directory: str) -> str:
        lines = [
            f"# Terminal Session: {name}",
            f"# Created: {created_at.isoformat()}",
            f"# Working Directory: {working_directory}",
            "",
        ]
        for cmd in self.commands:
            stamp = cmd.started_at.astimezone().strftime("%H:%M:%S")
            duration = f" ({cmd.duration_ms}ms)" if cmd.duration_ms > 0 else ""
            block = [f"# [{stamp}] $ {cmd.command}{duration}"]
            if cmd.output:
                block.append(cmd.output)
            if cmd.exit_code not in (None, 0):
                block.append(f"# Exit code: {cmd.exit_code}")
            lines.append("\n".join(block))
        return "\n".join(lines)
