"""
TerminalMultiplexer: zero or more concurrent interactive shell sessions.

Each live session owns one process handle.  Output wiring is registered on
the handle before it starts, so the first bytes a shell prints are never
lost.  When a session's process exits (by itself or through ``kill()``) the
session leaves the live map and moves to the history archive; ids are never
reused and sessions are never respawned.

Command completion:

  idle      — a command is finished once its session has been silent for
              ``command_idle_s`` (or its process exits).  Exit code unknown.
  sentinel  — POSIX shells only.  The command is followed by a ``printf`` of
              a per-command marker carrying ``$?``; seeing the marker in the
              output finishes the command with that exit code.
"""

from __future__ import annotations

import asyncio
import codecs
import re
import sys
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

from shimmerdesk.core.config import TerminalConfig
from shimmerdesk.core.constants import CLEAR_SCREEN, INTERRUPT_EXIT_CODE, TERM_ENV, default_shell
from shimmerdesk.core.events import EventBus
from shimmerdesk.core.exceptions import SessionNotFoundError, SpawnFailedError
from shimmerdesk.core.logbuffer import LogStream
from shimmerdesk.core.store.sink import HistorySink, NullSink
from shimmerdesk.core.terminal.history import CommandHistory, TerminalCommand
from shimmerdesk.core.terminal.models import (
    TerminalCommandFinished,
    TerminalData,
    TerminalExit,
    TerminalSession,
)
from shimmerdesk.os.proc import get_shell_handle_class
from shimmerdesk.os.proc.base import HandleExitedError, ProcessHandle, SpawnSpec

logger = structlog.get_logger()

HandleFactory = Callable[[SpawnSpec], ProcessHandle]

_SENTINEL_PREFIX = "__SHIMMER_DONE_"
# Characters searched for the completion marker behind each new chunk.
_SENTINEL_LOOKBEHIND = 128
# A PTY wrapping a long echoed line may insert " \r" or "\r\n" between any two characters.
_WRAP = r"(?: ?\r\n?)?"


@dataclass
class _LiveSession:
    session: TerminalSession
    handle: ProcessHandle
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    idle_timer: asyncio.TimerHandle | None = None
    sentinel: re.Pattern[str] | None = None
    echo: re.Pattern[str] | None = None
    pending: asyncio.Future[TerminalCommand] | None = None
    killing: bool = False
    kill_task: asyncio.Task[None] | None = None
    log: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.log = logger.bind(session_id=self.session.id)


class TerminalMultiplexer:
    """Owns the session-id → shell process map."""

    def __init__(
        self,
        config: TerminalConfig | None = None,
        *,
        sink: HistorySink | None = None,
        handle_factory: HandleFactory | None = None,
    ) -> None:
        self._config = config or TerminalConfig()
        self._sink: HistorySink = sink or NullSink()
        self._handle_factory: HandleFactory = handle_factory or get_shell_handle_class()
        self.events = EventBus("terminal")
        self._sessions: dict[str, _LiveSession] = {}
        self._archive: OrderedDict[str, TerminalSession] = OrderedDict()

    @property
    def completion(self) -> str:
        if self._config.completion == "sentinel" and sys.platform != "win32":
            return "sentinel"
        return "idle"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        shell: str | None = None,
        working_directory: str | None = None,
        cols: int | None = None,
        rows: int | None = None,
        env: dict[str, str] | None = None,
    ) -> TerminalSession:
        """
        Spawn a shell and register it as a live session.

        Raises ``SpawnFailedError`` if the shell cannot be started; no session
        is recorded in that case.
        """
        shell = shell or self._config.shell or default_shell()
        cwd = working_directory or str(Path.home())
        cols = cols or self._config.cols
        rows = rows or self._config.rows
        if cols < 1 or rows < 1:
            raise ValueError("cols and rows must be positive")
        if not Path(cwd).is_dir():
            raise SpawnFailedError(f"Working directory does not exist: {cwd}")

        session = TerminalSession(
            shell=shell,
            working_directory=cwd,
            history=CommandHistory(
                self._config.history_limit,
                output_lines=self._config.output_line_limit,
                output_chars=self._config.output_char_limit,
            ),
        )
        spec = SpawnSpec(
            command=[shell],
            env={**TERM_ENV, **(env or {})},
            cwd=cwd,
            cols=cols,
            rows=rows,
        )
        handle = self._handle_factory(spec)
        live = _LiveSession(session=session, handle=handle)
        handle.on_output(lambda chunk, stream: self._on_output(live, chunk, stream))
        handle.on_exit(lambda _h: self._on_exit(live))

        await handle.start()

        session.mark_running(handle.pid)
        self._sessions[session.id] = live
        self._sink.session_started(session)
        live.log.info("terminal_created", shell=shell, cwd=cwd, pid=handle.pid)
        return session

    async def kill(self, session_id: str) -> TerminalSession:
        """
        Terminate a session's process and archive the session.

        The session stops accepting input as soon as this is called, before
        the process is gone.  Killing an archived session is a no-op that
        returns it; ids evicted from the archive raise ``SessionNotFoundError``.
        """
        live = self._sessions.get(session_id)
        if live is None:
            if session_id in self._archive:
                return self._archive[session_id]
            raise SessionNotFoundError(f"Terminal session not found: {session_id}")
        if live.kill_task is None:
            live.killing = True
            live.session.mark_killed()
            live.kill_task = asyncio.create_task(self._kill(live), name=f"terminal_kill:{session_id}")
        await asyncio.shield(live.kill_task)
        return live.session

    async def _kill(self, live: _LiveSession) -> None:
        handle = live.handle
        handle.terminate()
        if not await handle.wait(self._config.kill_grace_s):
            live.log.warning("terminal_force_kill", pid=handle.pid)
            handle.kill()
            await handle.wait()
        await handle.aclose()

    async def shutdown(self) -> None:
        """Kill every live session."""
        ids = list(self._sessions)
        if ids:
            await asyncio.gather(*(self.kill(sid) for sid in ids), return_exceptions=True)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: str | bytes) -> None:
        live = self._live(session_id)
        try:
            live.handle.write(data)
        except HandleExitedError as exc:
            raise SessionNotFoundError(f"Terminal session has exited: {session_id}") from exc
        live.session.touch()

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        if cols < 1 or rows < 1:
            raise ValueError("cols and rows must be positive")
        live = self._live(session_id)
        try:
            live.handle.resize(cols, rows)
        except HandleExitedError as exc:
            raise SessionNotFoundError(f"Terminal session has exited: {session_id}") from exc

    def clear(self, session_id: str) -> None:
        """Tell viewers to clear the screen.  The shell itself is not touched."""
        live = self._live(session_id)
        self.events.publish(TerminalData(session_id=session_id, data=CLEAR_SCREEN))
        live.session.touch()

    async def execute_command(
        self, session_id: str, command: str, *, wait: bool = False, timeout: float | None = None
    ) -> TerminalCommand:
        """
        Run *command* in the session's shell and record it.

        Returns the command record immediately (still running) unless *wait*
        is set, in which case it returns once the command has finished or
        raises ``TimeoutError`` after *timeout* seconds.
        """
        live = self._live(session_id)
        history = live.session.history
        if history.running is not None:
            self._finish_command(live, None)

        cmd = history.start_command(command)
        loop = asyncio.get_running_loop()
        live.pending = loop.create_future()
        pending = live.pending

        line = command
        if self.completion == "sentinel":
            token = cmd.id.replace("-", "")
            live.sentinel = re.compile(rf"\r?\n?{_SENTINEL_PREFIX}{token}_(\d+)__\r?\n?")
            line = command + f"; printf '\\n{_SENTINEL_PREFIX}{token}_%s__\\n' $?"
            live.echo = re.compile(_WRAP.join(re.escape(c) for c in line) + r"\r?\n?")

        try:
            self.write(session_id, line + "\n")
        except SessionNotFoundError:
            self._finish_command(live, None)
            raise

        if self.completion == "idle":
            self._arm_idle(live)
        live.log.debug("terminal_command_started", command_id=cmd.id)

        if wait:
            await asyncio.wait_for(asyncio.shield(pending), timeout=timeout)
        return cmd

    def interrupt(self, session_id: str) -> TerminalCommand | None:
        """Send Ctrl-C; the running command (if any) finishes with code 130."""
        live = self._live(session_id)
        live.handle.interrupt()
        cmd = live.session.history.running
        if cmd is not None:
            cmd.append_output("^C")
            self._finish_command(live, INTERRUPT_EXIT_CODE)
        return cmd

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> TerminalSession:
        return self._live(session_id).session

    def list_sessions(self) -> list[TerminalSession]:
        return [live.session for live in self._sessions.values() if live.session.is_active]

    def get_history(self, session_id: str) -> TerminalSession:
        """Live or archived session by id."""
        if session_id in self._sessions:
            return self._sessions[session_id].session
        if session_id in self._archive:
            return self._archive[session_id]
        raise SessionNotFoundError(f"Terminal session not found: {session_id}")

    def list_history(self) -> list[TerminalSession]:
        return list(self._archive.values())

    def export_session(self, session_id: str) -> str:
        return self.get_history(session_id).export()

    def navigate_history(self, session_id: str, direction: Literal["up", "down"]) -> str:
        return self._live(session_id).session.history.navigate(direction)

    # ------------------------------------------------------------------
    # Handle callbacks
    # ------------------------------------------------------------------

    def _on_output(self, live: _LiveSession, chunk: bytes, stream: LogStream) -> None:
        text = live.decoder.decode(chunk)
        if not text:
            return
        session = live.session
        session.touch()
        self.events.publish(TerminalData(session_id=session.id, data=text))

        cmd = session.history.running
        if cmd is None:
            return
        cmd.append_output(text)
        if live.sentinel is not None:
            match = live.sentinel.search(cmd.output[-(len(text) + _SENTINEL_LOOKBEHIND) :])
            if match:
                self._finish_command(live, int(match.group(1)))
        else:
            self._arm_idle(live)

    def _on_exit(self, live: _LiveSession) -> None:
        session = live.session
        handle = live.handle
        tail = live.decoder.decode(b"", final=True)
        if tail:
            self.events.publish(TerminalData(session_id=session.id, data=tail))
            if (cmd := session.history.running) is not None:
                cmd.append_output(tail)

        self._finish_command(live, handle.exit_code)
        session.mark_ended(handle.exit_code, handle.exit_signal, killed=live.killing)
        self._sessions.pop(session.id, None)
        self._archive[session.id] = session
        while len(self._archive) > self._config.archive_limit:
            self._archive.popitem(last=False)
        self._sink.session_ended(session)

        self.events.publish(
            TerminalExit(
                session_id=session.id, exit_code=handle.exit_code, signal=handle.exit_signal
            )
        )
        live.log.info(
            "terminal_exited",
            exit_code=handle.exit_code,
            exit_signal=handle.exit_signal,
            killed=live.killing,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _arm_idle(self, live: _LiveSession) -> None:
        if live.idle_timer is not None:
            live.idle_timer.cancel()
        loop = asyncio.get_running_loop()
        live.idle_timer = loop.call_later(
            self._config.command_idle_s, self._finish_command, live, None
        )

    def _finish_command(self, live: _LiveSession, exit_code: int | None) -> None:
        if live.idle_timer is not None:
            live.idle_timer.cancel()
            live.idle_timer = None
        cmd = live.session.history.running
        if cmd is None:
            return

        if live.sentinel is not None:
            self._strip_markers(live, cmd)

        cmd.finish(exit_code)
        session_id = live.session.id
        self.events.publish(TerminalCommandFinished(session_id=session_id, command=cmd.to_dict()))
        self._sink.command_finished(session_id, cmd)
        if live.pending is not None and not live.pending.done():
            live.pending.set_result(cmd)
        live.pending = None
        live.log.debug(
            "terminal_command_finished",
            command_id=cmd.id,
            exit_code=exit_code,
            duration_ms=cmd.duration_ms,
        )

    @staticmethod
    def _strip_markers(live: _LiveSession, cmd: TerminalCommand) -> None:
        """Drop the echoed command line and everything from the marker on."""
        assert live.sentinel is not None
        output = cmd.output
        if live.echo is not None and (echo := live.echo.search(output)):
            output = output[echo.end() :]
        if marker := live.sentinel.search(output):
            output = output[: marker.start()]
        cmd.set_output(output)
        live.sentinel = None
        live.echo = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _live(self, session_id: str) -> _LiveSession:
        live = self._sessions.get(session_id)
        if live is None or not live.session.is_active:
            raise SessionNotFoundError(f"Terminal session not found: {session_id}")
        return live
