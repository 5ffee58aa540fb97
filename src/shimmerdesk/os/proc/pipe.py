"""
Pipe-backed process handle using asyncio subprocesses.

Used for the inference server (stdout and stderr must stay distinguishable)
and as the shell backend on platforms without ptyprocess.

Three tasks per handle:
  stdout_pump — read stdout, notify callbacks tagged STDOUT
  stderr_pump — read stderr, notify callbacks tagged STDERR
  reaper      — await process exit, drain the pumps, mark exited
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from contextlib import suppress
from datetime import UTC, datetime

import structlog

from shimmerdesk.core.constants import READ_CHUNK_BYTES
from shimmerdesk.core.exceptions import SpawnFailedError
from shimmerdesk.core.logbuffer import LogStream
from shimmerdesk.os.proc.base import HandleExitedError, ProcessHandle, SpawnSpec, signal_name

logger = structlog.get_logger()

# Seconds to let the pumps drain buffered output after the child has exited.
# A grandchild that inherited the pipes can keep them open indefinitely.
_DRAIN_TIMEOUT_S = 1.0


class PipeProcessHandle(ProcessHandle):
    """Child process with stdin/stdout/stderr connected to asyncio pipes."""

    def __init__(self, spec: SpawnSpec, handle_id: str = "") -> None:
        super().__init__(spec, handle_id)
        self._proc: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        env = {**os.environ, **self.spec.env}
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.spec.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.spec.cwd or None,
                start_new_session=sys.platform != "win32",
            )
        except (OSError, ValueError) as exc:
            raise SpawnFailedError(
                f"Failed to start {self.spec.command[0]!r}: {exc}"
            ) from exc

        self.pid = self._proc.pid
        self.started_at = datetime.now(UTC)

        assert self._proc.stdout is not None
        assert self._proc.stderr is not None
        pumps = [
            asyncio.create_task(
                self._pump(self._proc.stdout, LogStream.STDOUT), name=f"stdout_pump:{self.id}"
            ),
            asyncio.create_task(
                self._pump(self._proc.stderr, LogStream.STDERR), name=f"stderr_pump:{self.id}"
            ),
        ]
        self._tasks = [*pumps, asyncio.create_task(self._reap(pumps), name=f"reaper:{self.id}")]

    async def _pump(self, reader: asyncio.StreamReader, stream: LogStream) -> None:
        while True:
            chunk = await reader.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            self._notify_output(chunk, stream)

    async def _reap(self, pumps: list[asyncio.Task[None]]) -> None:
        assert self._proc is not None
        returncode = await self._proc.wait()
        _, pending = await asyncio.wait(pumps, timeout=_DRAIN_TIMEOUT_S)
        for task in pending:
            task.cancel()

        if returncode < 0:
            self._mark_exited(None, signal_name(-returncode))
        else:
            self._mark_exited(returncode, None)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def terminate(self) -> None:
        if self._proc is None or self.exited:
            return
        with suppress(ProcessLookupError):
            self._proc.terminate()

    def kill(self) -> None:
        if self._proc is None or self.exited:
            return
        with suppress(ProcessLookupError):
            self._proc.kill()

    def interrupt(self) -> None:
        if self._proc is None or self.exited:
            return
        if sys.platform == "win32":
            with suppress(ProcessLookupError):
                self._proc.send_signal(signal.CTRL_C_EVENT)  # type: ignore[attr-defined]
            return
        # The child leads its own session, so its pid is also its group id.
        try:
            os.killpg(self._proc.pid, signal.SIGINT)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.send_signal(signal.SIGINT)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, data: str | bytes) -> None:
        self._ensure_writable()
        assert self._proc is not None
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise HandleExitedError(f"stdin of process {self.id} is closed")
        try:
            stdin.write(self._encode(data))
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise HandleExitedError(f"Process {self.id} closed its input: {exc}") from exc

    async def aclose(self) -> None:
        """Cancel the I/O tasks.  Does not signal the process."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
