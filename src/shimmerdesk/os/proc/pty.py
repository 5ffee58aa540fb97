"""
PTY-backed process handle using ptyprocess (POSIX only).

ptyprocess handles fork+exec, PTY allocation, and initial window size.
The master fd is watched with ``loop.add_reader`` so output is delivered on
the event loop thread without a dedicated reader thread.

Exit is detected by polling ``waitpid(WNOHANG)``, not by EOF on the master:
a grandchild may hold the slave side open after the shell itself is gone.
"""

from __future__ import annotations

import asyncio
import os
import signal
from contextlib import suppress
from datetime import UTC, datetime
from typing import Any

import structlog

from shimmerdesk.core.constants import READ_CHUNK_BYTES, TERM_ENV
from shimmerdesk.core.exceptions import SpawnFailedError
from shimmerdesk.core.logbuffer import LogStream
from shimmerdesk.os.proc.base import HandleExitedError, ProcessHandle, SpawnSpec, signal_name

logger = structlog.get_logger()

_REAP_POLL_S = 0.05
# Seconds to keep reading the master after the child has been reaped.
_DRAIN_TIMEOUT_S = 1.0


class PtyProcessHandle(ProcessHandle):
    """
    Interactive child attached to a pseudo-terminal.

    stdout and stderr are merged by the terminal; every chunk is reported
    with ``LogStream.STDOUT``.
    """

    def __init__(self, spec: SpawnSpec, handle_id: str = "") -> None:
        super().__init__(spec, handle_id)
        self._proc: Any = None  # ptyprocess.PtyProcess
        self._fd: int | None = None
        self._reading = False
        self._eof = asyncio.Event()
        self._reaper: asyncio.Task[None] | None = None

    async def start(self) -> None:
        try:
            import ptyprocess
        except ImportError as exc:
            raise SpawnFailedError(
                "ptyprocess is required for PTY sessions. Install with: pip install ptyprocess"
            ) from exc

        env = {**os.environ, **TERM_ENV, **self.spec.env}
        try:
            self._proc = ptyprocess.PtyProcess.spawn(
                self.spec.command,
                cwd=self.spec.cwd or None,
                env=env,
                dimensions=(self.spec.rows, self.spec.cols),
            )
        except (OSError, ptyprocess.PtyProcessError) as exc:
            raise SpawnFailedError(f"Failed to start {self.spec.command[0]!r}: {exc}") from exc

        self.pid = self._proc.pid
        self.started_at = datetime.now(UTC)
        self._fd = self._proc.fd

        loop = asyncio.get_running_loop()
        loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        self._reaper = loop.create_task(self._reap(), name=f"pty_reaper:{self.id}")

    def _on_readable(self) -> None:
        assert self._fd is not None
        try:
            chunk = os.read(self._fd, READ_CHUNK_BYTES)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO on the master once the slave side is closed.
            chunk = b""
        if chunk:
            self._notify_output(chunk, LogStream.STDOUT)
            return
        self._stop_reading()
        self._eof.set()

    def _stop_reading(self) -> None:
        if self._reading and self._fd is not None:
            self._reading = False
            with suppress(ValueError, OSError, RuntimeError):
                asyncio.get_running_loop().remove_reader(self._fd)

    async def _reap(self) -> None:
        assert self.pid is not None
        status: int | None = None
        while True:
            try:
                pid, raw = os.waitpid(self.pid, os.WNOHANG)
            except ChildProcessError:
                break
            if pid != 0:
                status = raw
                break
            await asyncio.sleep(_REAP_POLL_S)

        with suppress(TimeoutError):
            await asyncio.wait_for(self._eof.wait(), timeout=_DRAIN_TIMEOUT_S)
        self._stop_reading()
        with suppress(OSError):
            self._proc.fileobj.close()
        # Already reaped here; keep ptyprocess from waiting on the pid again.
        self._proc.closed = True
        self._proc.terminated = True

        if status is not None and os.WIFSIGNALED(status):
            self._mark_exited(None, signal_name(os.WTERMSIG(status)))
        elif status is not None:
            self._mark_exited(os.WEXITSTATUS(status), None)
        else:
            self._mark_exited(None, None)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _signal(self, signum: int) -> None:
        if self.pid is None or self.exited:
            return
        with suppress(ProcessLookupError):
            os.kill(self.pid, signum)

    def terminate(self) -> None:
        # Interactive shells ignore SIGTERM at the prompt; SIGHUP is what a
        # closing terminal sends.
        self._signal(signal.SIGHUP)
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    def interrupt(self) -> None:
        if self._fd is None or self.exited:
            return
        try:
            os.killpg(os.tcgetpgrp(self._fd), signal.SIGINT)
        except OSError:
            # No foreground group to target; let the line discipline do it.
            self.write(b"\x03")

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, data: str | bytes) -> None:
        self._ensure_writable()
        assert self._fd is not None
        try:
            os.write(self._fd, self._encode(data))
        except OSError as exc:
            raise HandleExitedError(f"PTY of process {self.id} is closed: {exc}") from exc

    def resize(self, cols: int, rows: int) -> None:
        self._ensure_writable()
        super().resize(cols, rows)
        try:
            self._proc.setwinsize(rows, cols)
        except OSError as exc:
            raise HandleExitedError(f"Cannot resize PTY of process {self.id}: {exc}") from exc

    async def aclose(self) -> None:
        """Stop watching the PTY.  Does not signal the process."""
        self._stop_reading()
        if self._reaper is not None and self.exited:
            await asyncio.gather(self._reaper, return_exceptions=True)
