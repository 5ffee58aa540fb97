"""
Abstract process handle.

Concrete implementations:
  PipeProcessHandle — asyncio subprocess with separate stdout/stderr pipes
  PtyProcessHandle  — ptyprocess (POSIX) with a single merged PTY stream

A handle wraps exactly one OS child process.  Owners register output and
exit callbacks *before* calling ``start()``; the handle begins reading only
once ``start()`` returns control to the loop, so no output is lost.

Exit contract:
  ``_mark_exited()`` is the single terminal transition.  It runs once,
  sets ``exited``/``exit_code``/``exit_signal``, wakes ``wait()``ers, then
  calls every exit callback.  Later calls are ignored.
"""

from __future__ import annotations

import asyncio
import signal
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from shimmerdesk.core.constants import DEFAULT_COLS, DEFAULT_ROWS
from shimmerdesk.core.exceptions import ErrorKind, ShimmerError
from shimmerdesk.core.logbuffer import LogStream

logger = structlog.get_logger()

OutputCallback = Callable[[bytes, LogStream], None]
ExitCallback = Callable[["ProcessHandle"], None]


class HandleExitedError(ShimmerError):
    """Raised on I/O against a handle whose process has already exited."""

    kind = ErrorKind.NOT_RUNNING


@dataclass
class SpawnSpec:
    """What to run and where."""

    command: list[str]
    env: dict[str, str] = field(default_factory=dict)  # merged over os.environ
    cwd: str = ""
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class ProcessHandle(ABC):
    """Lifecycle and I/O of one child process."""

    def __init__(self, spec: SpawnSpec, handle_id: str = "") -> None:
        if not spec.command:
            raise ValueError("command must not be empty")
        self.spec = spec
        self.id = handle_id or str(uuid.uuid4())
        self.pid: int | None = None
        self.started_at: datetime | None = None
        self.exited = False
        self.exit_code: int | None = None
        self.exit_signal: str | None = None
        self._output_callbacks: list[OutputCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._exit_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def on_output(self, cb: OutputCallback) -> None:
        """Register a callback for each output chunk (raw bytes + stream)."""
        self._output_callbacks.append(cb)

    def on_exit(self, cb: ExitCallback) -> None:
        """Register a callback invoked once, after the process has exited."""
        self._exit_callbacks.append(cb)

    def _notify_output(self, chunk: bytes, stream: LogStream) -> None:
        for cb in self._output_callbacks:
            try:
                cb(chunk, stream)
            except Exception:  # noqa: BLE001
                logger.exception("output_callback_failed", handle_id=self.id)

    def _mark_exited(self, exit_code: int | None, exit_signal: str | None) -> None:
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self.exit_signal = exit_signal
        self._exit_event.set()
        logger.debug(
            "process_exited",
            handle_id=self.id,
            pid=self.pid,
            exit_code=exit_code,
            exit_signal=exit_signal,
        )
        for cb in self._exit_callbacks:
            try:
                cb(self)
            except Exception:  # noqa: BLE001
                logger.exception("exit_callback_failed", handle_id=self.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def start(self) -> None:
        """Spawn the child.  Raises ``SpawnFailedError`` on OS refusal."""

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for exit; return True if the process exited within *timeout*."""
        if self.exited:
            return True
        try:
            await asyncio.wait_for(self._exit_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    @property
    def is_alive(self) -> bool:
        return self.pid is not None and not self.exited

    @abstractmethod
    def terminate(self) -> None:
        """Ask the process to exit (SIGTERM on POSIX)."""

    @abstractmethod
    def kill(self) -> None:
        """Unconditionally stop the process (SIGKILL on POSIX)."""

    @abstractmethod
    def interrupt(self) -> None:
        """Deliver Ctrl-C to the process group currently in the foreground."""

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    @abstractmethod
    def write(self, data: str | bytes) -> None:
        """Write to the child's input.  Raises ``HandleExitedError`` after exit."""

    def resize(self, cols: int, rows: int) -> None:
        """Change terminal geometry.  Pipe-backed handles have none; no-op."""
        self.spec.cols = cols
        self.spec.rows = rows

    async def aclose(self) -> None:
        """Release I/O resources.  Does not signal the process."""

    def _ensure_writable(self) -> None:
        if self.exited or self.pid is None:
            raise HandleExitedError(f"Process {self.id} is not running")

    @staticmethod
    def _encode(data: str | bytes) -> bytes:
        return data.encode("utf-8") if isinstance(data, str) else data
