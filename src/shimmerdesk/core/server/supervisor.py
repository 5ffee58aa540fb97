"""
ServerSupervisor: lifecycle of the single inference server subprocess.

State machine:

    STOPPED ──start()──▶ STARTING ──alive after liveness window──▶ RUNNING
       ▲                    │                                        │
       │                    └──exited during window──▶ ERROR         │
       │                                                             │
       ├──────────── exit confirmed ◀── STOPPING ◀──stop()───────────┤
       │                                                             │
       └── exit code 0 ◀──────── unexpected exit ──────▶ ERROR ◀─────┘

Exactly one path owns each transition out of a live state: ``start()`` owns
STARTING, the stop task owns STOPPING, and the exit callback only handles
exits that happen while RUNNING.  All transitions run on the event loop
thread with no await between the state check and the write.

Output from the child is split into lines, tagged ``[STDOUT]``/``[STDERR]``,
appended to the bounded log, published as ``server.logLines`` and forwarded
to the history sink.
"""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import Callable
from datetime import datetime

import httpx
import structlog

from shimmerdesk.core.config import ServerConfig, SupervisorConfig
from shimmerdesk.core.constants import HEALTH_CHECK_TIMEOUT_SECONDS, HEALTH_PATH
from shimmerdesk.core.events import EventBus
from shimmerdesk.core.exceptions import (
    AlreadyRunningError,
    BinaryNotFoundError,
    NotRunningError,
    ProcessCrashedError,
    SpawnFailedError,
    TransientError,
)
from shimmerdesk.core.logbuffer import BoundedEventLog, LogEntry, LogStream
from shimmerdesk.core.server.binary import BinaryResolver, build_server_args, build_server_env
from shimmerdesk.core.server.models import (
    ServerLogLines,
    ServerState,
    ServerStatus,
    ServerStatusChanged,
)
from shimmerdesk.core.store.sink import HistorySink, NullSink
from shimmerdesk.os.proc.base import ProcessHandle, SpawnSpec
from shimmerdesk.os.proc.pipe import PipeProcessHandle

logger = structlog.get_logger()

HandleFactory = Callable[[SpawnSpec], ProcessHandle]


class _LineAssembler:
    """Turns a byte stream into complete text lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> list[str]:
        text = self._partial + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return [rest] if rest else []


class ServerSupervisor:
    """Owns at most one server process handle."""

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        *,
        resolver: BinaryResolver | None = None,
        sink: HistorySink | None = None,
        handle_factory: HandleFactory = PipeProcessHandle,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._resolver = resolver or BinaryResolver(
            self._config.resources_dir or None, self._config.binary_path
        )
        self._sink: HistorySink = sink or NullSink()
        self._handle_factory = handle_factory
        self._log = BoundedEventLog(self._config.log_capacity)
        self.events = EventBus("server")

        self._lock = asyncio.Lock()
        self._handle: ProcessHandle | None = None
        self._state = ServerState.STOPPED
        self._message = ""
        self._started_at: datetime | None = None
        self._server_config: ServerConfig | None = None
        self._starting = False
        self._stop_task: asyncio.Task[None] | None = None
        self._stop_signalled = asyncio.Event()
        self._assemblers: dict[LogStream, _LineAssembler] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    def status(self) -> ServerStatus:
        binary = self._resolver.resolve()
        return ServerStatus(
            state=self._state,
            pid=self._handle.pid if self._handle and self._state == ServerState.RUNNING else None,
            message=self._message if self._state == ServerState.ERROR else "",
            binary_path=str(binary),
            binary_exists=binary.is_file(),
            started_at=self._started_at,
        )

    def logs(self) -> list[str]:
        return self._log.lines()

    def log_entries(self) -> tuple[LogEntry, ...]:
        return self._log.snapshot()

    def clear_logs(self) -> None:
        self._log.clear()

    async def check_health(self, timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS) -> bool:
        """GET ``/health`` on the running server.  Never raises."""
        if self._state != ServerState.RUNNING or self._server_config is None:
            return False
        url = self._server_config.base_url + HEALTH_PATH
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("server_health_check_failed", url=url, error=str(exc))
            return False
        return resp.is_success

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, config: ServerConfig | None = None) -> ServerStatus:
        """
        Spawn the server and wait out the liveness window.

        Raises:
            AlreadyRunningError: a server is starting or running.
            TransientError: a stop is still in progress.
            BinaryNotFoundError: the executable is missing; state stays put.
            SpawnFailedError: the OS refused to start the binary.
            ProcessCrashedError: the server exited inside the liveness window.
        """
        config = config or ServerConfig()
        if self._state == ServerState.STOPPING:
            raise TransientError("Server is stopping; try again shortly")
        if self._starting or self._handle is not None:
            raise AlreadyRunningError("Server is already running")

        binary = self._resolver.resolve()
        if not binary.is_file():
            raise BinaryNotFoundError(f"Shimmy binary not found at: {binary}")

        self._starting = True
        try:
            async with self._lock:
                return await self._start_locked(str(binary), config)
        finally:
            self._starting = False

    async def _start_locked(self, binary: str, config: ServerConfig) -> ServerStatus:
        spec = SpawnSpec(
            command=[binary, *build_server_args(config)],
            env=build_server_env(config),
        )
        handle = self._handle_factory(spec)
        self._assemblers = {LogStream.STDOUT: _LineAssembler(), LogStream.STDERR: _LineAssembler()}
        handle.on_output(self._on_output)
        handle.on_exit(self._on_exit)

        self._set_state(ServerState.STARTING)
        logger.info("server_starting", binary=binary, host=config.host, port=config.port)
        try:
            await handle.start()
        except SpawnFailedError as exc:
            self._record_lines([f"[SYSTEM] {exc}"], LogStream.SYSTEM)
            self._set_state(ServerState.ERROR, message=str(exc))
            logger.error("server_spawn_failed", binary=binary, error=str(exc))
            raise

        self._handle = handle
        self._server_config = config
        log = logger.bind(pid=handle.pid)

        if await handle.wait(self._config.liveness_window_s):
            self._handle = None
            message = (
                f"Server failed to start (exit code {handle.exit_code}, "
                f"signal {handle.exit_signal})"
            )
            self._set_state(ServerState.ERROR, message=message)
            log.error(
                "server_start_crashed",
                exit_code=handle.exit_code,
                exit_signal=handle.exit_signal,
            )
            raise ProcessCrashedError(message, handle.exit_code, handle.exit_signal)

        self._started_at = handle.started_at
        self._set_state(ServerState.RUNNING)
        log.info("server_running", host=config.host, port=config.port)
        return self.status()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, wait: bool = True) -> ServerStatus:
        """
        Terminate the server, escalating to a kill after the grace period.

        Concurrent callers share one escalation.  With ``wait=False`` this
        returns as soon as the terminate signal has been sent; completion is
        reported through ``server.statusChanged``.
        """
        if self._handle is None and not self._starting:
            raise NotRunningError("Server is not running")

        if self._stop_task is None:
            signalled = asyncio.Event()
            self._stop_task = asyncio.create_task(self._stop(signalled), name="server_stop")
            self._stop_signalled = signalled
        task = self._stop_task

        if wait:
            await asyncio.shield(task)
        else:
            await self._stop_signalled.wait()
        return self.status()

    async def _stop(self, signalled: asyncio.Event) -> None:
        try:
            async with self._lock:
                handle = self._handle
                if handle is None:
                    # The start we queued behind failed, or the server died meanwhile.
                    return
                log = logger.bind(pid=handle.pid)
                self._set_state(ServerState.STOPPING)
                log.info("server_stopping")
                handle.terminate()
                signalled.set()

                if not await handle.wait(self._config.graceful_stop_s):
                    log.warning("server_force_kill", grace_s=self._config.graceful_stop_s)
                    handle.kill()
                    await handle.wait()

                self._handle = None
                self._started_at = None
                self._set_state(ServerState.STOPPED)
                log.info("server_stopped", exit_code=handle.exit_code, exit_signal=handle.exit_signal)
        finally:
            signalled.set()
            self._stop_task = None

    async def shutdown(self) -> None:
        """Stop the server if one is active.  Safe to call at any time."""
        if self._handle is None and not self._starting:
            return
        try:
            await self.stop(wait=True)
        except NotRunningError:
            pass

    # ------------------------------------------------------------------
    # Handle callbacks
    # ------------------------------------------------------------------

    def _on_output(self, chunk: bytes, stream: LogStream) -> None:
        assembler = self._assemblers.get(stream)
        if assembler is None:
            return
        self._record_lines(assembler.feed(chunk), stream)

    def _on_exit(self, handle: ProcessHandle) -> None:
        for stream, assembler in self._assemblers.items():
            self._record_lines(assembler.flush(), stream)
        code = handle.exit_code
        sig = handle.exit_signal
        self._record_lines([f"[SYSTEM] Server exited with code {code}, signal {sig}"], LogStream.SYSTEM)

        if handle is not self._handle or self._state != ServerState.RUNNING:
            # start() and the stop task own their own transitions.
            return

        self._handle = None
        self._started_at = None
        log = logger.bind(pid=handle.pid)
        if code == 0:
            self._set_state(ServerState.STOPPED)
            log.info("server_exited", exit_code=code)
        else:
            message = f"Server exited unexpectedly (exit code {code}, signal {sig})"
            self._set_state(ServerState.ERROR, message=message)
            log.warning("server_crashed", exit_code=code, exit_signal=sig)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_lines(self, lines: list[str], stream: LogStream) -> None:
        added: list[LogEntry] = []
        for line in lines:
            if not line.strip():
                continue
            text = line if stream == LogStream.SYSTEM else f"[{stream.value.upper()}] {line}"
            added.extend(self._log.append(text, stream))
        if not added:
            return
        self.events.publish(ServerLogLines(lines=tuple(e.text for e in added)))
        self._sink.server_log(added)

    def _set_state(self, state: ServerState, message: str = "") -> None:
        self._state = state
        self._message = message
        self.events.publish(ServerStatusChanged(status=self.status()))
