"""
Integration tests for the server supervisor against a real child process.

The fake ``shimmy`` executable from conftest stands in for the inference
server; its ``--behavior`` flag selects normal, crash, ignore-term or
exit-later.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
import pytest_asyncio

from shimmerdesk.core.config import ServerConfig, SupervisorConfig
from shimmerdesk.core.exceptions import AlreadyRunningError, ProcessCrashedError
from shimmerdesk.core.server.models import ServerState, ServerStatusChanged
from shimmerdesk.core.server.supervisor import ServerSupervisor
from shimmerdesk.core.surface import ControlSurface
from shimmerdesk.core.terminal.multiplexer import TerminalMultiplexer

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals and shebang scripts")


def _config(behavior: str = "normal", port: int = 12345) -> ServerConfig:
    return ServerConfig(port=port, additional_args=["--behavior", behavior])


async def _eventually(pred: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest_asyncio.fixture
async def supervisor(fake_server: Path):
    sup = ServerSupervisor(
        SupervisorConfig(binary_path=str(fake_server), liveness_window_s=0.3, graceful_stop_s=0.5)
    )
    yield sup
    await sup.shutdown()


def _listening(sup: ServerSupervisor, port: int = 12345) -> bool:
    return f"[STDOUT] server listening on port {port}" in sup.logs()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_capture_stop(self, supervisor: ServerSupervisor) -> None:
        status = await supervisor.start(_config())
        assert status.state == ServerState.RUNNING
        assert status.pid is not None

        await _eventually(lambda: _listening(supervisor))

        handle = supervisor.handle
        stopped = await supervisor.stop()
        assert stopped.state == ServerState.STOPPED
        assert handle.exit_signal == "SIGTERM"

    @pytest.mark.asyncio
    async def test_force_kill_when_term_ignored(self, supervisor: ServerSupervisor) -> None:
        await supervisor.start(_config("ignore-term"))
        await _eventually(lambda: _listening(supervisor))

        handle = supervisor.handle
        stopped = await supervisor.stop()
        assert stopped.state == ServerState.STOPPED
        assert handle.exit_signal == "SIGKILL"

    @pytest.mark.asyncio
    async def test_concurrent_starts(self, supervisor: ServerSupervisor) -> None:
        results = await asyncio.gather(
            supervisor.start(_config()), supervisor.start(_config()), return_exceptions=True
        )
        assert sum(isinstance(r, AlreadyRunningError) for r in results) == 1
        assert supervisor.state == ServerState.RUNNING

    @pytest.mark.asyncio
    async def test_stop_without_wait(self, supervisor: ServerSupervisor) -> None:
        await supervisor.start(_config())
        status = await supervisor.stop(wait=False)
        assert status.state == ServerState.STOPPING
        await _eventually(lambda: supervisor.state == ServerState.STOPPED)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_crash_during_startup(self, fake_server: Path) -> None:
        sup = ServerSupervisor(SupervisorConfig(binary_path=str(fake_server), liveness_window_s=3))
        with pytest.raises(ProcessCrashedError) as exc_info:
            await sup.start(_config("crash"))

        assert exc_info.value.exit_code == 3
        assert sup.state == ServerState.ERROR
        logs = sup.logs()
        assert "[STDERR] fatal: bad model" in logs
        assert logs[-1] == "[SYSTEM] Server exited with code 3, signal None"

    @pytest.mark.asyncio
    async def test_external_kill_reported_once(self, supervisor: ServerSupervisor) -> None:
        status = await supervisor.start(_config())
        changes: list[ServerStatusChanged] = []
        supervisor.events.subscribe(
            lambda e: changes.append(e) if isinstance(e, ServerStatusChanged) else None
        )

        os.kill(status.pid, signal.SIGKILL)
        await _eventually(lambda: supervisor.state == ServerState.ERROR)
        await asyncio.sleep(0.1)

        assert [c.status.state for c in changes] == [ServerState.ERROR]
        assert "SIGKILL" in supervisor.status().message

    @pytest.mark.asyncio
    async def test_clean_exit_after_running(self, supervisor: ServerSupervisor) -> None:
        await supervisor.start(_config("exit-later"))
        await _eventually(lambda: supervisor.state == ServerState.STOPPED)
        assert supervisor.handle is None

    @pytest.mark.asyncio
    async def test_missing_binary_through_surface(self, tmp_path: Path) -> None:
        server = ServerSupervisor(SupervisorConfig(binary_path=str(tmp_path / "no-shimmy")))
        surface = ControlSurface(server, TerminalMultiplexer())

        result = await surface.server_start({"port": 12345})

        assert result["success"] is False
        assert "not found" in result["error"]
        assert (await surface.server_status())["state"] == "stopped"
