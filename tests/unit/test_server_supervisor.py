"""Unit tests for shimmerdesk.core.server.supervisor — state machine against FakeHandle."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from shimmerdesk.core.config import ServerConfig, SupervisorConfig
from shimmerdesk.core.exceptions import (
    AlreadyRunningError,
    BinaryNotFoundError,
    NotRunningError,
    ProcessCrashedError,
    SpawnFailedError,
    TransientError,
)
from shimmerdesk.core.logbuffer import LogStream
from shimmerdesk.core.server.binary import build_server_args
from shimmerdesk.core.server.models import ServerLogLines, ServerState, ServerStatusChanged
from shimmerdesk.core.server.supervisor import ServerSupervisor


@pytest.fixture
def make_supervisor(fake_binary: Path, handle_factory):
    """Supervisor over FakeHandles with short liveness and grace windows."""

    def make(sink=None, **flags) -> ServerSupervisor:
        cfg = SupervisorConfig(
            binary_path=str(fake_binary), liveness_window_s=0.05, graceful_stop_s=0.1
        )
        return ServerSupervisor(cfg, handle_factory=handle_factory(**flags), sink=sink)

    return make


def _states(events: list) -> list[ServerState]:
    return [e.status.state for e in events if isinstance(e, ServerStatusChanged)]


def _record(sup: ServerSupervisor) -> list:
    seen: list = []
    sup.events.subscribe(seen.append)
    return seen


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_start_reaches_running(self, make_supervisor, fake_handles, fake_binary) -> None:
        sup = make_supervisor()
        seen = _record(sup)
        cfg = ServerConfig(port=11500, model_path="/m.gguf", env={"FOO": "1"})

        status = await sup.start(cfg)

        assert status.state == ServerState.RUNNING
        assert status.pid == fake_handles[0].pid
        assert status.started_at is not None
        assert _states(seen) == [ServerState.STARTING, ServerState.RUNNING]
        spec = fake_handles[0].spec
        assert spec.command == [str(fake_binary), *build_server_args(cfg)]
        assert spec.env["SHIMMY_PORT"] == "11500"
        assert spec.env["FOO"] == "1"

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        with pytest.raises(AlreadyRunningError):
            await sup.start()
        assert len(fake_handles) == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_once(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        results = await asyncio.gather(sup.start(), sup.start(), return_exceptions=True)
        assert sum(isinstance(r, AlreadyRunningError) for r in results) == 1
        assert len(fake_handles) == 1
        assert sup.state == ServerState.RUNNING

    @pytest.mark.asyncio
    async def test_missing_binary_leaves_state(self, handle_factory, tmp_path: Path) -> None:
        cfg = SupervisorConfig(binary_path=str(tmp_path / "nope"))
        sup = ServerSupervisor(cfg, handle_factory=handle_factory())
        seen = _record(sup)
        with pytest.raises(BinaryNotFoundError, match="not found"):
            await sup.start()
        assert sup.state == ServerState.STOPPED
        assert seen == []

    @pytest.mark.asyncio
    async def test_spawn_failure_goes_to_error(self, make_supervisor) -> None:
        sup = make_supervisor(fail_start=SpawnFailedError("permission denied"))
        with pytest.raises(SpawnFailedError):
            await sup.start()
        assert sup.state == ServerState.ERROR
        assert sup.status().message == "permission denied"
        assert "[SYSTEM] permission denied" in sup.logs()

    @pytest.mark.asyncio
    async def test_exit_inside_liveness_window(self, make_supervisor) -> None:
        sup = make_supervisor(exit_on_start=3)
        seen = _record(sup)
        with pytest.raises(ProcessCrashedError) as exc_info:
            await sup.start()
        assert exc_info.value.exit_code == 3
        assert sup.state == ServerState.ERROR
        assert sup.handle is None
        assert _states(seen) == [ServerState.STARTING, ServerState.ERROR]

    @pytest.mark.asyncio
    async def test_restart_after_error(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        fake_handles[0].exit(1)
        assert sup.state == ServerState.ERROR
        status = await sup.start()
        assert status.state == ServerState.RUNNING
        assert status.message == ""


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    @pytest.mark.asyncio
    async def test_graceful_stop(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        seen = _record(sup)

        status = await sup.stop()

        assert status.state == ServerState.STOPPED
        assert status.pid is None
        assert fake_handles[0].signals == ["TERM"]
        assert _states(seen) == [ServerState.STOPPING, ServerState.STOPPED]

    @pytest.mark.asyncio
    async def test_escalates_to_kill(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor(honour_term=False)
        await sup.start()
        status = await sup.stop()
        assert status.state == ServerState.STOPPED
        assert fake_handles[0].signals == ["TERM", "KILL"]
        assert fake_handles[0].exit_signal == "SIGKILL"

    @pytest.mark.asyncio
    async def test_concurrent_stops_share_escalation(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor(honour_term=False)
        await sup.start()
        first, second = await asyncio.gather(sup.stop(), sup.stop())
        assert first.state == second.state == ServerState.STOPPED
        assert fake_handles[0].signals == ["TERM", "KILL"]

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self, make_supervisor) -> None:
        with pytest.raises(NotRunningError):
            await make_supervisor().stop()

    @pytest.mark.asyncio
    async def test_stop_without_wait(self, make_supervisor) -> None:
        sup = make_supervisor(honour_term=False)
        await sup.start()

        status = await sup.stop(wait=False)
        assert status.state == ServerState.STOPPING

        with pytest.raises(TransientError):
            await sup.start()

        final = await sup.stop()
        assert final.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_queued_behind_start(self, make_supervisor) -> None:
        sup = make_supervisor()
        seen = _record(sup)
        start = asyncio.create_task(sup.start())
        await asyncio.sleep(0)

        stopped = await sup.stop()
        started = await start

        assert started.state == ServerState.RUNNING
        assert stopped.state == ServerState.STOPPED
        assert _states(seen) == [
            ServerState.STARTING,
            ServerState.RUNNING,
            ServerState.STOPPING,
            ServerState.STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_shutdown_is_safe_when_idle(self, make_supervisor) -> None:
        sup = make_supervisor()
        await sup.shutdown()
        await sup.start()
        await sup.shutdown()
        assert sup.state == ServerState.STOPPED


# ---------------------------------------------------------------------------
# Unexpected exit
# ---------------------------------------------------------------------------


class TestUnexpectedExit:
    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        seen = _record(sup)

        fake_handles[0].exit(None, "SIGSEGV")

        assert _states(seen) == [ServerState.ERROR]
        status = sup.status()
        assert "unexpectedly" in status.message
        assert status.pid is None
        assert sup.logs()[-1] == "[SYSTEM] Server exited with code None, signal SIGSEGV"

    @pytest.mark.asyncio
    async def test_clean_exit_is_stopped(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        seen = _record(sup)
        fake_handles[0].exit(0)
        assert _states(seen) == [ServerState.STOPPED]
        with pytest.raises(NotRunningError):
            await sup.stop()


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------


class TestOutput:
    @pytest.mark.asyncio
    async def test_lines_tagged_and_assembled(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        h = fake_handles[0]

        h.emit(b"hello\nwor")
        h.emit(b"ld\r\n\n   \n")
        h.emit(b"oops\n", LogStream.STDERR)

        assert sup.logs() == ["[STDOUT] hello", "[STDOUT] world", "[STDERR] oops"]

    @pytest.mark.asyncio
    async def test_split_utf8_sequence(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        data = "café\n".encode()
        fake_handles[0].emit(data[:4])
        fake_handles[0].emit(data[4:])
        assert sup.logs() == ["[STDOUT] café"]

    @pytest.mark.asyncio
    async def test_partial_line_flushed_on_exit(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        fake_handles[0].emit(b"no newline")
        fake_handles[0].exit(2)
        assert sup.logs()[-2:] == [
            "[STDOUT] no newline",
            "[SYSTEM] Server exited with code 2, signal None",
        ]

    @pytest.mark.asyncio
    async def test_log_events_and_sink(self, make_supervisor, fake_handles) -> None:
        sink = MagicMock()
        sup = make_supervisor(sink=sink)
        await sup.start()
        seen = _record(sup)

        fake_handles[0].emit(b"a\nb\n")

        batches = [e.lines for e in seen if isinstance(e, ServerLogLines)]
        assert batches == [("[STDOUT] a", "[STDOUT] b")]
        entries = sink.server_log.call_args.args[0]
        assert [e.text for e in entries] == ["[STDOUT] a", "[STDOUT] b"]

    @pytest.mark.asyncio
    async def test_clear_logs(self, make_supervisor, fake_handles) -> None:
        sup = make_supervisor()
        await sup.start()
        fake_handles[0].emit(b"x\n")
        sup.clear_logs()
        assert sup.logs() == []


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def _client(get: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.get = get
    cls = MagicMock()
    cls.return_value.__aenter__.return_value = client
    return cls


class TestHealth:
    @pytest.mark.asyncio
    async def test_false_when_not_running(self, make_supervisor) -> None:
        assert await make_supervisor().check_health() is False

    @pytest.mark.asyncio
    async def test_healthy(self, make_supervisor) -> None:
        sup = make_supervisor()
        await sup.start(ServerConfig(port=11999))
        get = AsyncMock(return_value=MagicMock(is_success=True))
        with patch("shimmerdesk.core.server.supervisor.httpx.AsyncClient", _client(get)):
            assert await sup.check_health() is True
        get.assert_awaited_once_with("http://127.0.0.1:11999/health")

    @pytest.mark.asyncio
    async def test_connection_refused(self, make_supervisor) -> None:
        sup = make_supervisor()
        await sup.start()
        get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("shimmerdesk.core.server.supervisor.httpx.AsyncClient", _client(get)):
            assert await sup.check_health() is False
