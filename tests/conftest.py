"""Shared fixtures: an in-memory process handle and a scriptable fake server binary."""

from __future__ import annotations

import asyncio
import itertools
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from shimmerdesk.os.proc.base import ProcessHandle, SpawnSpec


_pids = itertools.count(40000)


class FakeHandle(ProcessHandle):
    """
    ProcessHandle that never touches the OS.

    Tests drive it with ``emit()`` and ``exit()``; signal methods are
    recorded in ``signals`` and, depending on the flags, schedule an exit.
    """

    def __init__(
        self,
        spec: SpawnSpec,
        *,
        exit_on_start: int | None = None,
        honour_term: bool = True,
        fail_start: Exception | None = None,
    ) -> None:
        super().__init__(spec)
        self.exit_on_start = exit_on_start
        self.honour_term = honour_term
        self.fail_start = fail_start
        self.signals: list[str] = []
        self.written: list[str] = []

    async def start(self) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self.pid = next(_pids)
        self.started_at = datetime.now(UTC)
        if self.exit_on_start is not None:
            asyncio.get_running_loop().call_soon(self._mark_exited, self.exit_on_start, None)

    def emit(self, data: str | bytes, stream=None) -> None:
        from shimmerdesk.core.logbuffer import LogStream

        self._notify_output(self._encode(data), stream or LogStream.STDOUT)

    def exit(self, code: int | None = 0, sig: str | None = None) -> None:
        self._mark_exited(code, sig)

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self.honour_term:
            asyncio.get_running_loop().call_soon(self._mark_exited, None, "SIGTERM")

    def kill(self) -> None:
        self.signals.append("KILL")
        asyncio.get_running_loop().call_soon(self._mark_exited, None, "SIGKILL")

    def interrupt(self) -> None:
        self.signals.append("INT")

    def write(self, data: str | bytes) -> None:
        self._ensure_writable()
        self.written.append(data.decode() if isinstance(data, bytes) else data)


@pytest.fixture
def fake_handles() -> list[FakeHandle]:
    """Every FakeHandle created by ``handle_factory`` in this test."""
    return []


@pytest.fixture
def handle_factory(fake_handles: list[FakeHandle]) -> Callable[..., Callable[[SpawnSpec], FakeHandle]]:
    """``handle_factory(**flags)`` returns a factory producing configured FakeHandles."""

    def make(**flags) -> Callable[[SpawnSpec], FakeHandle]:
        def factory(spec: SpawnSpec) -> FakeHandle:
            h = FakeHandle(spec, **flags)
            fake_handles.append(h)
            return h

        return factory

    return make


# ---------------------------------------------------------------------------
# Fake server executable
# ---------------------------------------------------------------------------

_FAKE_SERVER = """
import argparse
import signal
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("--behavior", default="normal")
parser.add_argument("--port")
args, _ = parser.parse_known_args()

if args.behavior == "crash":
    print("loading model", flush=True)
    print("fatal: bad model", file=sys.stderr, flush=True)
    sys.exit(3)

if args.behavior == "ignore-term":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

print(f"server listening on port {args.port}", flush=True)

if args.behavior == "exit-later":
    time.sleep(0.6)
    sys.exit(0)

while True:
    time.sleep(0.05)
"""


@pytest.fixture
def fake_server(tmp_path: Path) -> Path:
    """An executable standing in for the server binary.

    Behaviour is chosen with ``--behavior`` in ``ServerConfig.additional_args``:
    normal | crash | ignore-term | exit-later.
    """
    path = tmp_path / "shimmy"
    path.write_text(f"#!{sys.executable}\n{_FAKE_SERVER}")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """An existing (never executed) file to satisfy the binary presence check."""
    path = tmp_path / "bin" / "shimmy"
    path.parent.mkdir()
    path.write_text("")
    return path
