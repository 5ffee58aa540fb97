"""
ControlSurface: the request/response boundary in front of both supervisors.

Every method returns a plain dict that is safe to serialise across an IPC
channel.  Success carries ``{"success": True, ...payload}``; failure carries
``{"success": False, "error": <message>, "kind": <ErrorKind>}``.  Nothing
here raises for an expected failure.

Push events from both supervisors are re-published to subscribers as
``callback(channel, payload)``.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import ValidationError

from shimmerdesk.core.config import ServerConfig
from shimmerdesk.core.events import Event
from shimmerdesk.core.exceptions import ErrorKind, ShimmerError
from shimmerdesk.core.server.supervisor import ServerSupervisor
from shimmerdesk.core.terminal.multiplexer import TerminalMultiplexer

logger = structlog.get_logger()

Result = dict[str, Any]
PushCallback = Callable[[str, dict[str, Any]], None]


def _failure(error: str, kind: ErrorKind) -> Result:
    return {"success": False, "error": error, "kind": kind.value}


def _guarded(fn: Callable[..., Awaitable[Result]]) -> Callable[..., Awaitable[Result]]:
    """Convert raised errors into the failure shape."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Result:
        try:
            return await fn(*args, **kwargs)
        except ShimmerError as exc:
            return _failure(str(exc), exc.kind)
        except ValidationError as exc:
            return _failure(f"Invalid options: {exc}", ErrorKind.INVALID_CONFIG)
        except (ValueError, TypeError) as exc:
            return _failure(str(exc), ErrorKind.INVALID_CONFIG)
        except TimeoutError:
            return _failure("Timed out waiting for command to finish", ErrorKind.TRANSIENT)
        except Exception as exc:  # noqa: BLE001
            logger.exception("control_surface_internal_error", method=fn.__name__)
            return _failure(str(exc) or type(exc).__name__, ErrorKind.INTERNAL)

    return wrapper


class ControlSurface:
    """Dict-in, dict-out facade over ``ServerSupervisor`` and ``TerminalMultiplexer``."""

    def __init__(self, server: ServerSupervisor, terminals: TerminalMultiplexer) -> None:
        self.server = server
        self.terminals = terminals

    def subscribe(self, callback: PushCallback) -> Callable[[], None]:
        """Receive every push event from both supervisors."""

        def _forward(event: Event) -> None:
            callback(event.channel, event.payload())

        unsubscribers = [
            self.server.events.subscribe(_forward),
            self.terminals.events.subscribe(_forward),
        ]

        def _unsubscribe() -> None:
            for unsub in unsubscribers:
                unsub()

        return _unsubscribe

    # ------------------------------------------------------------------
    # Server
    # ------------------------------------------------------------------

    @_guarded
    async def server_start(self, config: dict[str, Any] | ServerConfig | None = None) -> Result:
        if not isinstance(config, ServerConfig):
            config = ServerConfig.model_validate(config or {})
        status = await self.server.start(config)
        return {"success": True, "pid": status.pid, "message": "Shimmy server started"}

    @_guarded
    async def server_stop(self, wait: bool = True) -> Result:
        status = await self.server.stop(wait=wait)
        return {"success": True, "state": status.state.value}

    @_guarded
    async def server_status(self) -> Result:
        return {"success": True, **self.server.status().to_dict()}

    @_guarded
    async def server_logs(self) -> Result:
        return {"success": True, "lines": self.server.logs()}

    @_guarded
    async def server_clear_logs(self) -> Result:
        self.server.clear_logs()
        return {"success": True}

    @_guarded
    async def server_health(self) -> Result:
        return {"success": True, "healthy": await self.server.check_health()}

    # ------------------------------------------------------------------
    # Terminal
    # ------------------------------------------------------------------

    @_guarded
    async def terminal_create(self, options: dict[str, Any] | None = None) -> Result:
        options = options or {}
        session = await self.terminals.create_session(
            shell=options.get("shell"),
            working_directory=options.get("working_directory") or options.get("cwd"),
            cols=options.get("cols"),
            rows=options.get("rows"),
            env=options.get("env"),
        )
        return {"success": True, "session_id": session.id, "pid": session.pid}

    @_guarded
    async def terminal_write(self, session_id: str, data: str) -> Result:
        self.terminals.write(session_id, data)
        return {"success": True}

    @_guarded
    async def terminal_resize(self, session_id: str, cols: int, rows: int) -> Result:
        self.terminals.resize(session_id, cols, rows)
        return {"success": True}

    @_guarded
    async def terminal_execute(
        self, session_id: str, command: str, wait: bool = False, timeout: float | None = None
    ) -> Result:
        cmd = await self.terminals.execute_command(session_id, command, wait=wait, timeout=timeout)
        return {"success": True, "command": cmd.to_dict()}

    @_guarded
    async def terminal_interrupt(self, session_id: str) -> Result:
        cmd = self.terminals.interrupt(session_id)
        return {"success": True, "command": cmd.to_dict() if cmd else None}

    @_guarded
    async def terminal_clear(self, session_id: str) -> Result:
        self.terminals.clear(session_id)
        return {"success": True}

    @_guarded
    async def terminal_kill(self, session_id: str) -> Result:
        session = await self.terminals.kill(session_id)
        return {"success": True, "state": session.state.value}

    @_guarded
    async def terminal_history(self, session_id: str | None = None) -> Result:
        if session_id is None:
            return {
                "success": True,
                "sessions": [s.to_dict() for s in self.terminals.list_history()],
            }
        return {"success": True, "session": self.terminals.get_history(session_id).to_dict()}

    @_guarded
    async def terminal_export(self, session_id: str) -> Result:
        return {"success": True, "text": self.terminals.export_session(session_id)}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        await self.terminals.shutdown()
        await self.server.shutdown()
