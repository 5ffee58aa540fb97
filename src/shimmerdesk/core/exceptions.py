"""shimmerdesk exception hierarchy."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable tag carried by every error crossing the control surface."""

    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    BINARY_NOT_FOUND = "binary_not_found"
    SPAWN_FAILED = "spawn_failed"
    SESSION_NOT_FOUND = "session_not_found"
    TRANSIENT = "transient"
    PROCESS_CRASHED = "process_crashed"
    INVALID_CONFIG = "invalid_config"
    INTERNAL = "internal"


class ShimmerError(Exception):
    """Base exception for all shimmerdesk errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class ConfigError(ShimmerError):
    """Raised when the configuration is invalid or cannot be read."""

    kind = ErrorKind.INVALID_CONFIG


class ConfigNotFoundError(ConfigError):
    """Raised when an explicitly requested configuration file does not exist."""


class AlreadyRunningError(ShimmerError):
    """Raised when the server slot is already occupied."""

    kind = ErrorKind.ALREADY_RUNNING


class NotRunningError(ShimmerError):
    """Raised when an operation needs a running server and there is none."""

    kind = ErrorKind.NOT_RUNNING


class BinaryNotFoundError(ShimmerError):
    """Raised when the resolved server executable does not exist on disk."""

    kind = ErrorKind.BINARY_NOT_FOUND


class SpawnFailedError(ShimmerError):
    """Raised when the OS refuses to start a child process."""

    kind = ErrorKind.SPAWN_FAILED


class SessionNotFoundError(ShimmerError):
    """Raised when a terminal session id is unknown or has already exited."""

    kind = ErrorKind.SESSION_NOT_FOUND


class TransientError(ShimmerError):
    """Raised when a request collides with an in-flight start/stop."""

    kind = ErrorKind.TRANSIENT


class ProcessCrashedError(ShimmerError):
    """Raised when a child exits while it was expected to be running."""

    kind = ErrorKind.PROCESS_CRASHED

    def __init__(
        self, message: str, exit_code: int | None = None, exit_signal: str | None = None
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.exit_signal = exit_signal
