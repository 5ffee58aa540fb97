"""shimmerdesk constants: filesystem layout, defaults, timeouts, and limits."""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from pathlib import Path

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    NOT_RUNNING = 3
    ALREADY_RUNNING = 4
    BINARY_MISSING = 5
    SPAWN_FAILED = 6


# ---------------------------------------------------------------------------
# Platform-specific data directory
# ---------------------------------------------------------------------------


def _default_data_dir() -> Path:
    """
    Return the platform-appropriate shimmerdesk data directory.

    macOS : ~/Library/Application Support/shimmerdesk
    Linux : ~/.config/shimmerdesk
    Other : ~/.shimmerdesk
    """
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "shimmerdesk"
    if sys.platform.startswith("linux"):
        xdg = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
        return xdg / "shimmerdesk"
    return Path.home() / ".shimmerdesk"


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "config.toml"
DB_FILENAME = "shimmerdesk.db"
SERVER_BINARY_NAME = "shimmy"
RESOURCES_DIR_NAME = "resources"

# ---------------------------------------------------------------------------
# Server defaults
# ---------------------------------------------------------------------------

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 11435
LIVENESS_WINDOW_SECONDS = 2.0  # start() waits this long before declaring Running
GRACEFUL_STOP_SECONDS = 5.0  # SIGTERM → SIGKILL escalation window
HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
HEALTH_PATH = "/health"

# ---------------------------------------------------------------------------
# Buffers and limits
# ---------------------------------------------------------------------------

LOG_BUFFER_CAPACITY = 1000  # server log ring buffer, in lines
HISTORY_LIMIT = 1000  # recalled command lines kept per terminal session
OUTPUT_LINE_LIMIT = 1000  # captured output lines kept per command (oldest dropped)
OUTPUT_CHAR_LIMIT = 1_000_000  # hard cap for output without newlines
ARCHIVE_LIMIT = 100  # ended terminal sessions kept in memory
READ_CHUNK_BYTES = 4096

# ---------------------------------------------------------------------------
# Terminal defaults
# ---------------------------------------------------------------------------

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
COMMAND_IDLE_SECONDS = 0.5  # output silence that marks a command finished
KILL_GRACE_SECONDS = 2.0  # terminal SIGTERM → SIGKILL escalation window
INTERRUPT_EXIT_CODE = 130
CLEAR_SCREEN = "\x1b[2J\x1b[H"
TERM_ENV = {"TERM": "xterm-256color", "COLORTERM": "truecolor"}


def default_shell() -> str:
    """Return the platform's default interactive shell."""
    if sys.platform == "win32":
        return os.environ.get("COMSPEC") or "cmd.exe"
    return os.environ.get("SHELL") or "/bin/bash"
