"""
shimmerdesk — process supervision core for the Shimmer desktop surface.

shimmerdesk launches, monitors, streams output from, and terminates the local
``shimmy`` inference server and any number of interactive shells, exposing a
stable event/status contract to the UI layer.

Package layout (src/shimmerdesk/):
  core/server/    — single-slot server process supervisor
  core/terminal/  — terminal session multiplexer and command history
  core/store/     — SQLite persistence sink for sessions, commands, logs
  core/surface.py — IPC boundary returning explicit success/error shapes
  os/proc/        — process handles (pipe and PTY backends)
  cli/            — Click CLI entry point
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
