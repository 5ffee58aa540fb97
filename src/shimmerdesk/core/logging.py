"""
Structured logging for shimmerdesk.

structlog renders through the stdlib ``logging`` tree, so records from
httpx and asyncio share the same handler and format.  Only lifecycle events
are logged here; subprocess output lands in the bounded event log and the
history sink instead.

Context binding:

    TerminalMultiplexer   binds ``session_id`` once per session
    ServerSupervisor      binds ``pid`` once a server process exists

    2026-03-02T10:14:07Z [info] terminal_exited  session_id=4f0c… exit_code=0

The CLI calls ``configure_from_config()`` after loading ``[logging]``;
command-line flags override the file.  Reconfiguring replaces the handler
rather than stacking a second one.
"""

from __future__ import annotations

import logging
import sys

import structlog

from shimmerdesk.core.config import LoggingConfig

HANDLER_NAME = "shimmerdesk"

# Noisy at INFO: one line per /health request, one per selector event.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(*, level: str = "WARNING", json_output: bool = False) -> logging.Handler:
    """
    Route structlog and stdlib records to stderr at *level*.

    Returns the installed handler.  An unknown level name falls back to
    WARNING.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.WARNING

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
            foreign_pre_chain=_SHARED_PROCESSORS,
        )
    )

    root = logging.getLogger()
    for old in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
    return handler


def configure_from_config(
    config: LoggingConfig,
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> logging.Handler:
    """Apply a ``[logging]`` section; explicit arguments win over the file."""
    return configure_logging(
        level=level or config.level,
        json_output=config.format == "json" if json_output is None else json_output,
    )
