"""
shimmerdesk CLI entry point.

Commands:
  shimmerdesk server start          — run the inference server in the foreground
  shimmerdesk server status         — binary location and health probe
  shimmerdesk server check          — exit 0 if /health responds
  shimmerdesk server logs           — server output captured by previous runs
  shimmerdesk terminal exec <cmd>   — run a command in a fresh shell session
  shimmerdesk terminal history      — recorded terminal sessions
  shimmerdesk version               — show version information
"""

from __future__ import annotations

import click
from rich.console import Console

from shimmerdesk import __version__
from shimmerdesk.cli._server import server_group
from shimmerdesk.cli._terminal import terminal_group

console = Console()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="shimmerdesk %(version)s")
@click.option("--config", "config_path", default=None, help="Path to config.toml.")
@click.option(
    "--log-level", default=None, hidden=True, help="Log level; overrides [logging] level."
)
@click.option(
    "--log-json/--log-text", default=None, hidden=True, help="Log format; overrides [logging] format."
)
@click.pass_context
def cli(
    ctx: click.Context, config_path: str | None, log_level: str | None, log_json: bool | None
) -> None:
    """shimmerdesk: supervise a local shimmy server and interactive shells."""
    from shimmerdesk.core.logging import configure_logging

    # Until a command loads config.toml.
    configure_logging(level=log_level or "WARNING", json_output=bool(log_json))
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level
    ctx.obj["log_json"] = log_json


@cli.command("version")
@click.option("--json", "as_json", is_flag=True, default=False)
def version_cmd(as_json: bool) -> None:
    """Show version information."""
    import platform
    import sys as _sys

    from shimmerdesk.core.constants import _default_data_dir
    from shimmerdesk.core.server.binary import arch_name, platform_name

    data = {
        "shimmerdesk": __version__,
        "python": _sys.version.split()[0],
        "platform": platform_name(),
        "arch": arch_name(),
        "machine": platform.machine(),
        "config_path": str(_default_data_dir() / "config.toml"),
    }
    if as_json:
        import json

        click.echo(json.dumps(data, indent=2))
        return
    console.print(f"shimmerdesk {__version__}")
    console.print(f"Python {data['python']} on {data['platform']}/{data['arch']}")
    console.print(f"Config: {data['config_path']}")


cli.add_command(server_group)
cli.add_command(terminal_group)
