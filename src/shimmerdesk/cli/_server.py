"""shimmerdesk server — run and inspect the inference server."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from shimmerdesk.cli._common import load_context_config, open_db, open_sink
from shimmerdesk.core.constants import ExitCode

console = Console()

_STREAM_STYLES = {"[STDOUT]": "", "[STDERR]": "yellow", "[SYSTEM]": "cyan"}

_EXIT_CODES = {
    "already_running": ExitCode.ALREADY_RUNNING,
    "not_running": ExitCode.NOT_RUNNING,
    "binary_not_found": ExitCode.BINARY_MISSING,
    "spawn_failed": ExitCode.SPAWN_FAILED,
    "process_crashed": ExitCode.SPAWN_FAILED,
    "invalid_config": ExitCode.CONFIG_ERROR,
}


@click.group("server")
def server_group() -> None:
    """Inference server lifecycle commands."""


@server_group.command("start")
@click.option("--host", default=None, help="Bind address (default from config).")
@click.option("--port", type=int, default=None, help="Listen port (default from config).")
@click.option("--model", "model_path", default=None, help="Model file to load.")
@click.option("--ctx-size", "context_size", type=int, default=None)
@click.option("--batch-size", type=int, default=None)
@click.option("--gpu-layers", type=int, default=None)
@click.option("--temp", "temperature", type=float, default=None)
@click.option(
    "--arg", "additional_args", multiple=True, help="Extra argument passed to the server verbatim."
)
@click.pass_context
def server_start(ctx: click.Context, **overrides: Any) -> None:
    """Run the server in the foreground and stream its log. Ctrl+C stops it."""
    config = load_context_config(console, ctx)
    cmd_server_start(config, overrides, console=console)


@server_group.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def server_status(ctx: click.Context, as_json: bool) -> None:
    """Show binary location and whether a server answers on the configured port."""
    config = load_context_config(console, ctx)
    cmd_server_status(config, as_json=as_json, console=console)


@server_group.command("check")
@click.pass_context
def server_check(ctx: click.Context) -> None:
    """Exit 0 if the server's /health endpoint responds, 3 otherwise."""
    config = load_context_config(console, ctx)
    healthy = asyncio.run(_probe_health(config.server.base_url))
    if healthy:
        console.print(f"[green]healthy[/green] {config.server.base_url}")
        return
    console.print(f"[red]unreachable[/red] {config.server.base_url}")
    sys.exit(ExitCode.NOT_RUNNING)


@server_group.command("logs")
@click.option("--limit", default=100, show_default=True, help="Number of lines to show.")
@click.pass_context
def server_logs(ctx: click.Context, limit: int) -> None:
    """Show server output captured by previous runs."""
    config = load_context_config(console, ctx)
    db = open_db(config, create=False)
    if db is None:
        console.print("[dim]No captured server logs.[/dim]")
        return
    try:
        for row in db.list_server_logs(limit=limit):
            _print_line(row["text"])
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def cmd_server_start(config: Any, overrides: dict[str, Any], console: Console) -> None:
    from shimmerdesk.core.config import ServerConfig

    fields = config.server.model_dump()
    for key, value in overrides.items():
        if key == "additional_args":
            if value:
                fields[key] = [*fields[key], *value]
        elif value is not None:
            fields[key] = value
    server_config = ServerConfig.model_validate(fields)

    console.print(f"[bold]Starting shimmy[/bold] on {server_config.base_url}")
    console.print("Press Ctrl+C to stop.\n")
    try:
        code = asyncio.run(_run_foreground(config, server_config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped.[/yellow]")
        code = ExitCode.SUCCESS
    sys.exit(code)


async def _run_foreground(config: Any, server_config: Any) -> int:
    from shimmerdesk.core.exceptions import ShimmerError
    from shimmerdesk.core.server.models import ServerState, ServerStatusChanged
    from shimmerdesk.core.server.supervisor import ServerSupervisor

    sink, db = open_sink(config)
    supervisor = ServerSupervisor(config.supervisor, sink=sink)

    def _on_event(event: Any) -> None:
        for line in getattr(event, "lines", ()):
            _print_line(line)

    supervisor.events.subscribe(_on_event)
    try:
        try:
            status = await supervisor.start(server_config)
        except ShimmerError as exc:
            console.print(f"[red]Failed:[/red] {exc}")
            return _EXIT_CODES.get(exc.kind.value, ExitCode.ERROR)

        console.print(f"[green]Running[/green] (PID {status.pid})")
        async for event in supervisor.events.stream():
            if isinstance(event, ServerStatusChanged) and event.status.state != ServerState.RUNNING:
                if event.status.state == ServerState.ERROR:
                    console.print(f"[red]{event.status.message}[/red]")
                    return ExitCode.ERROR
                return ExitCode.SUCCESS
        return ExitCode.SUCCESS
    finally:
        await supervisor.shutdown()
        if db is not None:
            db.close()


def cmd_server_status(config: Any, as_json: bool, console: Console) -> None:
    from shimmerdesk.core.server.binary import BinaryResolver, arch_name, platform_name

    resolver = BinaryResolver(config.supervisor.resources_dir or None, config.supervisor.binary_path)
    binary = resolver.resolve()
    healthy = asyncio.run(_probe_health(config.server.base_url))
    data = {
        "binary_path": str(binary),
        "binary_exists": binary.is_file(),
        "platform": platform_name(),
        "arch": arch_name(),
        "url": config.server.base_url,
        "healthy": healthy,
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="shimmy server", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Binary", data["binary_path"])
    table.add_row("Binary present", "[green]yes[/green]" if data["binary_exists"] else "[red]no[/red]")
    table.add_row("Platform", f"{data['platform']}/{data['arch']}")
    table.add_row("URL", data["url"])
    table.add_row("Health", "[green]ok[/green]" if healthy else "[dim]no response[/dim]")
    console.print(table)


async def _probe_health(base_url: str) -> bool:
    import httpx

    from shimmerdesk.core.constants import HEALTH_CHECK_TIMEOUT_SECONDS, HEALTH_PATH

    try:
        async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT_SECONDS) as client:
            resp = await client.get(base_url + HEALTH_PATH)
    except httpx.HTTPError:
        return False
    return resp.is_success


def _print_line(line: str) -> None:
    style = next((s for tag, s in _STREAM_STYLES.items() if line.startswith(tag)), "")
    console.print(line, style=style or None, markup=False, highlight=False)
