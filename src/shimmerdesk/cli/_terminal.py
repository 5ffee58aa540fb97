"""shimmerdesk terminal — one-shot shell commands and session history."""

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


@click.group("terminal")
def terminal_group() -> None:
    """Terminal session commands."""


@terminal_group.command("exec")
@click.argument("command")
@click.option("--shell", default=None, help="Shell to run the command in.")
@click.option("--cwd", default=None, help="Working directory (default: home).")
@click.option("--timeout", type=float, default=30.0, show_default=True)
@click.option(
    "--sentinel/--idle",
    default=None,
    help=(
        "Completion detection.  --sentinel (default on POSIX) reports the command's exit "
        "code; --idle waits for output silence and always exits 0."
    ),
)
@click.pass_context
def terminal_exec(
    ctx: click.Context,
    command: str,
    shell: str | None,
    cwd: str | None,
    timeout: float,
    sentinel: bool | None,
) -> None:
    """Run COMMAND in a fresh shell session and print its output."""
    config = load_context_config(console, ctx)
    # The multiplexer falls back to idle where sentinel is unsupported.
    config.terminal.completion = "idle" if sentinel is False else "sentinel"
    code = asyncio.run(_exec(config, command, shell=shell, cwd=cwd, timeout=timeout))
    sys.exit(code)


@terminal_group.command("history")
@click.argument("session_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def terminal_history(
    ctx: click.Context, session_id: str | None, as_json: bool, limit: int
) -> None:
    """List recorded sessions, or show the commands of SESSION_ID."""
    config = load_context_config(console, ctx)
    db = open_db(config, create=False)
    if db is None:
        console.print("[dim]No terminal history recorded.[/dim]")
        return
    try:
        if session_id:
            _show_session(db, session_id, as_json)
        else:
            _list_sessions(db, as_json, limit)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


async def _exec(
    config: Any, command: str, *, shell: str | None, cwd: str | None, timeout: float
) -> int:
    from shimmerdesk.core.exceptions import ShimmerError
    from shimmerdesk.core.terminal.multiplexer import TerminalMultiplexer

    sink, db = open_sink(config)
    terminals = TerminalMultiplexer(config.terminal, sink=sink)
    try:
        try:
            session = await terminals.create_session(shell=shell, working_directory=cwd)
        except ShimmerError as exc:
            console.print(f"[red]Failed:[/red] {exc}")
            return ExitCode.SPAWN_FAILED
        try:
            cmd = await terminals.execute_command(session.id, command, wait=True, timeout=timeout)
        except TimeoutError:
            console.print(f"[red]Timed out after {timeout}s[/red]")
            return ExitCode.ERROR
        click.echo(cmd.output, nl=not cmd.output.endswith("\n"))
        return cmd.exit_code if cmd.exit_code is not None else ExitCode.SUCCESS
    finally:
        await terminals.shutdown()
        if db is not None:
            db.close()


def _list_sessions(db: Any, as_json: bool, limit: int) -> None:
    rows = [dict(r) for r in db.list_terminal_sessions(limit=limit)]
    if as_json:
        click.echo(json.dumps(rows, indent=2, default=str))
        return
    if not rows:
        console.print("[dim]No terminal history recorded.[/dim]")
        return
    table = Table(title="Terminal sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Shell")
    table.add_column("State")
    table.add_column("Exit")
    table.add_column("Created")
    for r in rows:
        table.add_row(
            r["id"][:8],
            r["shell"],
            r["state"],
            "" if r["exit_code"] is None else str(r["exit_code"]),
            r["created_at"][:19],
        )
    console.print(table)


def _show_session(db: Any, session_id: str, as_json: bool) -> None:
    row = db.get_terminal_session(session_id)
    if row is None:
        # Allow the short id shown by ``terminal history``.
        matches = [r for r in db.list_terminal_sessions(limit=1000) if r["id"].startswith(session_id)]
        row = matches[0] if len(matches) == 1 else None
    if row is None:
        console.print(f"[red]Session not found:[/red] {session_id}")
        sys.exit(ExitCode.ERROR)

    commands = [dict(c) for c in db.list_terminal_commands(row["id"])]
    if as_json:
        click.echo(json.dumps({"session": dict(row), "commands": commands}, indent=2, default=str))
        return
    console.print(f"[bold]{row['name']}[/bold]  {row['shell']}  ({row['cwd']})")
    for c in commands:
        suffix = "" if c["exit_code"] in (None, 0) else f"  [red]exit {c['exit_code']}[/red]"
        console.print(f"[cyan]$ {c['command']}[/cyan]  [dim]{c['duration_ms']}ms[/dim]{suffix}")
        if c["output"]:
            console.print(c["output"], markup=False, highlight=False)
