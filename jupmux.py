#!/usr/bin/env python3
"""
jupmux - Jupyter Lab in a persistent tmux session

Usage:
    jupmux launch <project>           Start Jupyter Lab and print its URL
    jupmux status                     List jupmux sessions
    jupmux stop <project>             Stop a project's session
    jupmux url <project>              Check once for the server URL

Options:
    -d, --dir PATH        Project directory (default: ./<project>)
    -p, --port PORT       Jupyter port (default: 5000, or $JUPMUX_PORT)
    --jupyter PATH        Jupyter binary (default: <dir>/.venv/bin/jupyter)
    --attempts N          Readiness checks before giving up (default: 90)
    --interval SECS       Seconds between checks (default: 1)
    --tail N              Pane lines shown in diagnostics (default: 80)
    -v, --verbose         Trace each readiness check on stderr

The project directory must already contain a virtualenv with Jupyter
installed. A readiness timeout is not an error: diagnostics are printed and
the server may still come up.
"""

from __future__ import annotations

import argparse
import json
import os
import shutil
import sys
from functools import partial
from pathlib import Path

import anyio
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

import jupmux_ready as ready
import jupmux_session as sessions

# ============================================================================
# Constants
# ============================================================================

DEFAULT_PORT = 5000
DEFAULT_TAIL = 80
URL_TIMEOUT = 10.0  # seconds allowed for the single check in `url`
VENV_DIR = ".venv"

console = Console()


def error(msg: str):
    """Print error and exit."""
    console.print(f"[red]error:[/red] {escape(msg)}")
    sys.exit(1)


def log(tag: str, msg: dict):
    """Log to stderr."""
    compact = json.dumps(msg, separators=(",", ":"))
    print(f"[{tag}] {compact}", file=sys.stderr, flush=True)


def default_port() -> int:
    value = os.environ.get("JUPMUX_PORT")
    if not value:
        return DEFAULT_PORT
    try:
        return int(value)
    except ValueError:
        error(f"JUPMUX_PORT is not a number: {value}")


# ============================================================================
# Preflight
# ============================================================================

def resolve_paths(project: str, directory: str | None, jupyter: str | None) -> tuple[Path, Path]:
    """Resolve project directory and Jupyter binary to absolute paths.

    Raises:
        FileNotFoundError: either one is missing
    """
    workdir = Path(directory or project).expanduser().resolve()
    if not workdir.is_dir():
        raise FileNotFoundError(f"project directory does not exist: {workdir}")

    jupyter_bin = Path(jupyter).expanduser() if jupyter else workdir / VENV_DIR / "bin" / "jupyter"
    jupyter_bin = jupyter_bin.resolve()
    if not jupyter_bin.is_file():
        raise FileNotFoundError(f"jupyter not found: {jupyter_bin}")
    return workdir, jupyter_bin


def lab_command(jupyter_bin: Path, port: int, ip: str | None = None) -> list[str]:
    command = [str(jupyter_bin), "lab", f"--port={port}", "--no-browser", "--allow-root"]
    if ip:
        command.append(f"--ip={ip}")
    return command


# ============================================================================
# Report
# ============================================================================

def print_summary(project: str, handle: sessions.SessionHandle, jupyter_bin: Path, port: int):
    workdir = handle.workdir
    lines = [
        f"[bold]Project:[/bold]     {escape(project)}",
        f"[bold]Directory:[/bold]   {escape(workdir)}",
        f"[bold]Virtualenv:[/bold]  {escape(str(Path(workdir) / VENV_DIR))}",
        f"[bold]Jupyter:[/bold]     tmux session [cyan]{escape(handle.name)}[/cyan] on port {port}",
        "",
        "[dim]Attach to the session:[/dim]",
        f"  {escape(handle.attach_command)}",
        "[dim]Set a password (optional, one-time):[/dim]",
        escape(f"  tmux new-window -t {handle.name} -n setpass \"{jupyter_bin} lab password\""),
        "[dim]List running servers:[/dim]",
        escape(f"  tmux new-window -t {handle.name} -n servers \"{jupyter_bin} server list\""),
        "[dim]SSH port-forward from your laptop:[/dim]",
        f"  ssh -N -L {port}:localhost:{port} user@your-server",
    ]
    console.print(Panel("\n".join(lines), title="jupmux", box=box.ROUNDED, expand=False))


def print_record(record: ready.ServiceRecord):
    console.print("Server URL (raw):")
    console.print(f"  {record.raw}", highlight=False, markup=False)
    url = record.browser_url()
    if url:
        console.print()
        console.print("Open in browser after SSH port-forwarding:")
        console.print(f"  [bold green]{url}[/bold green]", highlight=False)


def dump_diagnostics(registry: sessions.SessionRegistry, name: str, tail: int = DEFAULT_TAIL):
    """Show session state for a human to act on. Never raises."""
    console.print("\n[bold]Diagnostics:[/bold]")

    console.print("1) tmux sessions:")
    try:
        listed = registry.list_sessions()
        for s in listed:
            console.print(f"   {s}", highlight=False, markup=False)
        if not listed:
            console.print("   [dim](none)[/dim]")
    except Exception as e:
        console.print(f"   [dim](unavailable: {escape(str(e))})[/dim]")

    console.print(f"\n2) Last {tail} lines from session '{name}':", markup=False)
    try:
        captured = registry.capture_pane(name, tail) if tail > 0 else []
        for line in captured:
            console.print(line, highlight=False, markup=False)
    except Exception as e:
        console.print(f"   [dim](unavailable: {escape(str(e))})[/dim]")


# ============================================================================
# Commands
# ============================================================================

def cmd_launch(args) -> int:
    if shutil.which("tmux") is None:
        error("tmux is not installed")
    try:
        workdir, jupyter_bin = resolve_paths(args.project, args.dir, args.jupyter)
        name = sessions.session_name(args.project)
    except (FileNotFoundError, ValueError) as e:
        error(str(e))

    registry = sessions.TmuxRegistry()
    command = lab_command(jupyter_bin, args.port, args.ip)
    try:
        handle = sessions.ensure_session(registry, name, workdir, command)
    except (RuntimeError, FileNotFoundError, ValueError) as e:
        error(str(e))
    console.print(f"[bold cyan]{escape(name)}[/bold cyan] [green]started[/green] [dim](port {args.port})[/dim]")

    def trace(attempt: ready.PollAttempt):
        log("POLL", attempt.to_dict())

    record = anyio.run(partial(
        ready.wait_for_server,
        ready.server_list_query(str(jupyter_bin)),
        args.port,
        max_attempts=args.attempts,
        interval=args.interval,
        on_attempt=trace if args.verbose else None,
    ))

    print_summary(args.project, handle, jupyter_bin, args.port)
    if record is not None:
        print_record(record)
        return 0

    console.print(f"[red]Could not retrieve the Jupyter URL yet (port {args.port}).[/red]")
    dump_diagnostics(registry, name, args.tail)
    console.print("\n3) Manual checks you can run:")
    console.print(f"   {handle.attach_command}", markup=False)
    console.print(f"   {jupyter_bin} server list", highlight=False, markup=False)
    return 0


def cmd_status(args) -> int:
    registry = sessions.TmuxRegistry()
    names = sessions.list_supervised(registry)
    if not names:
        console.print("[dim]no sessions[/dim]")
        console.print("[dim]jupmux launch <project>[/dim]")
        return 0
    for name in names:
        state = sessions.session_state(registry, name)
        color = "green" if state is sessions.SessionState.RUNNING else "red"
        console.print(f"[bold cyan]{escape(name)}[/bold cyan] [{color}]{state.value}[/{color}]")
    return 0


def cmd_stop(args) -> int:
    registry = sessions.TmuxRegistry()
    try:
        name = sessions.session_name(args.project)
        stopped = sessions.stop_session(registry, name)
    except (RuntimeError, ValueError) as e:
        error(str(e))
    if not stopped:
        error(f"no session {name}")
    console.print(f"[bold cyan]{escape(name)}[/bold cyan] [red]stopped[/red]")
    return 0


def cmd_url(args) -> int:
    try:
        _, jupyter_bin = resolve_paths(args.project, args.dir, args.jupyter)
    except FileNotFoundError as e:
        error(str(e))

    record = anyio.run(partial(
        ready.wait_for_server,
        ready.server_list_query(str(jupyter_bin)), args.port,
        max_attempts=1, interval=URL_TIMEOUT,
    ))
    if record is None:
        console.print(f"[dim]no server listed on port {args.port}[/dim]")
        return 0
    print_record(record)
    return 0


COMMANDS = {
    "launch": cmd_launch,
    "status": cmd_status,
    "stop": cmd_stop,
    "url": cmd_url,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Jupyter Lab in a persistent tmux session")
    sub = parser.add_subparsers(dest="command")

    def project_args(p: argparse.ArgumentParser):
        p.add_argument("project", help="Project name")
        p.add_argument("-d", "--dir", help="Project directory (default: ./<project>)")
        p.add_argument("-p", "--port", type=int, help="Jupyter port (default: $JUPMUX_PORT or 5000)")
        p.add_argument("--jupyter", help="Jupyter binary (default: <dir>/.venv/bin/jupyter)")

    launch = sub.add_parser("launch", help="Start Jupyter Lab and print its URL")
    project_args(launch)
    launch.add_argument("--ip", help="Address for Jupyter to bind")
    launch.add_argument("--attempts", type=int, default=ready.DEFAULT_ATTEMPTS, help="Readiness checks")
    launch.add_argument("--interval", type=float, default=ready.DEFAULT_INTERVAL, help="Seconds between checks")
    launch.add_argument("--tail", type=int, default=DEFAULT_TAIL, help="Pane lines in diagnostics")
    launch.add_argument("-v", "--verbose", action="store_true", help="Trace readiness checks")

    sub.add_parser("status", help="List jupmux sessions")

    stop = sub.add_parser("stop", help="Stop a project's session")
    stop.add_argument("project", help="Project name")

    url = sub.add_parser("url", help="Check once for the server URL")
    project_args(url)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        return cmd_status(args)
    if getattr(args, "attempts", 1) < 1:
        error("--attempts must be at least 1")
    if getattr(args, "tail", 1) < 1:
        error("--tail must be at least 1")
    if hasattr(args, "port") and args.port is None:
        args.port = default_port()
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
