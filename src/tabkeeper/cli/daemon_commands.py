"""Daemon lifecycle CLI commands."""

import asyncio
import os
import signal

import typer
from rich.console import Console
from rich.panel import Panel

from tabkeeper.config import get_settings
from tabkeeper.logging import configure_logging
from tabkeeper.service import KeepAliveService
from tabkeeper.state import read_pid, read_state

console = Console()


def run_daemon() -> None:
    """Run the host daemon in the foreground."""
    if pid := read_pid():
        console.print(f"[yellow]Daemon already running (PID {pid})[/yellow]")
        raise typer.Exit(1)

    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_format == "json",
        process="host",
    )
    console.print(
        f"[cyan]tabkeeper[/cyan] listening on [dim]{settings.resolved_socket_path}[/dim], "
        f"browser at [dim]{settings.cdp_host}:{settings.cdp_port}[/dim]"
    )
    service = KeepAliveService.from_settings(settings)
    asyncio.run(service.serve())


def daemon_status() -> None:
    """Show daemon status."""
    pid = read_pid()
    state = read_state()

    if not pid:
        console.print(
            Panel(
                "[dim]Daemon is not running[/dim]",
                title="⏸ tabkeeper",
                border_style="yellow",
            )
        )
        return

    if state:
        if state.status == "armed":
            status_display = "[green]● armed[/green]"
        else:
            status_display = "[yellow]○ paused[/yellow]"

        health_colors = {"healthy": "green", "warn": "yellow", "critical": "red"}
        health_color = health_colors.get(state.health, "white")
        last = state.last_result
        if last is None:
            last_display = "[dim]none yet[/dim]"
        elif last.get("skipped"):
            last_display = "skipped (policy gate)"
        else:
            last_display = f"{last.get('success', 0)} ok, {last.get('error', 0)} failed"
        marker = f"  [{state.marker}]●[/{state.marker}] running" if state.marker else ""

        info = f"""
{status_display}  PID {pid}{marker}

[dim]Interval:[/dim]   {f"{state.interval:g} minutes" if state.interval else "-"}
[dim]Method:[/dim]     {state.method}
[dim]Companion:[/dim]  {state.companion_pid or "not running"}
[dim]Heartbeat:[/dim]  [{health_color}]{state.health}[/{health_color}]
[dim]Last pass:[/dim]  {last_display}"""
    else:
        info = f"PID {pid}\n\n[dim]State file not found[/dim]"

    console.print(Panel(info.strip(), title="🔄 tabkeeper", border_style="cyan"))


def daemon_stop() -> None:
    """Stop the daemon."""
    pid = read_pid()
    if not pid:
        console.print("[yellow]Daemon is not running[/yellow]")
        return

    try:
        os.kill(pid, signal.SIGTERM)
        console.print(f"[green]✓ Stopped daemon (PID {pid})[/green]")
    except ProcessLookupError:
        console.print("[yellow]Daemon already stopped[/yellow]")
    except PermissionError:
        console.print(f"[red]✗ Permission denied (PID {pid})[/red]")
        raise typer.Exit(1) from None
    except OSError as exc:
        console.print(f"[red]✗ Failed to stop daemon: {exc}[/red]")
        raise typer.Exit(1) from None
