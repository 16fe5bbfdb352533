"""tabkeeper CLI - keep browser sessions from timing out.

Run the daemon, inspect it, and change its policy from the terminal.
"""

import json
import os
from datetime import datetime
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

import tabkeeper
from tabkeeper import console as tk_console
from tabkeeper.cli.daemon_commands import daemon_status, daemon_stop, run_daemon
from tabkeeper.cli.settings_commands import settings_app
from tabkeeper.client import TabkeeperClient
from tabkeeper.config import get_settings
from tabkeeper.exceptions import ServiceNotRunningError, TabkeeperError
from tabkeeper.logging import configure_logging
from tabkeeper.policy.store import PolicyStore

# Configure logging early using env vars directly. The -v/-vv and
# --log-format flags in main_callback() may reconfigure later.
configure_logging(
    level=os.environ.get("TABKEEPER_LOG_LEVEL", "WARNING"),
    json_output=os.environ.get("TABKEEPER_LOG_FORMAT", "console") == "json",
)

app = typer.Typer(
    name="tabkeeper",
    help="""
    🔄 tabkeeper - keep browser sessions from timing out

    Periodically pings or refreshes your Chrome tabs, within the hours
    and domains you choose.

    \b
    Quick start:
      google-chrome --remote-debugging-port=9222
      tabkeeper run                    Start the daemon
      tabkeeper settings set -i 5      Keep tabs alive every 5 minutes
      tabkeeper test                   Run one pass right now
    """,
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)
app.add_typer(settings_app, name="settings")
console = tk_console.out_console


@app.callback(invoke_without_command=True)
def main_callback(
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose",
            "-v",
            count=True,
            help="Increase verbosity (-v for info, -vv for debug)",
        ),
    ] = 0,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log output format: console (human-readable) or json (structured)",
        ),
    ] = None,
) -> None:
    """tabkeeper - keep browser sessions from timing out."""
    settings = get_settings()
    if log_format is not None:
        settings.log_format = log_format
    if verbose >= 2:
        settings.log_level = "DEBUG"
    elif verbose >= 1:
        settings.log_level = "INFO"

    if verbose or log_format is not None:
        # the companion process reads these through its own settings
        os.environ["TABKEEPER_LOG_LEVEL"] = settings.log_level
        os.environ["TABKEEPER_LOG_FORMAT"] = settings.log_format
        configure_logging(level=settings.log_level, json_output=settings.log_format == "json")


@app.command("version")
def version() -> None:
    """Show tabkeeper version and installation info."""
    settings = get_settings()
    console.print(
        Panel(
            f"[bold cyan]tabkeeper[/bold cyan] v{tabkeeper.__version__}\n\n"
            f"[dim]Config:[/dim]  {settings.config_dir}\n"
            f"[dim]Socket:[/dim]  {settings.resolved_socket_path}\n"
            f"[dim]Browser:[/dim] {settings.cdp_host}:{settings.cdp_port}",
            title="Keep browser sessions alive",
            border_style="cyan",
        )
    )


@app.command("run")
def run() -> None:
    """Run the keep-alive daemon in the foreground."""
    run_daemon()


@app.command("status")
def status() -> None:
    """Show daemon status."""
    daemon_status()


@app.command("stop")
def stop() -> None:
    """Stop the daemon."""
    daemon_stop()


@app.command("test")
def test_keepalive() -> None:
    """Run one keep-alive pass now and report the result."""
    try:
        result = TabkeeperClient().test_keepalive()
    except ServiceNotRunningError:
        tk_console.error("Daemon is not running (start it with: tabkeeper run)")
        raise typer.Exit(1) from None
    except TabkeeperError as exc:
        tk_console.error(f"Test failed: {exc}")
        raise typer.Exit(1) from None

    if result.skipped:
        tk_console.warn("Skipped: keep-alive is off, outside active hours, or on battery")
        return
    if result.success_count == 0 and result.error_count == 0:
        tk_console.info("No eligible tabs")
        return
    tk_console.success(f"{result.success_count} tab(s) kept alive")
    if result.error_count:
        tk_console.warn(f"{result.error_count} tab(s) failed")


@app.command("diagnostics")
def diagnostics(
    json_output: Annotated[bool, typer.Option("--json", help="Output raw JSON")] = False,
) -> None:
    """Show heartbeat and scheduling diagnostics from the running daemon."""
    try:
        info = TabkeeperClient().diagnostics()
    except ServiceNotRunningError:
        tk_console.error("Daemon is not running")
        raise typer.Exit(1) from None

    if json_output:
        console.print_json(json.dumps(info))
        return

    table = Table(title="Diagnostics", header_style="bold cyan", border_style="dim", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for key, value in info.items():
        if key == "policy":
            continue
        table.add_row(key.replace("_", " "), "-" if value is None else str(value))
    console.print(table)


@app.command("log")
def activity_log(
    clear: Annotated[bool, typer.Option("--clear", help="Clear the activity log")] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
) -> None:
    """Show the activity log (newest first)."""
    client = TabkeeperClient()
    try:
        if clear:
            client.clear_activity_log()
            tk_console.success("Activity log cleared")
            return
        entries = client.activity_log()
    except ServiceNotRunningError:
        store = PolicyStore(get_settings().policy_path)
        if clear:
            store.clear_activity_log()
            tk_console.success("Activity log cleared")
            return
        entries = store.activity_log()

    if not entries:
        console.print("[dim]No activity yet.[/dim]")
        return

    table = Table(title="Activity", header_style="bold cyan", border_style="dim")
    table.add_column("When", style="dim")
    table.add_column("What", style="white")
    for entry in entries[:limit]:
        when = datetime.fromtimestamp(entry.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(when, entry.message)
    console.print(table)
