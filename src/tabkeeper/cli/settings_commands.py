"""Policy settings CLI commands.

Changes go through the running daemon so it can re-arm its trigger right
away. When no daemon is running they are written to the policy file and
picked up on the next start.
"""

import json
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from tabkeeper import console as tk_console
from tabkeeper.client import TabkeeperClient
from tabkeeper.config import get_settings
from tabkeeper.exceptions import ServiceNotRunningError, TabkeeperError
from tabkeeper.policy.model import (
    KEY_ACTIVE_HOURS,
    KEY_BATTERY_SAVER,
    KEY_BLACKLIST,
    KEY_IS_ACTIVE,
    KEY_METHOD,
    KEY_REFRESH_INTERVAL,
    KEY_WHITELIST,
    MAX_INTERVAL,
    MIN_INTERVAL,
    KeepAliveMethod,
    PolicySnapshot,
    is_valid_time,
)
from tabkeeper.policy.store import PolicyStore

console = Console()

settings_app = typer.Typer(
    name="settings",
    help="Show or change the keep-alive policy.",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _local_store() -> PolicyStore:
    return PolicyStore(get_settings().policy_path)


def load_policy() -> tuple[PolicySnapshot, bool]:
    """Load policy from the daemon, or from disk if it is not running.

    Returns:
        (policy, from_daemon)
    """
    try:
        return TabkeeperClient().get_settings(), True
    except ServiceNotRunningError:
        return _local_store().load(), False


def parse_hours(value: str) -> tuple[str, str]:
    """Parse ``HH:MM-HH:MM`` into (start, end)."""
    start, sep, end = value.partition("-")
    start, end = start.strip(), end.strip()
    if not sep or not is_valid_time(start) or not is_valid_time(end):
        raise typer.BadParameter("expected HH:MM-HH:MM, e.g. 09:00-17:00", param_hint="--hours")
    if start >= end:
        raise typer.BadParameter("start must be before end", param_hint="--hours")
    return start, end


@settings_app.command("show")
def settings_show(
    json_output: Annotated[bool, typer.Option("--json", help="Output raw JSON")] = False,
) -> None:
    """Show the current policy."""
    policy, from_daemon = load_policy()

    if json_output:
        console.print_json(json.dumps(policy.to_dict()))
        return

    table = Table(
        title="Keep-Alive Policy",
        title_style="bold",
        header_style="bold cyan",
        border_style="dim",
        show_header=False,
    )
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")

    hours = policy.active_hours
    table.add_row("Active", "[green]yes[/green]" if policy.active else "[red]no[/red]")
    table.add_row("Interval", f"{policy.interval_minutes} min")
    table.add_row("Method", policy.method.value)
    table.add_row("Allow list", ", ".join(policy.allow_list) or "[dim]-[/dim]")
    table.add_row("Deny list", ", ".join(policy.deny_list) or "[dim]-[/dim]")
    table.add_row("Active hours", f"{hours.start}-{hours.end}" if hours.enabled else "[dim]always[/dim]")
    table.add_row("Battery saver", "on" if policy.battery_saver else "off")
    console.print(table)

    if not from_daemon:
        tk_console.info("daemon not running; showing the saved policy file")


@settings_app.command("set")
def settings_set(
    active: Annotated[
        bool | None,
        typer.Option("--active/--inactive", help="Turn keep-alive on or off"),
    ] = None,
    interval: Annotated[
        int | None,
        typer.Option(
            "--interval",
            "-i",
            min=MIN_INTERVAL,
            max=MAX_INTERVAL,
            help="Minutes between keep-alive passes",
        ),
    ] = None,
    method: Annotated[
        KeepAliveMethod | None,
        typer.Option("--method", "-m", help="ping (nudge the page) or refresh (reload it)"),
    ] = None,
    allow: Annotated[
        list[str] | None,
        typer.Option("--allow", help="Only keep these domains alive (repeatable)"),
    ] = None,
    deny: Annotated[
        list[str] | None,
        typer.Option("--deny", help="Never touch these domains (repeatable)"),
    ] = None,
    clear_lists: Annotated[
        bool,
        typer.Option("--clear-lists", help="Empty both the allow and deny lists"),
    ] = False,
    hours: Annotated[
        str | None,
        typer.Option("--hours", help="Only run between HH:MM-HH:MM"),
    ] = None,
    no_hours: Annotated[
        bool,
        typer.Option("--no-hours", help="Run at any time of day"),
    ] = False,
    battery_saver: Annotated[
        bool | None,
        typer.Option("--battery-saver/--no-battery-saver", help="Skip passes on battery"),
    ] = None,
) -> None:
    """Change one or more policy settings."""
    partial: dict[str, Any] = {}
    if active is not None:
        partial[KEY_IS_ACTIVE] = active
    if interval is not None:
        partial[KEY_REFRESH_INTERVAL] = interval
    if method is not None:
        partial[KEY_METHOD] = method.value
    if clear_lists:
        partial[KEY_WHITELIST] = []
        partial[KEY_BLACKLIST] = []
    if allow:
        partial[KEY_WHITELIST] = allow
    if deny:
        partial[KEY_BLACKLIST] = deny
    if battery_saver is not None:
        partial[KEY_BATTERY_SAVER] = battery_saver
    if hours is not None and no_hours:
        raise typer.BadParameter("use either --hours or --no-hours", param_hint="--hours")
    if hours is not None:
        start, end = parse_hours(hours)
        partial[KEY_ACTIVE_HOURS] = {"enabled": True, "start": start, "end": end}
    elif no_hours:
        current, _ = load_policy()
        partial[KEY_ACTIVE_HOURS] = {**current.active_hours.to_dict(), "enabled": False}

    if not partial:
        tk_console.warn("Nothing to change")
        raise typer.Exit(0)

    try:
        ok = TabkeeperClient().update_settings(partial)
        where = "daemon"
    except ServiceNotRunningError:
        ok = _local_store().save(partial)
        where = "policy file"
    except TabkeeperError as exc:
        tk_console.error(f"Update failed: {exc}")
        raise typer.Exit(1) from None

    if not ok:
        tk_console.error(f"Could not save settings to the {where}")
        raise typer.Exit(1)
    tk_console.success(f"Updated {', '.join(sorted(partial))} ({where})")
