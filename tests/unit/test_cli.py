"""Tests for CLI module."""

import json
import re
import signal
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from tabkeeper.cli.main import app
from tabkeeper.cli.settings_commands import parse_hours
from tabkeeper.exceptions import ServiceNotRunningError
from tabkeeper.executor import ActionResult
from tabkeeper.policy import PolicySnapshot, PolicyStore
from tabkeeper.state import DaemonState, DaemonStatus, write_state

runner = CliRunner()


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


def offline_client() -> MagicMock:
    """Client double for a daemon that is not running."""
    client = MagicMock()
    for name in ("get_settings", "update_settings", "test_keepalive", "diagnostics", "activity_log", "clear_activity_log"):
        getattr(client, name).side_effect = ServiceNotRunningError("no socket")
    return client


class TestVersionCommand:
    """Tests for version command."""

    def test_version_command(self):
        """Test that version command outputs version info."""
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "tabkeeper" in result.output


class TestTestCommand:
    """Tests for the test command."""

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_daemon_not_running(self, mock_client):
        """Test exits with an error when the daemon is unreachable."""
        mock_client.return_value = offline_client()

        result = runner.invoke(app, ["test"])

        assert result.exit_code == 1
        assert "not running" in result.output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_reports_counts(self, mock_client):
        """Test prints success and failure counts."""
        mock_client.return_value.test_keepalive.return_value = ActionResult(success_count=2, error_count=1)

        result = runner.invoke(app, ["test"])

        assert result.exit_code == 0
        assert "2 tab(s) kept alive" in result.output
        assert "1 tab(s) failed" in result.output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_skipped(self, mock_client):
        """Test reports a pass stopped by the policy gate."""
        mock_client.return_value.test_keepalive.return_value = ActionResult(skipped=True)

        result = runner.invoke(app, ["test"])

        assert result.exit_code == 0
        assert "Skipped" in result.output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_no_eligible_tabs(self, mock_client):
        """Test reports an empty pass."""
        mock_client.return_value.test_keepalive.return_value = ActionResult()

        result = runner.invoke(app, ["test"])

        assert result.exit_code == 0
        assert "No eligible tabs" in result.output


class TestDiagnosticsCommand:
    """Tests for the diagnostics command."""

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_json(self, mock_client):
        """Test --json prints the daemon's diagnostics."""
        mock_client.return_value.diagnostics.return_value = {"heartbeat_age": 3.2, "health": "healthy"}

        result = runner.invoke(app, ["diagnostics", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"heartbeat_age": 3.2, "health": "healthy"}

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_table(self, mock_client):
        """Test the table view skips the nested policy."""
        mock_client.return_value.diagnostics.return_value = {
            "heartbeat_age": 3.2,
            "companion_pid": None,
            "policy": {"isActive": True},
        }

        result = runner.invoke(app, ["diagnostics"])

        output = strip_ansi(result.output)
        assert "heartbeat age" in output
        assert "isActive" not in output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_not_running(self, mock_client):
        mock_client.return_value = offline_client()

        result = runner.invoke(app, ["diagnostics"])

        assert result.exit_code == 1


class TestLogCommand:
    """Tests for the log command."""

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_falls_back_to_policy_file(self, mock_client, isolated_config):
        """Test reads the log from disk when the daemon is not running."""
        mock_client.return_value = offline_client()
        PolicyStore(isolated_config / "policy.json").log_activity("Pinged: Inbox")

        result = runner.invoke(app, ["log"])

        assert result.exit_code == 0
        assert "Pinged: Inbox" in result.output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_empty(self, mock_client):
        mock_client.return_value = offline_client()

        result = runner.invoke(app, ["log"])

        assert "No activity yet" in result.output

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_clear_offline(self, mock_client, isolated_config):
        """Test --clear empties the on-disk log."""
        mock_client.return_value = offline_client()
        store = PolicyStore(isolated_config / "policy.json")
        store.log_activity("Refreshed: Docs")

        result = runner.invoke(app, ["log", "--clear"])

        assert result.exit_code == 0
        assert store.activity_log() == []

    @patch("tabkeeper.cli.main.TabkeeperClient")
    def test_clear_through_daemon(self, mock_client):
        result = runner.invoke(app, ["log", "--clear"])

        assert result.exit_code == 0
        mock_client.return_value.clear_activity_log.assert_called_once()


class TestSettingsCommands:
    """Tests for settings show/set."""

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_show_json_offline(self, mock_client):
        """Test shows the saved policy when the daemon is down."""
        mock_client.return_value = offline_client()

        result = runner.invoke(app, ["settings", "show", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["refreshInterval"] == 3

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_show_table_from_daemon(self, mock_client):
        """Test renders the daemon's policy."""
        mock_client.return_value.get_settings.return_value = PolicySnapshot(
            interval_minutes=7, deny_list=("ads.net",)
        )

        result = runner.invoke(app, ["settings", "show"])

        output = strip_ansi(result.output)
        assert result.exit_code == 0
        assert "7 min" in output
        assert "ads.net" in output

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_set_through_daemon(self, mock_client):
        """Test sends only the changed keys to the daemon."""
        mock_client.return_value.update_settings.return_value = True

        result = runner.invoke(app, ["settings", "set", "-i", "5", "--method", "refresh", "--deny", "ads.net"])

        assert result.exit_code == 0
        mock_client.return_value.update_settings.assert_called_once_with(
            {"refreshInterval": 5, "keepAliveMethod": "refresh", "blacklist": ["ads.net"]}
        )
        assert "daemon" in result.output

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_set_offline_writes_policy_file(self, mock_client, isolated_config):
        """Test falls back to the policy file when the daemon is down."""
        mock_client.return_value = offline_client()

        result = runner.invoke(app, ["settings", "set", "--inactive", "--hours", "08:00-18:00"])

        assert result.exit_code == 0
        policy = PolicyStore(isolated_config / "policy.json").load()
        assert policy.active is False
        assert policy.active_hours.enabled is True
        assert policy.active_hours.start == "08:00"
        assert "policy file" in result.output

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_no_hours_keeps_window(self, mock_client, isolated_config):
        """Test --no-hours disables the window without forgetting it."""
        mock_client.return_value = offline_client()
        store = PolicyStore(isolated_config / "policy.json")
        store.save({"activeHours": {"enabled": True, "start": "07:00", "end": "19:00"}})

        result = runner.invoke(app, ["settings", "set", "--no-hours"])

        assert result.exit_code == 0
        hours = store.load().active_hours
        assert hours.enabled is False
        assert (hours.start, hours.end) == ("07:00", "19:00")

    def test_set_interval_out_of_range(self):
        result = runner.invoke(app, ["settings", "set", "-i", "0"])

        assert result.exit_code == 2

    def test_set_bad_hours(self):
        result = runner.invoke(app, ["settings", "set", "--hours", "nine-to-five"])

        assert result.exit_code == 2

    def test_set_nothing(self):
        """Test with no options changes nothing."""
        result = runner.invoke(app, ["settings", "set"])

        assert result.exit_code == 0
        assert "Nothing to change" in result.output

    @patch("tabkeeper.cli.settings_commands.TabkeeperClient")
    def test_set_save_failure(self, mock_client):
        mock_client.return_value.update_settings.return_value = False

        result = runner.invoke(app, ["settings", "set", "--active"])

        assert result.exit_code == 1


class TestParseHours:
    """Tests for parse_hours."""

    def test_valid(self):
        assert parse_hours("09:00-17:30") == ("09:00", "17:30")

    def test_tolerates_spaces(self):
        assert parse_hours(" 09:00 - 17:30 ") == ("09:00", "17:30")


class TestDaemonCommands:
    """Tests for run/status/stop."""

    def test_status_not_running(self):
        """Test status when daemon is not running."""
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "not running" in result.output

    @patch("tabkeeper.cli.daemon_commands.read_pid", return_value=1234)
    def test_status_running(self, mock_pid):
        """Test status renders the published daemon state."""
        write_state(
            DaemonState(
                status=DaemonStatus.ARMED,
                interval=5,
                method="refresh",
                companion_pid=4321,
                health="warn",
                last_result={"success": 3, "error": 1, "skipped": False},
            )
        )

        result = runner.invoke(app, ["status"])

        output = strip_ansi(result.output)
        assert result.exit_code == 0
        assert "armed" in output
        assert "5 minutes" in output
        assert "4321" in output
        assert "3 ok, 1 failed" in output

    @patch("tabkeeper.cli.daemon_commands.read_pid", return_value=1234)
    def test_status_without_state_file(self, mock_pid):
        result = runner.invoke(app, ["status"])

        assert "State file not found" in result.output

    def test_stop_not_running(self):
        result = runner.invoke(app, ["stop"])

        assert result.exit_code == 0
        assert "not running" in result.output

    @patch("tabkeeper.cli.daemon_commands.os.kill")
    @patch("tabkeeper.cli.daemon_commands.read_pid", return_value=1234)
    def test_stop_sends_sigterm(self, mock_pid, mock_kill):
        """Test stop signals the daemon."""
        result = runner.invoke(app, ["stop"])

        assert result.exit_code == 0
        mock_kill.assert_called_once_with(1234, signal.SIGTERM)

    @patch("tabkeeper.cli.daemon_commands.os.kill", side_effect=PermissionError)
    @patch("tabkeeper.cli.daemon_commands.read_pid", return_value=1234)
    def test_stop_permission_denied(self, mock_pid, mock_kill):
        result = runner.invoke(app, ["stop"])

        assert result.exit_code == 1

    @patch("tabkeeper.cli.daemon_commands.read_pid", return_value=1234)
    def test_run_refuses_second_daemon(self, mock_pid):
        """Test run exits when a daemon is already running."""
        result = runner.invoke(app, ["run"])

        assert result.exit_code == 1
        assert "already running" in result.output

    @patch("tabkeeper.cli.daemon_commands.asyncio.run")
    @patch("tabkeeper.cli.daemon_commands.KeepAliveService")
    def test_run_starts_service(self, mock_service, mock_run):
        """Test run builds the service from settings and serves it."""
        mock_run.side_effect = lambda coro: None

        result = runner.invoke(app, ["run"])

        assert result.exit_code == 0
        mock_service.from_settings.assert_called_once()
        mock_run.assert_called_once_with(mock_service.from_settings.return_value.serve.return_value)
