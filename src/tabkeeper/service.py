"""The tabkeeper host daemon.

``KeepAliveService`` wires the policy store, gated executor, scheduler and
liveness watchdog together behind a single Unix socket. The same socket
carries the companion's heartbeat channel, the companion's one-shot
heartbeats and the CLI's requests.

Host state other than the persisted policy does not survive a restart:
every start re-reads the policy, re-arms the trigger from scratch and makes
sure a companion is running.
"""

import asyncio
import signal
from enum import StrEnum
from pathlib import Path
from typing import Any

from tabkeeper.channel import HEARTBEAT_CHANNEL, Channel, ChannelServer
from tabkeeper.config import TabkeeperSettings
from tabkeeper.executor import ActionResult, ActivityMarker, GatedActionExecutor, Marker
from tabkeeper.logging import get_logger
from tabkeeper.policy.model import PolicySnapshot
from tabkeeper.policy.store import PolicyStore
from tabkeeper.scheduler import ALARM_NAME, AlarmRegistry, KeepAliveScheduler
from tabkeeper.state import DaemonState, DaemonStatus, remove_pid, write_pid, write_state
from tabkeeper.targets import CDPTargetSource
from tabkeeper.watchdog import LivenessWatchdog, SubprocessCompanion

LOG = get_logger(__name__)


class Action(StrEnum):
    """Request actions understood by the host."""

    GET_SETTINGS = "get_settings"
    UPDATE_SETTINGS = "update_settings"
    TEST_KEEPALIVE = "test_keepalive"
    HEARTBEAT = "heartbeat"
    PING = "ping"
    DIAGNOSTICS = "diagnostics"
    GET_ACTIVITY_LOG = "get_activity_log"
    CLEAR_ACTIVITY_LOG = "clear_activity_log"


class KeepAliveService:
    """Host process: request surface, scheduler and watchdog.

    Args:
        store: Persisted policy.
        executor: Gated keep-alive executor.
        watchdog: Companion liveness watchdog.
        socket_path: Unix socket to listen on.
        alarms: Alarm registry for the scheduler (a fresh one by default).
        publish_state: Write the daemon state file for ``tabkeeper status``.
    """

    def __init__(
        self,
        store: PolicyStore,
        executor: GatedActionExecutor,
        watchdog: LivenessWatchdog,
        socket_path: Path,
        alarms: AlarmRegistry | None = None,
        publish_state: bool = True,
    ) -> None:
        self.store = store
        self.executor = executor
        self.watchdog = watchdog
        self.scheduler = KeepAliveScheduler(alarms or AlarmRegistry(), self._run_pass)
        self.server = ChannelServer(socket_path, self._on_channel, self.handle_request)
        self.publish_state = publish_state
        self.executor.marker.on_change = self._on_marker
        self._watchdog_task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: TabkeeperSettings) -> "KeepAliveService":
        """Build a service with the real browser and companion process."""
        socket_path = settings.resolved_socket_path
        store = PolicyStore(settings.policy_path)
        executor = GatedActionExecutor(
            store,
            CDPTargetSource(settings.cdp_host, settings.cdp_port),
            ActivityMarker(settings.marker_clear_delay),
            dispatch_timeout=settings.dispatch_timeout,
        )
        companion = SubprocessCompanion(
            env={
                "TABKEEPER_CONFIG_DIR": str(settings.config_dir),
                "TABKEEPER_SOCKET_PATH": str(socket_path),
            }
        )
        watchdog = LivenessWatchdog(
            companion,
            warn_threshold=settings.warn_threshold,
            critical_threshold=settings.critical_threshold,
            check_interval=settings.health_check_interval,
            retry_delay=settings.companion_retry_delay,
        )
        return cls(store, executor, watchdog, socket_path)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Listen on the socket, run startup and begin health checks."""
        install = not self.store.path.exists()
        await self.server.start()
        await self.startup("install" if install else "startup")
        self._watchdog_task = asyncio.create_task(self.watchdog.run(), name="watchdog")

    async def startup(self, reason: str = "startup") -> None:
        """Re-assert the desired state after a host (re)start.

        Args:
            reason: "install" on first run (writes default policy), else "startup".
        """
        self.watchdog.reset()
        policy = self.store.load()
        if reason == "install":
            self.store.save(policy)
        LOG.info("host_startup", reason=reason, active=policy.active)
        self.apply_policy(policy)
        await self.watchdog.ensure_companion()
        self._publish()

    def apply_policy(self, policy: PolicySnapshot) -> None:
        """Arm or disarm the scheduler to match the policy."""
        if policy.active:
            self.scheduler.arm(policy.interval_minutes)
        else:
            self.scheduler.disarm()

    async def serve(self) -> None:
        """Run until SIGTERM/SIGINT or ``stop()``."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._stop.set)
        write_pid()
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.shutdown()
            remove_pid()

    def stop(self) -> None:
        self._stop.set()

    async def shutdown(self) -> None:
        """Stop timers, let an in-flight pass finish, stop the companion."""
        self.scheduler.disarm()
        self.scheduler.alarms.clear_all()
        await self.scheduler.alarms.wait_for_runs()
        await self.watchdog.stop()
        if self._watchdog_task is not None:
            await self._watchdog_task
            self._watchdog_task = None
        await self.server.close()
        close = getattr(self.executor.targets, "close", None)
        if close is not None:
            await close()
        LOG.info("host_stopped")

    # -- requests ----------------------------------------------------------

    def _on_channel(self, channel: Channel) -> None:
        if channel.name != HEARTBEAT_CHANNEL:
            LOG.warning("channel_name_unknown", channel=channel.name)
        self.watchdog.accept_channel(channel)

    async def handle_request(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer a one-shot request from the companion or the CLI."""
        action = message.get("action")

        if action == Action.HEARTBEAT:
            return self.watchdog.accept_one_shot(message) or {}
        if action == Action.PING:
            return {"status": "pong"}
        if action == Action.GET_SETTINGS:
            return self.get_settings()
        if action == Action.UPDATE_SETTINGS:
            settings = message.get("settings")
            if not isinstance(settings, dict):
                return {"success": False, "error": "settings must be an object"}
            return await self.update_settings(settings)
        if action == Action.TEST_KEEPALIVE:
            result = await self.scheduler.run_manual()
            return result.to_dict()
        if action == Action.DIAGNOSTICS:
            return self.diagnostics()
        if action == Action.GET_ACTIVITY_LOG:
            return {"entries": [entry.to_dict() for entry in self.store.activity_log()]}
        if action == Action.CLEAR_ACTIVITY_LOG:
            return {"success": self.store.clear_activity_log()}

        LOG.warning("request_action_unknown", action=action)
        return {"error": f"unknown action: {action}"}

    def get_settings(self) -> dict[str, Any]:
        return self.store.load().to_dict()

    async def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        """Persist a settings update and re-assert scheduler and companion state."""
        ok = self.store.save(partial)
        policy = self.store.load()
        LOG.info("settings_updated", success=ok, active=policy.active, interval=policy.interval_minutes)
        self.apply_policy(policy)
        await self.watchdog.ensure_companion()
        self._publish()
        return {"success": ok}

    def diagnostics(self) -> dict[str, Any]:
        """Liveness and scheduling details for troubleshooting."""
        alarm = self.scheduler.alarms.get(ALARM_NAME)
        last = self.executor.last_result
        return {
            "heartbeat_age": round(self.watchdog.idle, 1),
            "health": self.watchdog.last_band.value,
            "companion_running": self.watchdog.state.companion_exists,
            "companion_pid": getattr(self.watchdog.companion, "pid", None),
            "recreation_in_flight": self.watchdog.state.recreation_in_flight,
            "armed": alarm is not None,
            "interval_minutes": alarm.period_minutes if alarm else None,
            "next_tick_at": alarm.scheduled_at if alarm else None,
            "last_result": last.to_dict() if last else None,
            "last_run_at": self.executor.last_run_at,
            "policy": self.store.load().to_dict(),
            "policy_error": str(self.store.last_error) if self.store.last_error else None,
        }

    # -- internals ---------------------------------------------------------

    async def _run_pass(self) -> ActionResult:
        result = await self.executor.perform()
        self._publish()
        return result

    def _on_marker(self, marker: Marker | None) -> None:
        self._publish()

    def _publish(self) -> None:
        if not self.publish_state:
            return
        policy = self.store.load()
        marker = self.executor.marker.current
        last = self.executor.last_result
        state = DaemonState(
            status=DaemonStatus.ARMED if self.scheduler.armed else DaemonStatus.PAUSED,
            interval=self.scheduler.interval_minutes,
            method=policy.method.value,
            companion_pid=getattr(self.watchdog.companion, "pid", None),
            health=self.watchdog.last_band.value,
            marker=marker.color if marker else "",
            last_result=last.to_dict() if last else None,
            last_run_at=self.executor.last_run_at,
        )
        try:
            write_state(state)
        except OSError as exc:
            LOG.warning("state_write_failed", error=str(exc))
