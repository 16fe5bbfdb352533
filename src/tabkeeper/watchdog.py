"""Host-side liveness watchdog.

The host records the time of the most recent companion heartbeat and checks
its age on a fixed period. The age falls into one of three bands, each with
one recovery action:

- ``HEALTHY`` (age <= warn threshold): nothing to do.
- ``WARN`` (warn < age <= critical): make sure a companion exists and start
  one only if it is missing. A slow but living companion is left alone.
- ``CRITICAL`` (age > critical): force-close the companion and start a new
  one. The heartbeat clock is reset afterwards so the fresh companion has
  time to ramp up before the next escalation.

Companion creation is the only contended resource in the host. Every path
that may start a companion (startup, settings updates, health checks) goes
through ``ensure_companion`` or ``recreate_companion``, each guarded by an
in-flight flag so concurrent callers collapse into a single attempt.
"""

import asyncio
import os
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from tabkeeper.channel import Channel
from tabkeeper.exceptions import ChannelError, CompanionError
from tabkeeper.logging import get_logger

LOG = get_logger(__name__)

HEARTBEAT_ACTION = "heartbeat"


class HealthBand(StrEnum):
    """Staleness band of the last heartbeat."""

    HEALTHY = "healthy"
    WARN = "warn"
    CRITICAL = "critical"


def classify(idle: float, warn_threshold: float, critical_threshold: float) -> HealthBand:
    """Map a heartbeat age in seconds onto its band."""
    if idle > critical_threshold:
        return HealthBand.CRITICAL
    if idle > warn_threshold:
        return HealthBand.WARN
    return HealthBand.HEALTHY


@dataclass
class HeartbeatState:
    """Watchdog-owned liveness state. Reset on every host start.

    Attributes:
        last_heartbeat_at: Monotonic time of the latest heartbeat.
        companion_exists: Last known companion existence (re-verified on use).
        recreation_in_flight: A forced recreation is underway.
        creation_in_flight: An ensure-style creation is underway.
    """

    last_heartbeat_at: float
    companion_exists: bool = False
    recreation_in_flight: bool = False
    creation_in_flight: bool = False


@runtime_checkable
class CompanionProcess(Protocol):
    """Lifecycle operations on the companion process."""

    async def exists(self) -> bool: ...

    async def create(self) -> None:
        """Start the companion.

        Raises:
            CompanionError: If the process could not be started.
        """
        ...

    async def destroy(self) -> None: ...


class SubprocessCompanion:
    """Companion running as ``python -m tabkeeper.companion``.

    Args:
        command: Full argv; defaults to the current interpreter running the
            companion module.
        env: Extra environment for the child (merged over the parent's).
        stop_timeout: Seconds to wait after SIGTERM before killing.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self.command = command or [sys.executable, "-m", "tabkeeper.companion"]
        self.env = env
        self.stop_timeout = stop_timeout
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def exists(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def create(self) -> None:
        env = {**os.environ, **self.env} if self.env else None
        try:
            self._process = await asyncio.create_subprocess_exec(*self.command, env=env)
        except OSError as exc:
            raise CompanionError(f"Cannot start companion: {exc}") from exc
        LOG.info("companion_process_started", pid=self._process.pid)

    async def destroy(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
        except TimeoutError:
            LOG.warning("companion_process_kill", pid=process.pid)
            process.kill()
            await process.wait()
        except ProcessLookupError:
            return
        LOG.info("companion_process_stopped", pid=process.pid, returncode=process.returncode)


class LivenessWatchdog:
    """Detect heartbeat staleness and recover the companion.

    Args:
        companion: The companion process to supervise.
        warn_threshold: Heartbeat age (s) above which the cheap path runs.
        critical_threshold: Heartbeat age (s) above which recreation is forced.
        check_interval: Seconds between health checks in ``run()``.
        retry_delay: Seconds before retrying a failed companion start.
        clock: Monotonic clock, injectable for tests.
        wall_clock: Wall clock used for reply timestamps.
    """

    def __init__(
        self,
        companion: CompanionProcess,
        warn_threshold: float = 25.0,
        critical_threshold: float = 45.0,
        check_interval: float = 5.0,
        retry_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if warn_threshold >= critical_threshold:
            raise ValueError("warn_threshold must be smaller than critical_threshold")
        self.companion = companion
        self.warn_threshold = warn_threshold
        self.critical_threshold = critical_threshold
        self.check_interval = check_interval
        self.retry_delay = retry_delay
        self._clock = clock
        self._wall_clock = wall_clock
        self.state = HeartbeatState(last_heartbeat_at=clock())
        self.last_band = HealthBand.HEALTHY
        self._retry: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._stopped = asyncio.Event()

    def reset(self) -> None:
        """Forget all liveness state, as on a fresh host start."""
        self.state = HeartbeatState(last_heartbeat_at=self._clock())
        self.last_band = HealthBand.HEALTHY

    @property
    def idle(self) -> float:
        """Seconds since the last heartbeat."""
        return self._clock() - self.state.last_heartbeat_at

    def record_heartbeat(self) -> None:
        self.state.last_heartbeat_at = self._clock()

    def accept_channel(self, channel: Channel) -> None:
        """Adopt a channel opened by the companion."""

        async def _on_message(message: dict[str, Any]) -> None:
            self.record_heartbeat()
            try:
                await channel.send({"kind": "pong", "seq": message.get("seq")})
            except ChannelError as exc:
                LOG.debug("watchdog_ack_failed", error=str(exc))

        def _on_close() -> None:
            # staleness, if any, is picked up by the next health check
            LOG.info("watchdog_channel_closed", channel=channel.name)

        channel.on_message(_on_message)
        channel.on_close(_on_close)
        LOG.info("watchdog_channel_accepted", channel=channel.name)

    def accept_one_shot(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Handle a one-shot heartbeat.

        Returns:
            The "alive" acknowledgement, or None if the message is not a heartbeat.
        """
        if message.get("action") != HEARTBEAT_ACTION:
            return None
        self.record_heartbeat()
        return {"status": "alive", "timestamp": int(self._wall_clock() * 1000)}

    async def health_check(self) -> HealthBand:
        """Inspect heartbeat age and run the matching recovery action."""
        idle = self.idle
        band = classify(idle, self.warn_threshold, self.critical_threshold)
        self.last_band = band

        if band is HealthBand.CRITICAL:
            LOG.critical("heartbeat_critical", idle=round(idle, 1))
            await self.recreate_companion()
        elif band is HealthBand.WARN:
            LOG.warning("heartbeat_stale", idle=round(idle, 1))
            await self.ensure_companion()
        return band

    async def recreate_companion(self) -> None:
        """Force-close the companion and start a new one.

        A no-op while another recreation or an ensure-style creation is in
        flight; the companion being started there gets a fresh heartbeat
        window instead.
        """
        if self.state.recreation_in_flight:
            LOG.debug("companion_recreation_in_flight")
            return
        if self.state.creation_in_flight:
            LOG.debug("companion_creation_in_flight")
            self.record_heartbeat()
            return
        self.state.recreation_in_flight = True
        try:
            await self.companion.destroy()
            self.state.companion_exists = False
            await self._create()
        finally:
            # give the new companion a full window before escalating again
            self.record_heartbeat()
            self.state.recreation_in_flight = False

    async def ensure_companion(self) -> None:
        """Start the companion if it is not running. Idempotent."""
        if self.state.creation_in_flight or self.state.recreation_in_flight:
            return
        self.state.creation_in_flight = True
        try:
            if await self.companion.exists():
                self.state.companion_exists = True
                return
            self.state.companion_exists = False
            await self._create()
        finally:
            self.state.creation_in_flight = False

    async def _create(self) -> None:
        try:
            await self.companion.create()
        except CompanionError as exc:
            LOG.error("companion_create_failed", error=str(exc), retry_in=self.retry_delay)
            self._schedule_retry()
            return
        self.state.companion_exists = True

    def _schedule_retry(self) -> None:
        if self._retry is not None or self._stopped.is_set():
            return
        loop = asyncio.get_running_loop()
        self._retry = loop.call_later(self.retry_delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry = None
        task = asyncio.create_task(self.ensure_companion())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run(self) -> None:
        """Run health checks every ``check_interval`` seconds until stopped."""
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.check_interval)
            except TimeoutError:
                await self.health_check()

    async def stop(self) -> None:
        """Stop health checks and the companion."""
        self._stopped.set()
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        for task in list(self._background):
            task.cancel()
        await self.companion.destroy()
        self.state.companion_exists = False
