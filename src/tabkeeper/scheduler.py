"""Alarm-driven keep-alive scheduler.

``AlarmRegistry`` provides named periodic triggers, the in-process
counterpart of a platform alarm API: creating an alarm under an existing
name replaces it, so there is never more than one trigger per name. Each
fire launches its callback as a separate task; clearing or replacing an
alarm stops future fires but never cancels a run that already started.

``KeepAliveScheduler`` owns the single ``"keepalive"`` alarm and re-asserts
it from scratch whenever policy changes or the host starts.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tabkeeper.executor import ActionResult
from tabkeeper.logging import get_logger
from tabkeeper.policy.model import MIN_INTERVAL

LOG = get_logger(__name__)

ALARM_NAME = "keepalive"

AlarmCallback = Callable[[], Awaitable[Any]]


@dataclass
class AlarmInfo:
    """A registered alarm.

    Attributes:
        name: Alarm name.
        delay_minutes: Minutes until the first fire.
        period_minutes: Minutes between subsequent fires.
        scheduled_at: Wall-clock time (epoch seconds) of the next fire.
        fire_count: Number of times the alarm has fired.
    """

    name: str
    delay_minutes: float
    period_minutes: float
    scheduled_at: float
    fire_count: int = 0
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class AlarmRegistry:
    """Named periodic triggers on the running event loop.

    Args:
        seconds_per_minute: Length of an alarm "minute" in seconds; tests
            shrink it to run alarms quickly.
    """

    def __init__(self, seconds_per_minute: float = 60.0) -> None:
        self.seconds_per_minute = seconds_per_minute
        self._alarms: dict[str, AlarmInfo] = {}
        self._runs: set[asyncio.Task[Any]] = set()

    def create(
        self,
        name: str,
        delay_minutes: float,
        period_minutes: float,
        callback: AlarmCallback,
    ) -> AlarmInfo:
        """Create (or replace) the alarm called ``name``."""
        self.clear(name)
        info = AlarmInfo(
            name=name,
            delay_minutes=delay_minutes,
            period_minutes=period_minutes,
            scheduled_at=time.time() + delay_minutes * self.seconds_per_minute,
        )
        info.task = asyncio.create_task(self._loop(info, callback), name=f"alarm:{name}")
        self._alarms[name] = info
        return info

    def clear(self, name: str) -> bool:
        """Remove the alarm called ``name``.

        Returns:
            True if an alarm was removed.
        """
        info = self._alarms.pop(name, None)
        if info is None:
            return False
        if info.task is not None:
            info.task.cancel()
        return True

    def clear_all(self) -> None:
        for name in list(self._alarms):
            self.clear(name)

    def get(self, name: str) -> AlarmInfo | None:
        return self._alarms.get(name)

    def names(self) -> list[str]:
        return sorted(self._alarms)

    async def wait_for_runs(self) -> None:
        """Wait for callbacks that are still running (used at shutdown)."""
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)

    async def _loop(self, info: AlarmInfo, callback: AlarmCallback) -> None:
        delay = info.delay_minutes * self.seconds_per_minute
        period = info.period_minutes * self.seconds_per_minute
        while True:
            await asyncio.sleep(delay)
            delay = period
            info.fire_count += 1
            info.scheduled_at = time.time() + period
            run = asyncio.create_task(self._fire(info.name, callback))
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    async def _fire(self, name: str, callback: AlarmCallback) -> None:
        try:
            await callback()
        except Exception:  # noqa: BLE001 - one failed fire must not stop the alarm
            LOG.exception("alarm_callback_failed", alarm=name)


class KeepAliveScheduler:
    """Recurring keep-alive trigger.

    Args:
        alarms: Registry holding the trigger.
        run: Coroutine function performing one gated keep-alive pass.
    """

    def __init__(
        self,
        alarms: AlarmRegistry,
        run: Callable[[], Awaitable[ActionResult]],
    ) -> None:
        self.alarms = alarms
        self._run = run

    @property
    def armed(self) -> bool:
        return self.alarms.get(ALARM_NAME) is not None

    @property
    def interval_minutes(self) -> float | None:
        info = self.alarms.get(ALARM_NAME)
        return info.period_minutes if info is not None else None

    def arm(self, interval_minutes: int) -> None:
        """(Re)create the trigger with ``delay = period = max(1, interval)`` minutes."""
        minutes = max(MIN_INTERVAL, interval_minutes)
        self.alarms.clear(ALARM_NAME)
        self.alarms.create(ALARM_NAME, minutes, minutes, self._on_alarm)
        LOG.info("scheduler_armed", interval_minutes=minutes)

    def disarm(self) -> None:
        if self.alarms.clear(ALARM_NAME):
            LOG.info("scheduler_disarmed")

    async def _on_alarm(self) -> None:
        result = await self._run()
        LOG.info("scheduled_keepalive_done", **result.to_dict())

    async def run_manual(self) -> ActionResult:
        """Run a keep-alive pass on demand and return its result."""
        LOG.info("manual_keepalive_requested")
        return await self._run()
