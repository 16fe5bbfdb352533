"""Gated keep-alive executor.

One ``perform()`` call is one keep-alive pass: evaluate the policy gate,
enumerate tabs, filter them by the allow/deny lists, show the activity
marker, dispatch the configured action to each eligible tab in turn, and
record the outcome. Tabs are handled sequentially so a pass never floods
the browser; a failing tab is counted and the loop moves on.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tabkeeper.exceptions import BrowserError, DispatchError
from tabkeeper.logging import get_logger
from tabkeeper.policy.model import KeepAliveMethod, PolicySnapshot
from tabkeeper.policy.store import PolicyStore
from tabkeeper.power import on_battery_power
from tabkeeper.targets import Target, TargetSource, is_internal_url

LOG = get_logger(__name__)

MARKER_COLORS = {
    KeepAliveMethod.PING: "#4CAF50",
    KeepAliveMethod.REFRESH: "#FF6B35",
}


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one keep-alive pass.

    Attributes:
        success_count: Tabs that accepted the action.
        error_count: Tabs that failed or did not acknowledge.
        skipped: True if the policy gate stopped the pass before enumeration.
    """

    success_count: int = 0
    error_count: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success_count, "error": self.error_count, "skipped": self.skipped}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionResult":
        return cls(
            success_count=int(data.get("success", 0)),
            error_count=int(data.get("error", 0)),
            skipped=bool(data.get("skipped", False)),
        )


@dataclass(frozen=True)
class Marker:
    """Transient indicator that a pass is running."""

    method: KeepAliveMethod
    color: str
    shown_at: float


class ActivityMarker:
    """Short-lived "keep-alive in progress" marker, one look per method.

    Args:
        clear_delay: Seconds before the marker clears itself.
        on_change: Called with the new marker (or None when cleared).
    """

    def __init__(
        self,
        clear_delay: float = 3.0,
        on_change: Callable[[Marker | None], None] | None = None,
    ) -> None:
        self.clear_delay = clear_delay
        self.on_change = on_change
        self.current: Marker | None = None
        self._clear_handle: asyncio.TimerHandle | None = None

    def show(self, method: KeepAliveMethod) -> Marker:
        """Show the marker for ``method`` and schedule its automatic clear."""
        if self._clear_handle is not None:
            self._clear_handle.cancel()
        self.current = Marker(method=method, color=MARKER_COLORS[method], shown_at=time.time())
        self._notify()
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(self.clear_delay, self.clear)
        return self.current

    def clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        if self.current is None:
            return
        self.current = None
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.current)


def is_eligible(target: Target, policy: PolicySnapshot) -> bool:
    """Apply the allow/deny lists to a tab.

    A non-empty allow list wins outright: only hosts containing one of its
    entries are eligible and the deny list is not consulted.
    """
    host = target.host
    if policy.allow_list:
        return any(entry in host for entry in policy.allow_list)
    if policy.deny_list:
        return not any(entry in host for entry in policy.deny_list)
    return True


class GatedActionExecutor:
    """Run gated keep-alive passes against the browser's tabs.

    Args:
        store: Policy store; read at the start of every pass and appended to
            afterwards.
        targets: Source of tabs and per-tab actions.
        marker: Activity marker shown during a pass.
        dispatch_timeout: Seconds allowed per tab (None for no limit).
        power: Returns True on battery, False on mains, None if unknown.
        now: Local wall clock used for the active-hours window.
    """

    def __init__(
        self,
        store: PolicyStore,
        targets: TargetSource,
        marker: ActivityMarker | None = None,
        *,
        dispatch_timeout: float | None = 30.0,
        power: Callable[[], bool | None] = on_battery_power,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.targets = targets
        self.marker = marker or ActivityMarker()
        self.dispatch_timeout = dispatch_timeout
        self._power = power
        self._now = now
        self.last_result: ActionResult | None = None
        self.last_run_at: float | None = None

    def should_run(self, policy: PolicySnapshot, now: datetime | None = None) -> bool:
        """Evaluate the policy gate for this moment."""
        if not policy.active:
            return False

        if policy.active_hours.enabled:
            time_of_day = (now or self._now()).strftime("%H:%M")
            if not policy.active_hours.contains(time_of_day):
                LOG.info(
                    "keepalive_outside_active_hours",
                    now=time_of_day,
                    start=policy.active_hours.start,
                    end=policy.active_hours.end,
                )
                return False

        # an unreadable power signal never blocks on its own
        if policy.battery_saver and self._power() is True:
            LOG.info("keepalive_battery_saver")
            return False

        return True

    async def perform(self) -> ActionResult:
        """Run one keep-alive pass and return its outcome."""
        policy = self.store.load()
        if not self.should_run(policy):
            return self._finish(ActionResult(skipped=True))

        try:
            targets = await self.targets.list_targets()
        except BrowserError as exc:
            LOG.warning("keepalive_targets_unavailable", error=str(exc))
            targets = []

        eligible = [t for t in targets if not is_internal_url(t.url) and is_eligible(t, policy)]
        LOG.info(
            "keepalive_starting",
            method=policy.method.value,
            tabs=len(targets),
            eligible=len(eligible),
        )

        self.marker.show(policy.method)

        succeeded: list[Target] = []
        errors = 0
        for target in eligible:
            try:
                await self._dispatch(target, policy.method)
            except DispatchError as exc:
                errors += 1
                LOG.warning(
                    "keepalive_dispatch_failed",
                    method=policy.method.value,
                    tab=target.id,
                    error=str(exc),
                )
            else:
                succeeded.append(target)

        verb = "Refreshed" if policy.method is KeepAliveMethod.REFRESH else "Pinged"
        for target in succeeded:
            self.store.log_activity(f"{verb}: {target.title or target.url}")

        result = ActionResult(success_count=len(succeeded), error_count=errors)
        LOG.info("keepalive_completed", **result.to_dict())
        return self._finish(result)

    async def _dispatch(self, target: Target, method: KeepAliveMethod) -> None:
        if method is KeepAliveMethod.REFRESH:
            action = self.targets.reload(target)
        else:
            action = self.targets.ping(target)
        try:
            await asyncio.wait_for(action, timeout=self.dispatch_timeout)
        except TimeoutError as exc:
            raise DispatchError(
                f"No response within {self.dispatch_timeout}s", target_id=target.id
            ) from exc
        LOG.debug("keepalive_dispatched", method=method.value, tab=target.id)

    def _finish(self, result: ActionResult) -> ActionResult:
        self.last_result = result
        self.last_run_at = time.time()
        return result
