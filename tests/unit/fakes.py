"""Test doubles shared by unit tests."""

from datetime import datetime
from typing import Any

from tabkeeper.exceptions import CompanionError, DispatchError
from tabkeeper.targets import Target


class FakeTargetSource:
    """In-memory TargetSource recording every dispatch.

    Args:
        targets: Tabs returned by list_targets().
        failing: Tab ids whose dispatch raises DispatchError.
    """

    def __init__(self, targets: list[Target] | None = None, failing: set[str] | None = None) -> None:
        self.targets = list(targets or [])
        self.failing = failing or set()
        self.list_calls = 0
        self.reloaded: list[str] = []
        self.pinged: list[str] = []

    async def list_targets(self) -> list[Target]:
        self.list_calls += 1
        return list(self.targets)

    async def reload(self, target: Target) -> None:
        if target.id in self.failing:
            raise DispatchError("reload refused", target_id=target.id)
        self.reloaded.append(target.id)

    async def ping(self, target: Target) -> dict[str, Any]:
        if target.id in self.failing:
            raise DispatchError("no listener", target_id=target.id)
        self.pinged.append(target.id)
        return {"success": True, "url": target.url, "title": target.title}


class FakeCompanion:
    """CompanionProcess double counting lifecycle calls."""

    def __init__(self, alive: bool = False, fail_create: bool = False) -> None:
        self.alive = alive
        self.fail_create = fail_create
        self.created = 0
        self.destroyed = 0
        self.pid: int | None = 4242 if alive else None

    async def exists(self) -> bool:
        return self.alive

    async def create(self) -> None:
        if self.fail_create:
            raise CompanionError("spawn failed")
        self.created += 1
        self.alive = True
        self.pid = 4242

    async def destroy(self) -> None:
        self.destroyed += 1
        self.alive = False
        self.pid = None


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def at(hhmm: str) -> datetime:
    """Local datetime today at HH:MM."""
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime(2026, 3, 2, hour, minute)


def tab(tab_id: str, url: str, title: str = "") -> Target:
    return Target(id=tab_id, url=url, title=title or tab_id)
