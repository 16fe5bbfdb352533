"""Keep-alive policy types, persisted keys and defaults.

A ``PolicySnapshot`` is the immutable view of the user's settings that a
single scheduler tick or request works from. It is rebuilt from the policy
store each time and is never mutated in place; updates produce a new
snapshot via ``with_updates``.
"""

import re
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Persisted key names, shared with any other tool that reads policy.json
KEY_IS_ACTIVE = "isActive"
KEY_REFRESH_INTERVAL = "refreshInterval"
KEY_METHOD = "keepAliveMethod"
KEY_WHITELIST = "whitelist"
KEY_BLACKLIST = "blacklist"
KEY_ACTIVE_HOURS = "activeHours"
KEY_BATTERY_SAVER = "batterySaver"
KEY_ACTIVITY_LOG = "activityLog"

POLICY_KEYS = (
    KEY_IS_ACTIVE,
    KEY_REFRESH_INTERVAL,
    KEY_METHOD,
    KEY_WHITELIST,
    KEY_BLACKLIST,
    KEY_ACTIVE_HOURS,
    KEY_BATTERY_SAVER,
)

MIN_INTERVAL = 1
MAX_INTERVAL = 60
MAX_LOG_ENTRIES = 50

DEFAULT_INTERVAL = 3
DEFAULT_START = "09:00"
DEFAULT_END = "17:00"

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class KeepAliveMethod(StrEnum):
    """How a tab is kept alive."""

    PING = "ping"
    REFRESH = "refresh"


def clamp_interval(value: Any) -> int:
    """Coerce an interval in minutes into [MIN_INTERVAL, MAX_INTERVAL].

    Non-numeric values fall back to the default interval.
    """
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL
    return max(MIN_INTERVAL, min(MAX_INTERVAL, minutes))


def is_valid_time(value: Any) -> bool:
    """Check that value is a zero-padded 24h ``HH:MM`` string."""
    return isinstance(value, str) and bool(_TIME_RE.match(value))


def _as_bool(value: Any, default: bool) -> bool:
    # "false" and 0 are not switches; only real JSON booleans count
    return value if isinstance(value, bool) else default


@dataclass(frozen=True)
class ActiveHours:
    """Daily window in which keep-alive actions may run.

    Times are ``HH:MM`` strings; the window is ``[start, end)``.
    """

    enabled: bool = False
    start: str = DEFAULT_START
    end: str = DEFAULT_END

    def contains(self, time_of_day: str) -> bool:
        """Return True if the ``HH:MM`` time falls inside the window.

        Zero-padded times compare correctly as strings, so no parsing is needed.
        """
        return self.start <= time_of_day < self.end

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: Any) -> "ActiveHours":
        """Build from a persisted mapping, replacing invalid parts with defaults."""
        if not isinstance(data, dict):
            return cls()
        start = data.get("start", DEFAULT_START)
        end = data.get("end", DEFAULT_END)
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            start=start if is_valid_time(start) else DEFAULT_START,
            end=end if is_valid_time(end) else DEFAULT_END,
        )


def _domain_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item.strip().lower() for item in value if isinstance(item, str) and item.strip())


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable view of the keep-alive settings for one tick or request.

    Attributes:
        active: Master switch; nothing runs when False.
        interval_minutes: Minutes between scheduled ticks (1..60).
        method: Action dispatched to each eligible tab.
        allow_list: If non-empty, only hosts containing one of these run.
        deny_list: Hosts containing one of these are skipped (ignored when
            allow_list is non-empty).
        active_hours: Optional daily time window.
        battery_saver: Skip ticks while running on battery power.
    """

    active: bool = True
    interval_minutes: int = DEFAULT_INTERVAL
    method: KeepAliveMethod = KeepAliveMethod.PING
    allow_list: tuple[str, ...] = ()
    deny_list: tuple[str, ...] = ()
    active_hours: ActiveHours = field(default_factory=ActiveHours)
    battery_saver: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted key layout."""
        return {
            KEY_IS_ACTIVE: self.active,
            KEY_REFRESH_INTERVAL: self.interval_minutes,
            KEY_METHOD: self.method.value,
            KEY_WHITELIST: list(self.allow_list),
            KEY_BLACKLIST: list(self.deny_list),
            KEY_ACTIVE_HOURS: self.active_hours.to_dict(),
            KEY_BATTERY_SAVER: self.battery_saver,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicySnapshot":
        """Create a snapshot from persisted keys merged over the defaults.

        Args:
            data: Mapping using the persisted key names. Missing or malformed
                values fall back to defaults and unknown keys are ignored, so
                the result never has an undefined field.

        Returns:
            PolicySnapshot instance.
        """
        defaults = cls()
        method = data.get(KEY_METHOD, defaults.method)
        try:
            method = KeepAliveMethod(method)
        except ValueError:
            method = defaults.method
        return cls(
            active=_as_bool(data.get(KEY_IS_ACTIVE), defaults.active),
            interval_minutes=clamp_interval(data.get(KEY_REFRESH_INTERVAL, defaults.interval_minutes)),
            method=method,
            allow_list=_domain_list(data.get(KEY_WHITELIST, [])),
            deny_list=_domain_list(data.get(KEY_BLACKLIST, [])),
            active_hours=ActiveHours.from_dict(data.get(KEY_ACTIVE_HOURS)),
            battery_saver=_as_bool(data.get(KEY_BATTERY_SAVER), defaults.battery_saver),
        )

    def with_updates(self, partial: dict[str, Any]) -> "PolicySnapshot":
        """Return a new snapshot with persisted-key updates applied."""
        merged = self.to_dict()
        merged.update({k: v for k, v in partial.items() if k in POLICY_KEYS})
        return self.from_dict(merged)


@dataclass(frozen=True)
class ActivityLogEntry:
    """One line of the user-facing activity log.

    Attributes:
        timestamp: Milliseconds since the epoch.
        message: Human-readable description.
    """

    timestamp: int
    message: str

    @classmethod
    def now(cls, message: str) -> "ActivityLogEntry":
        return cls(timestamp=int(time.time() * 1000), message=message)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message}

    @classmethod
    def from_dict(cls, data: Any) -> "ActivityLogEntry | None":
        """Parse a persisted entry, returning None for malformed ones."""
        if not isinstance(data, dict):
            return None
        try:
            return cls(timestamp=int(data["timestamp"]), message=str(data["message"]))
        except (KeyError, TypeError, ValueError):
            return None
