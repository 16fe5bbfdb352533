"""Keep-alive policy: settings snapshot types and their persistent store."""

from tabkeeper.policy.model import (
    MAX_INTERVAL,
    MAX_LOG_ENTRIES,
    MIN_INTERVAL,
    ActiveHours,
    ActivityLogEntry,
    KeepAliveMethod,
    PolicySnapshot,
)
from tabkeeper.policy.store import PolicyStore

__all__ = [
    "MAX_INTERVAL",
    "MAX_LOG_ENTRIES",
    "MIN_INTERVAL",
    "ActiveHours",
    "ActivityLogEntry",
    "KeepAliveMethod",
    "PolicySnapshot",
    "PolicyStore",
]
