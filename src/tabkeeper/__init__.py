"""tabkeeper - keep browser tab sessions from timing out.

A small host daemon that periodically pings or refreshes the tabs of a
Chrome instance (via its remote-debugging port), gated by a user policy:
master switch, interval, allow/deny lists, active hours and battery saver.
A companion process heartbeats the host, and a watchdog recreates the
companion when those heartbeats go stale.

Example:
    >>> from tabkeeper import TabkeeperClient
    >>> client = TabkeeperClient()
    >>> client.update_settings({"keepAliveMethod": "refresh", "refreshInterval": 10})
    True
    >>> client.test_keepalive()
    ActionResult(success_count=3, error_count=0, skipped=False)
"""

from tabkeeper.client import TabkeeperClient
from tabkeeper.config import TabkeeperSettings, get_settings
from tabkeeper.exceptions import (
    ChannelError,
    CompanionError,
    DispatchError,
    PolicyStoreError,
    ServiceNotRunningError,
    TabkeeperError,
)
from tabkeeper.executor import ActionResult, GatedActionExecutor
from tabkeeper.policy import ActiveHours, KeepAliveMethod, PolicySnapshot, PolicyStore
from tabkeeper.scheduler import KeepAliveScheduler
from tabkeeper.service import KeepAliveService
from tabkeeper.watchdog import HealthBand, LivenessWatchdog

__version__ = "0.3.0"

__all__ = [
    # Version
    "__version__",
    # Client
    "TabkeeperClient",
    # Core
    "KeepAliveService",
    "GatedActionExecutor",
    "KeepAliveScheduler",
    "LivenessWatchdog",
    "HealthBand",
    "ActionResult",
    # Policy
    "ActiveHours",
    "KeepAliveMethod",
    "PolicySnapshot",
    "PolicyStore",
    # Configuration
    "TabkeeperSettings",
    "get_settings",
    # Exceptions
    "TabkeeperError",
    "ChannelError",
    "CompanionError",
    "DispatchError",
    "PolicyStoreError",
    "ServiceNotRunningError",
]
