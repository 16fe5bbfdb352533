"""Power-state lookup for battery-saver gating."""

import psutil

from tabkeeper.logging import get_logger

LOG = get_logger(__name__)


def on_battery_power() -> bool | None:
    """Report whether the machine is currently running on battery.

    Returns:
        True when discharging, False when plugged in, None when the platform
        exposes no battery information or the query fails.
    """
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, OSError, NotImplementedError) as exc:
        LOG.debug("battery_state_unavailable", error=str(exc))
        return None
    if battery is None or battery.power_plugged is None:
        return None
    return not battery.power_plugged
