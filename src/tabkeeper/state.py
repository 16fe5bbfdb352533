"""Daemon PID and state files.

The running host writes a small JSON snapshot of what it is doing so that
``tabkeeper status`` can report on it without a round trip over the socket.
It is intentionally separated from CLI code to avoid circular imports.
"""

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from tabkeeper.config import get_settings


class DaemonStatus(StrEnum):
    """Status of the host daemon.

    - ARMED: the keep-alive trigger is scheduled
    - PAUSED: running, but the policy is inactive so nothing is scheduled
    """

    ARMED = "armed"
    PAUSED = "paused"


@dataclass
class DaemonState:
    """State of a running host daemon.

    Attributes:
        status: Whether the keep-alive trigger is armed.
        interval: Minutes between ticks (None while paused).
        method: Keep-alive method in effect.
        companion_pid: PID of the companion process, if running.
        health: Last watchdog health band.
        marker: Color of the activity marker while a pass is running, else "".
        last_result: Outcome of the latest pass ({"success", "error", "skipped"}).
        last_run_at: Epoch seconds of the latest pass.
    """

    status: DaemonStatus = DaemonStatus.PAUSED
    interval: float | None = None
    method: str = "ping"
    companion_pid: int | None = None
    health: str = "healthy"
    marker: str = ""
    last_result: dict[str, Any] | None = None
    last_run_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonState":
        """Create instance from dictionary.

        Unknown fields are ignored for forward compatibility.
        """
        known_fields = set(cls.__dataclass_fields__)
        filtered = {k: v for k, v in data.items() if k in known_fields}
        if "status" in filtered and isinstance(filtered["status"], str):
            filtered["status"] = DaemonStatus(filtered["status"])
        return cls(**filtered)


def _get_pid_path() -> Path:
    return get_settings().pid_path


def _get_state_path() -> Path:
    return get_settings().state_path


def _cleanup_stale_files() -> None:
    """Remove PID and state files left behind by a dead daemon.

    Safe to call concurrently; missing_ok handles deletion races.
    """
    _get_pid_path().unlink(missing_ok=True)
    _get_state_path().unlink(missing_ok=True)


def read_pid() -> int | None:
    """Read PID from the PID file, return None if not found or the process is gone."""
    pid_path = _get_pid_path()
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text().strip())
        # signal 0 only checks that the process exists
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        _cleanup_stale_files()
        return None


def write_pid() -> None:
    """Write current PID to the PID file."""
    pid_path = _get_pid_path()
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()))


def write_state(state: DaemonState) -> None:
    """Write daemon state atomically (temp file + rename)."""
    state_path = _get_state_path()
    state_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=state_path.parent,
        prefix=".tabkeeper.state.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(state.to_dict()))
        Path(temp_path).rename(state_path)
    except Exception:
        Path(temp_path).unlink(missing_ok=True)
        raise


def read_state() -> DaemonState | None:
    """Read daemon state, returning None if missing or invalid."""
    state_path = _get_state_path()
    if not state_path.exists():
        return None
    try:
        data = json.loads(state_path.read_text())
        return DaemonState.from_dict(data)
    except (ValueError, TypeError, AttributeError):
        return None


def remove_pid() -> None:
    """Remove PID and state files."""
    _get_pid_path().unlink(missing_ok=True)
    _get_state_path().unlink(missing_ok=True)
