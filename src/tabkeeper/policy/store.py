"""JSON-file policy store.

The store keeps a flat key/value map on disk (``policy.json``) using the
persisted key names from ``tabkeeper.policy.model``. Reads merge persisted
values over the compiled-in defaults; writes are atomic so a crash mid-write
never leaves a truncated file behind.

Failures never propagate into the scheduler or watchdog loops: ``load()``
falls back to the last good snapshot (or defaults) and ``save()`` reports
failure through its return value.
"""

import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from tabkeeper.exceptions import PolicyStoreError
from tabkeeper.logging import get_logger
from tabkeeper.policy.model import (
    KEY_ACTIVITY_LOG,
    MAX_LOG_ENTRIES,
    POLICY_KEYS,
    ActivityLogEntry,
    PolicySnapshot,
)

LOG = get_logger(__name__)


class PolicyStore:
    """Persisted keep-alive settings plus the bounded activity log.

    Example:
        >>> store = PolicyStore(Path("~/.config/tabkeeper/policy.json").expanduser())
        >>> policy = store.load()
        >>> store.save({"refreshInterval": 5})
        True
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._snapshot: PolicySnapshot | None = None
        self._activity: list[ActivityLogEntry] = []
        self.last_error: PolicyStoreError | None = None

    def _read_raw(self) -> dict[str, Any]:
        """Read the policy file, returning {} when it does not exist yet.

        Raises:
            PolicyStoreError: If the file exists but cannot be read or parsed.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise PolicyStoreError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PolicyStoreError(f"{self.path} does not contain a JSON object")
        return data

    def _write_raw(self, data: dict[str, Any]) -> None:
        """Write the policy file atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".policy.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(json.dumps(data, indent=2))
            Path(temp_path).rename(self.path)
        except Exception:
            Path(temp_path).unlink(missing_ok=True)
            raise

    def load(self) -> PolicySnapshot:
        """Load the current policy merged over defaults.

        Returns:
            Fresh PolicySnapshot. If the file cannot be read, the last
            successfully loaded snapshot is returned instead (or defaults if
            none was ever loaded) and the failure is kept in ``last_error``.
        """
        try:
            raw = self._read_raw()
        except PolicyStoreError as exc:
            self.last_error = exc
            LOG.warning("policy_load_failed", path=str(self.path), error=str(exc))
            return self._snapshot or PolicySnapshot()

        self.last_error = None
        self._snapshot = PolicySnapshot.from_dict(raw)
        entries = (ActivityLogEntry.from_dict(item) for item in raw.get(KEY_ACTIVITY_LOG) or [])
        self._activity = [entry for entry in entries if entry is not None][:MAX_LOG_ENTRIES]
        return self._snapshot

    def save(self, partial: Mapping[str, Any] | PolicySnapshot) -> bool:
        """Merge a partial update into the persisted policy.

        Args:
            partial: Persisted-key mapping (e.g. ``{"refreshInterval": 5}``)
                or a full PolicySnapshot. Unknown keys are ignored.

        Returns:
            True if the policy was written, False otherwise.
        """
        if isinstance(partial, PolicySnapshot):
            partial = partial.to_dict()
        current = self.load()
        updated = current.with_updates(dict(partial))
        if not self._persist(updated, self._activity):
            return False
        self._snapshot = updated
        LOG.debug("policy_saved", keys=sorted(k for k in partial if k in POLICY_KEYS))
        return True

    def _persist(self, snapshot: PolicySnapshot, activity: list[ActivityLogEntry]) -> bool:
        data = snapshot.to_dict()
        data[KEY_ACTIVITY_LOG] = [entry.to_dict() for entry in activity]
        try:
            self._write_raw(data)
        except OSError as exc:
            self.last_error = PolicyStoreError(f"Cannot write {self.path}: {exc}")
            LOG.error("policy_save_failed", path=str(self.path), error=str(exc))
            return False
        return True

    def get(self, key: str) -> Any:
        """Get a single persisted value by key."""
        if key == KEY_ACTIVITY_LOG:
            return [entry.to_dict() for entry in self.activity_log()]
        return self.load().to_dict().get(key)

    def get_all(self) -> dict[str, Any]:
        """Get every persisted value, activity log included."""
        data = self.load().to_dict()
        data[KEY_ACTIVITY_LOG] = [entry.to_dict() for entry in self._activity]
        return data

    def activity_log(self) -> list[ActivityLogEntry]:
        """Activity log entries, newest first."""
        self.load()
        return list(self._activity)

    def log_activity(self, message: str) -> None:
        """Prepend an entry to the activity log, evicting the oldest past the limit.

        Failures are logged and swallowed; losing a log line must never break a tick.
        """
        snapshot = self.load()
        activity = [ActivityLogEntry.now(message), *self._activity][:MAX_LOG_ENTRIES]
        if self._persist(snapshot, activity):
            self._activity = activity

    def clear_activity_log(self) -> bool:
        """Remove every activity log entry."""
        snapshot = self.load()
        if not self._persist(snapshot, []):
            return False
        self._activity = []
        return True
