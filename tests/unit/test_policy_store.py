"""Tests for the JSON policy store."""

import json
from unittest.mock import patch

import pytest

from tabkeeper.exceptions import PolicyStoreError
from tabkeeper.policy import KeepAliveMethod, PolicySnapshot, PolicyStore
from tabkeeper.policy.model import KEY_ACTIVITY_LOG, KEY_METHOD, KEY_REFRESH_INTERVAL, MAX_LOG_ENTRIES


@pytest.fixture
def store(tmp_path):
    return PolicyStore(tmp_path / "policy.json")


class TestLoad:
    """Tests for PolicyStore.load."""

    def test_missing_file_gives_defaults(self, store):
        assert store.load() == PolicySnapshot()
        assert store.last_error is None
        assert not store.path.exists()

    def test_corrupt_file_falls_back_to_defaults(self, store):
        store.path.write_text("{not json")

        policy = store.load()

        assert policy == PolicySnapshot()
        assert isinstance(store.last_error, PolicyStoreError)

    def test_corrupt_file_falls_back_to_last_good_snapshot(self, store):
        store.save({KEY_REFRESH_INTERVAL: 9})
        store.load()
        store.path.write_text("[1, 2, 3]")

        assert store.load().interval_minutes == 9
        assert store.last_error is not None

    def test_error_cleared_after_recovery(self, store):
        store.path.write_text("garbage")
        store.load()

        store.path.write_text(json.dumps({KEY_REFRESH_INTERVAL: 4}))

        assert store.load().interval_minutes == 4
        assert store.last_error is None


class TestSave:
    """Tests for PolicyStore.save."""

    def test_partial_update_merges(self, store):
        assert store.save({KEY_METHOD: "refresh"}) is True
        assert store.save({KEY_REFRESH_INTERVAL: 12}) is True

        policy = store.load()
        assert policy.method is KeepAliveMethod.REFRESH
        assert policy.interval_minutes == 12

    def test_save_load_round_trip_is_stable(self, store):
        store.save(PolicySnapshot(interval_minutes=7, deny_list=("ads.net",)))
        first = store.load()

        store.save(first)

        assert store.load() == first

    def test_unknown_keys_are_not_persisted(self, store):
        store.save({"bogus": 1, KEY_REFRESH_INTERVAL: 2})

        data = json.loads(store.path.read_text())
        assert "bogus" not in data
        assert data[KEY_REFRESH_INTERVAL] == 2

    def test_write_failure_returns_false(self, store):
        with patch.object(PolicyStore, "_write_raw", side_effect=OSError("disk full")):
            assert store.save({KEY_REFRESH_INTERVAL: 5}) is False

        assert isinstance(store.last_error, PolicyStoreError)
        assert store.load().interval_minutes == 3

    def test_write_is_atomic(self, store):
        store.save({KEY_REFRESH_INTERVAL: 5})

        leftovers = [p for p in store.path.parent.iterdir() if p.name.startswith(".policy.")]
        assert leftovers == []

    def test_save_preserves_activity_log(self, store):
        store.log_activity("Pinged: Inbox")

        store.save({KEY_REFRESH_INTERVAL: 8})

        assert [e.message for e in store.activity_log()] == ["Pinged: Inbox"]


class TestGet:
    """Tests for get and get_all."""

    def test_get_single_key(self, store):
        store.save({KEY_REFRESH_INTERVAL: 6})

        assert store.get(KEY_REFRESH_INTERVAL) == 6
        assert store.get("missing") is None

    def test_get_all_includes_activity_log(self, store):
        store.log_activity("Refreshed: Docs")

        data = store.get_all()

        assert data[KEY_REFRESH_INTERVAL] == 3
        assert data[KEY_ACTIVITY_LOG][0]["message"] == "Refreshed: Docs"


class TestActivityLog:
    """Tests for the bounded activity log."""

    def test_newest_first(self, store):
        store.log_activity("first")
        store.log_activity("second")

        assert [e.message for e in store.activity_log()] == ["second", "first"]

    def test_evicts_oldest_past_limit(self, store):
        for i in range(MAX_LOG_ENTRIES + 1):
            store.log_activity(f"entry {i}")

        messages = [e.message for e in store.activity_log()]
        assert len(messages) == MAX_LOG_ENTRIES
        assert messages[0] == f"entry {MAX_LOG_ENTRIES}"
        assert "entry 0" not in messages

    def test_log_failure_is_swallowed(self, store):
        with patch.object(PolicyStore, "_write_raw", side_effect=OSError("read-only")):
            store.log_activity("lost")

        assert store.activity_log() == []

    def test_clear(self, store):
        store.log_activity("something")

        assert store.clear_activity_log() is True
        assert store.activity_log() == []

    def test_malformed_entries_are_dropped(self, store):
        store.path.write_text(
            json.dumps({KEY_ACTIVITY_LOG: [{"timestamp": 1, "message": "ok"}, {"oops": True}]})
        )

        assert [e.message for e in store.activity_log()] == ["ok"]
