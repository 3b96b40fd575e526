"""
Tests for the on-device key-value stores.
"""

import asyncio

import pytest

from peasant_budget.errors import QuotaExceededError
from peasant_budget.services.kvstore import (
    MemoryKeyValueStore,
    MemoryStoreBackend,
    SQLiteKeyValueStore,
)


class TestMemoryStore:
    """Tests for the in-memory store and its cross-context events."""

    def test_get_set_remove(self):
        """Test basic operations."""
        store = MemoryKeyValueStore()
        assert store.get("k") is None
        store.set("k", "v")
        assert store.get("k") == "v"
        store.remove("k")
        assert store.get("k") is None
        store.remove("k")

    def test_other_contexts_are_notified(self, backend):
        """Test that a write reaches every other context but not the writer."""
        tab_a = backend.open_context()
        tab_b = backend.open_context()
        seen_a, seen_b = [], []
        tab_a.subscribe(seen_a.append)
        tab_b.subscribe(seen_b.append)

        tab_a.set("budget", "{}")

        assert seen_a == []
        assert [(e.key, e.origin) for e in seen_b] == [("budget", tab_a.origin)]
        assert tab_b.get("budget") == "{}"

    def test_unsubscribe(self, backend):
        """Test that unsubscribed listeners are not called."""
        tab_a = backend.open_context()
        tab_b = backend.open_context()
        seen = []
        unsubscribe = tab_b.subscribe(seen.append)
        unsubscribe()
        tab_a.set("k", "v")
        assert seen == []

    def test_quota_enforced(self):
        """Test that writes beyond the quota fail and change nothing."""
        store = MemoryStoreBackend(quota_bytes=20).open_context()
        store.set("k", "x" * 10)
        with pytest.raises(QuotaExceededError):
            store.set("other", "y" * 15)
        assert store.get("other") is None

    def test_overwrite_counts_only_new_value(self):
        """Test that replacing a value frees the old one's space."""
        store = MemoryStoreBackend(quota_bytes=20).open_context()
        store.set("k", "x" * 15)
        store.set("k", "y" * 15)
        assert store.used_bytes() == 16


class TestSQLiteStore:
    """Tests for the SQLite store shared between processes."""

    def test_get_set_remove(self, tmp_path):
        """Test basic operations persist across connections."""
        path = tmp_path / "kv.db"
        store = SQLiteKeyValueStore(path)
        store.set("k", "v")
        store.close()

        reopened = SQLiteKeyValueStore(path)
        assert reopened.get("k") == "v"
        reopened.remove("k")
        assert reopened.get("k") is None
        reopened.close()

    def test_poll_sees_other_process_writes(self, tmp_path):
        """Test change discovery between two connections."""
        path = tmp_path / "kv.db"
        writer = SQLiteKeyValueStore(path)
        reader = SQLiteKeyValueStore(path)
        seen = []
        reader.subscribe(seen.append)

        writer.set("budget", "{}")
        writer.remove("budget")
        events = reader.poll_changes()

        # The tombstone carries the latest revision for the key
        assert [(e.key, e.origin) for e in events] == [("budget", writer.origin)]
        assert seen == events
        assert writer.poll_changes() == []
        assert reader.poll_changes() == []
        writer.close()
        reader.close()

    def test_own_writes_not_reported(self, tmp_path):
        """Test that a store never notifies itself."""
        store = SQLiteKeyValueStore(tmp_path / "kv.db")
        store.set("k", "v")
        assert store.poll_changes() == []
        store.close()

    def test_own_write_does_not_hide_earlier_changes(self, tmp_path):
        """Test that writing locally before a poll still reports other writes."""
        path = tmp_path / "kv.db"
        this_process = SQLiteKeyValueStore(path)
        other_process = SQLiteKeyValueStore(path)

        other_process.set("budget", "{}")
        this_process.set("preference", "local")
        events = this_process.poll_changes()

        assert [(e.key, e.origin) for e in events] == [("budget", other_process.origin)]
        this_process.close()
        other_process.close()

    def test_quota_enforced(self, tmp_path):
        """Test that a rejected write is rolled back."""
        store = SQLiteKeyValueStore(tmp_path / "kv.db", quota_bytes=20)
        store.set("k", "x" * 10)
        with pytest.raises(QuotaExceededError):
            store.set("other", "y" * 15)
        assert store.get("other") is None
        assert store.used_bytes() == 11
        store.close()

    def test_watcher_dispatches_events(self, tmp_path):
        """Test the background polling task."""
        path = tmp_path / "kv.db"
        writer = SQLiteKeyValueStore(path)
        reader = SQLiteKeyValueStore(path)
        seen = []
        reader.subscribe(seen.append)

        async def run():
            reader.start_watching(interval=0.01)
            writer.set("budget", "{}")
            for _ in range(100):
                if seen:
                    break
                await asyncio.sleep(0.01)
            await reader.stop_watching()

        asyncio.run(run())
        assert [e.key for e in seen] == ["budget"]
        writer.close()
        reader.close()
