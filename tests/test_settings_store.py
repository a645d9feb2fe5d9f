"""
Tests for settings stores and SettingsSession.
"""

import json

import pytest

from helpdesk_sync.settings_store import (
    JsonFileSettingsStore,
    MemorySettingsStore,
    SettingsSession,
)


class TestJsonFileSettingsStore:
    """Tests for the on-disk settings store."""

    def test_empty_when_missing(self, tmp_path):
        store = JsonFileSettingsStore(tmp_path / "settings.json")
        assert store.get_all() == {}

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "settings.json"
        JsonFileSettingsStore(path).set_many({"pageSize": 50, "periodId": "2024"})

        store = JsonFileSettingsStore(path)
        assert store.get("pageSize") == 50
        assert store.get("periodId") == "2024"

    def test_no_temp_file_left_behind(self, tmp_path):
        store = JsonFileSettingsStore(tmp_path / "settings.json")
        store.set("pageSize", 50)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["settings.json"]

    def test_delete_many(self, tmp_path):
        store = JsonFileSettingsStore(tmp_path / "settings.json")
        store.set_many({"a": 1, "b": 2})
        store.delete_many(["a", "missing"])
        assert store.get_all() == {"b": 2}

    def test_rejects_non_object(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps([1, 2]))
        with pytest.raises(ValueError):
            JsonFileSettingsStore(path).get_all()


class TestSettingsSession:
    """Tests for the per-session read cache and write staging."""

    def test_reads_store_once(self):
        store = MemorySettingsStore({"pageSize": 100, "periodId": "2024"})
        session = SettingsSession(store)

        for _ in range(5):
            session.get("pageSize")
            session.get("periodId")
            session.snapshot()

        assert store.read_count == 1

    def test_writes_staged_until_flush(self):
        store = MemorySettingsStore({"syncMode": "NOT_STARTED"})
        session = SettingsSession(store)

        session.set("syncMode", "PAGINATING")
        assert session.get("syncMode") == "PAGINATING"
        assert store.get_all()["syncMode"] == "NOT_STARTED"

        session.flush()
        assert store.get_all()["syncMode"] == "PAGINATING"

    def test_one_store_write_per_flush(self):
        store = MemorySettingsStore({"a": 0, "b": 0, "c": 0})
        session = SettingsSession(store)

        session.set("a", 1)
        session.set("b", 2)
        session.set_many({"c": 3})
        session.flush()

        assert store.write_count == 1
        assert session.flush_count == 1

    def test_flush_without_changes_is_free(self):
        store = MemorySettingsStore({"a": 1})
        session = SettingsSession(store)
        session.flush()
        assert store.write_count == 0
        assert session.flush_count == 0

    def test_new_key_invalidates_cache(self):
        """Writing a key the snapshot lacks sends the next read to the store."""
        store = MemorySettingsStore({"a": 1})
        session = SettingsSession(store)

        session.set("brand-new", "x")
        assert store.read_count == 1

        session.get("a")
        assert store.read_count == 2
        assert session.get("brand-new") == "x"

    def test_delete_staged(self):
        store = MemorySettingsStore({"a": 1, "b": 2})
        session = SettingsSession(store)

        session.delete_many(["a"])
        assert session.get("a") is None
        assert "a" not in session.snapshot()
        assert store.get("a") == 1

        session.flush()
        assert store.get_all() == {"b": 2}
