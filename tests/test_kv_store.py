"""Tests for key-value storage backends."""

import pytest

from tradeguard.storage.kv_store import FileKeyValueStore, MemoryKeyValueStore


class TestMemoryStore:
    def test_set_get_delete(self):
        store = MemoryKeyValueStore()
        assert store.get("missing") is None
        store.set("k", "v")
        assert store.get("k") == "v"
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None

    def test_initial_values(self):
        store = MemoryKeyValueStore({"a": "1"})
        assert store.keys() == ["a"]


class TestFileStore:
    def test_round_trip_survives_new_instance(self, tmp_path):
        FileKeyValueStore(tmp_path).set("candidate_errors", '{"BTC-USDT": {}}')
        reopened = FileKeyValueStore(tmp_path)
        assert reopened.get("candidate_errors") == '{"BTC-USDT": {}}'
        assert (tmp_path / "candidate_errors.json").exists()

    def test_overwrite_leaves_no_temp_files(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        store.set("k", "one")
        store.set("k", "two")
        assert store.get("k") == "two"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["k.json"]

    def test_delete_missing_is_noop(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        store.delete("nothing")
        assert store.get("nothing") is None

    def test_creates_directory(self, tmp_path):
        target = tmp_path / "nested" / "state"
        FileKeyValueStore(target).set("x", "1")
        assert (target / "x.json").read_text() == "1"

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", ".hidden", "a\\b"])
    def test_rejects_unsafe_keys(self, tmp_path, key):
        store = FileKeyValueStore(tmp_path)
        with pytest.raises(ValueError):
            store.set(key, "v")
