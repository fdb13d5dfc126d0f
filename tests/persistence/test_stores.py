"""Tests for persistence.store — in-memory and directory-backed key-value stores."""

from __future__ import annotations

import pytest

from crochetkit.persistence import FileStore, MemoryStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return FileStore(tmp_path / "store")


class TestStores:
    def test_set_get_delete(self, store):
        assert store.get("assembly_a1") is None
        store.set("assembly_a1", '{"id":"a1"}')
        assert store.get("assembly_a1") == '{"id":"a1"}'
        store.delete("assembly_a1")
        assert store.get("assembly_a1") is None

    def test_delete_missing_is_noop(self, store):
        store.delete("nothing_here")

    def test_keys_by_prefix_sorted(self, store):
        for key in ("backup_a1_2", "backup_a1_1", "assembly_a1"):
            store.set(key, "{}")
        assert store.keys("backup_a1_") == ["backup_a1_1", "backup_a1_2"]
        assert len(store.keys()) == 3

    @pytest.mark.parametrize("key", ["../escape", "a/b", "", "sp ace"])
    def test_bad_keys_rejected(self, store, key):
        with pytest.raises(ValueError):
            store.set(key, "{}")


class TestFileStore:
    def test_one_file_per_key(self, tmp_path):
        store = FileStore(tmp_path)
        store.set("assembly_a1", "{}")
        assert (tmp_path / "assembly_a1.json").read_text(encoding="utf-8") == "{}"
        assert not list(tmp_path.glob("*.tmp"))

    def test_survives_reopen(self, tmp_path):
        FileStore(tmp_path).set("k", "v")
        assert FileStore(tmp_path).get("k") == "v"
