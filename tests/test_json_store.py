import json
from unittest.mock import MagicMock

import pytest

from feedcore.cache_utils import atomic_write_json, backup_path, rotate_backups
from feedcore.config import Settings
from feedcore.errors import StorageError
from feedcore.json_store import JsonFileStore, open_store
from feedcore.models import Feed
from feedcore.store import FallbackStore, MemoryStore


def feed(n, clock):
    return Feed(id=f"feed-{n}", user_id="u1", url=f"https://s{n}.example.com/rss", created_at=clock())


def test_mutations_are_persisted(tmp_path, clock):
    path = tmp_path / "store.json"
    store = JsonFileStore(path)
    store.add_feed(feed(1, clock))

    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert [f["id"] for f in data["feeds"]] == ["feed-1"]

    reopened = JsonFileStore(path)
    assert reopened.get_feed("feed-1").url == "https://s1.example.com/rss"


def test_deferred_coalesces_writes(tmp_path, clock, monkeypatch):
    store = JsonFileStore(tmp_path / "store.json")
    flush = MagicMock(wraps=store._flush)
    monkeypatch.setattr(store, "_flush", flush)

    with store.deferred():
        for n in range(5):
            store.add_feed(feed(n, clock))
        assert flush.call_count == 0

    assert flush.call_count == 1
    assert len(JsonFileStore(tmp_path / "store.json").list_feeds()) == 5


def test_nested_deferred_flushes_once(tmp_path, clock, monkeypatch):
    store = JsonFileStore(tmp_path / "store.json")
    flush = MagicMock(wraps=store._flush)
    monkeypatch.setattr(store, "_flush", flush)

    with store.deferred():
        store.add_feed(feed(1, clock))
        with store.deferred():
            store.add_feed(feed(2, clock))
        assert flush.call_count == 0

    assert flush.call_count == 1


def test_backups_rotate_on_open(tmp_path, clock):
    path = tmp_path / "store.json"
    JsonFileStore(path, backups=2).add_feed(feed(1, clock))

    second = JsonFileStore(path, backups=2)
    assert backup_path(path, 1).exists()
    second.add_feed(feed(2, clock))

    JsonFileStore(path, backups=2)
    assert backup_path(path, 2).exists()
    assert not backup_path(path, 3).exists()
    previous = json.loads(backup_path(path, 1).read_text())
    assert len(previous["feeds"]) == 2


@pytest.mark.parametrize(
    "content",
    ["invalid json{", "[1, 2, 3]", '{"version": 99}', '{"feeds": [{"name": "no id"}]}'],
)
def test_unreadable_snapshot_raises(tmp_path, content):
    path = tmp_path / "store.json"
    path.write_text(content)
    with pytest.raises(StorageError):
        JsonFileStore(path)


def test_open_store_wraps_json_store(tmp_path):
    store = open_store(Settings(store_path=str(tmp_path / "data" / "store.json")))
    assert isinstance(store, FallbackStore)
    assert isinstance(store.active, JsonFileStore)
    assert not store.using_fallback


def test_open_store_falls_back_to_memory_on_corrupt_snapshot(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("invalid json{")

    store = open_store(Settings(store_path=str(path)))

    assert isinstance(store, MemoryStore)
    assert store.list_feeds() == []


def test_atomic_write_leaves_no_temp_files(tmp_path):
    path = tmp_path / "nested" / "out.json"
    atomic_write_json(path, {"a": 1})
    assert json.loads(path.read_text()) == {"a": 1}
    assert [p.name for p in path.parent.iterdir()] == ["out.json"]


def test_rotate_backups_noop_without_file(tmp_path):
    path = tmp_path / "missing.json"
    rotate_backups(path, 3)
    assert list(tmp_path.iterdir()) == []
