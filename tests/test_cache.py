"""Tests for the job cache stores."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from dagrun.cache import FileCacheStore, InMemoryCacheStore


def backdate(store, key, minutes):
    """Make a file cache entry look `minutes` old."""
    _blob, meta = store._paths(key)
    info = json.loads(meta.read_text())
    info["created_at"] = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()
    meta.write_text(json.dumps(info))


@pytest.fixture(params=["memory", "file"])
def caches(request, tmp_path):
    if request.param == "memory":
        return InMemoryCacheStore()
    return FileCacheStore(tmp_path / "cache")


class TestRestore:
    def test_exact_key(self, caches):
        caches.save("pip-3.11-abc", b"venv")
        hit = caches.restore("pip-3.11-abc", ["pip-"])
        assert hit.exact
        assert hit.data == b"venv"

    def test_miss(self, caches):
        caches.save("npm-abc", b"x")
        assert caches.restore("pip-3.11-abc") is None
        assert caches.restore("pip-3.11-abc", ["pip-3.11-", "pip-"]) is None

    def test_restore_keys_are_tried_in_order(self, caches):
        caches.save("pip-3.12-aaa", b"other python")
        caches.save("pip-3.11-bbb", b"same python")
        hit = caches.restore("pip-3.11-ccc", ["pip-3.11-", "pip-"])
        assert not hit.exact
        assert hit.matched == "pip-3.11-bbb"
        assert hit.key == "pip-3.11-ccc"

    def test_entries_are_immutable(self, caches):
        assert caches.save("k", b"first")
        assert not caches.save("k", b"second")
        assert caches.load("k") == b"first"


def test_newest_prefix_match_wins():
    caches = InMemoryCacheStore()
    caches.save("pip-old", b"1")
    caches.save("pip-new", b"2")
    assert caches.restore("pip-xyz", ["pip-"]).matched == "pip-new"


class TestFileStore:
    def test_newest_by_metadata(self, tmp_path):
        caches = FileCacheStore(tmp_path)
        caches.save("pip-new", b"2")
        caches.save("pip-old", b"1")
        backdate(caches, "pip-old", 60)
        assert caches.restore("pip-xyz", ["pip-"]).matched == "pip-new"

    def test_survives_a_new_instance(self, tmp_path):
        FileCacheStore(tmp_path).save("pip-3.11-abc", b"venv")
        assert FileCacheStore(tmp_path).load("pip-3.11-abc") == b"venv"
        assert not list(tmp_path.glob("*.tmp"))

    def test_keys_never_touch_the_filesystem_layout(self, tmp_path):
        caches = FileCacheStore(tmp_path / "cache")
        caches.save("../../escape me", b"x")
        assert caches.load("../../escape me") == b"x"
        assert all((tmp_path / "cache") in p.parents for p in tmp_path.rglob("*.bin"))

    def test_prune_keeps_the_newest(self, tmp_path):
        caches = FileCacheStore(tmp_path)
        for age, key in enumerate(["c", "b", "a"]):
            caches.save(key, key.encode())
            backdate(caches, key, age)
        assert caches.prune(keep=1) == 2
        assert [k for k, _ in caches.entries()] == ["c"]
        assert caches.load("a") is None

    def test_broken_metadata_is_skipped(self, tmp_path):
        caches = FileCacheStore(tmp_path)
        caches.save("good", b"1")
        (tmp_path / "broken.meta.json").write_text("{not json")
        assert [k for k, _ in caches.entries()] == ["good"]
