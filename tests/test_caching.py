import pytest

from engines.caching import ProjectionCache


class _Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    ticker = _Ticker()
    cache = ProjectionCache(ttl_seconds=10, clock=ticker)
    cache.add("alice", "e1", "tree")

    ticker.now = 9.9
    assert cache.get("alice", "e1") == "tree"
    ticker.now = 10.0
    assert cache.get("alice", "e1") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted():
    cache = ProjectionCache(ttl_seconds=60, max_size=2)
    cache.add("alice", "e1", 1)
    cache.add("bob", "e2", 2)
    cache.get("alice", "e1")

    cache.add("carol", "e3", 3)

    assert cache.get("bob", "e2") is None
    assert cache.get("alice", "e1") == 1
    assert cache.get("carol", "e3") == 3


def test_invalidate_drops_only_that_enrollment():
    cache = ProjectionCache()
    cache.add("alice", "e1", 1)
    cache.add("admin", "e1", 1)
    cache.add("alice", "e2", 2)

    cache.invalidate("e1")

    assert cache.get("alice", "e1") is None
    assert cache.get("admin", "e1") is None
    assert cache.get("alice", "e2") == 2


def test_zero_ttl_disables_cache():
    cache = ProjectionCache(ttl_seconds=0)
    cache.add("alice", "e1", 1)

    assert not cache.enabled
    assert cache.get("alice", "e1") is None


def test_negative_ttl_is_rejected():
    with pytest.raises(ValueError):
        ProjectionCache(ttl_seconds=-1)
