"""
Tests for the TTL cache and its stale window.
"""

import pytest

from autoprint.cache import TTLCache


def test_fresh_window(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("events", [1, 2], fresh_ttl=60, stale_ttl=600)

    monotonic.advance(59)
    assert cache.get("events") == [1, 2]

    monotonic.advance(2)
    assert cache.get("events") is None
    assert cache.get_stale("events") == [1, 2]


def test_fresh_expiry_is_exclusive(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("events", "data", fresh_ttl=60, stale_ttl=600)

    monotonic.advance(60)
    assert cache.get("events") is None
    assert cache.has("events") is False
    assert cache.get_stale("events") == "data"


def test_stats_count_lookups(monotonic):
    cache = TTLCache(max_entries=2, clock=monotonic)
    cache.set("a", 1, fresh_ttl=10, stale_ttl=100)
    cache.set("b", 2, fresh_ttl=10, stale_ttl=100)
    cache.set("c", 3, fresh_ttl=10, stale_ttl=100)

    cache.get("b")
    cache.get("a")
    monotonic.advance(10)
    cache.get("c")
    cache.get_stale("c")

    stats = cache.get_stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 2
    assert stats['stale_hits'] == 1
    assert stats['evictions'] == 1
    assert stats['hit_rate_percent'] == 33


def test_stale_window(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("events", "data", fresh_ttl=60, stale_ttl=600)

    monotonic.advance(600)
    assert cache.get_stale("events") == "data"

    monotonic.advance(1)
    assert cache.get_stale("events") is None
    # Expired stale entries are purged on read
    assert len(cache) == 0


def test_stale_ttl_never_shorter_than_fresh(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("k", "v", fresh_ttl=300, stale_ttl=10)

    monotonic.advance(200)
    assert cache.get("k") == "v"
    assert cache.get_stale("k") == "v"


def test_fifo_eviction(monotonic):
    cache = TTLCache(max_entries=3, clock=monotonic)
    for key in ("a", "b", "c"):
        cache.set(key, key.upper())

    cache.set("d", "D")

    assert len(cache) == 3
    assert cache.get("a") is None
    assert [cache.get(k) for k in ("b", "c", "d")] == ["B", "C", "D"]


def test_reset_key_moves_to_newest(monotonic):
    cache = TTLCache(max_entries=2, clock=monotonic)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 3)
    cache.set("c", 4)

    assert cache.get("b") is None
    assert cache.get("a") == 3
    assert cache.get("c") == 4


def test_cleanup_removes_only_expired_stale(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("short", 1, fresh_ttl=10, stale_ttl=20)
    cache.set("long", 2, fresh_ttl=10, stale_ttl=1000)

    monotonic.advance(21)
    assert cache.cleanup() == 1
    assert cache.get_stale("long") == 2

    stats = cache.get_stats()
    assert stats['total'] == 1
    assert stats['fresh'] == 0
    assert stats['stale'] == 1


def test_delete_clear_and_has(monotonic):
    cache = TTLCache(clock=monotonic)
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.has("a")
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    assert not cache.has("a")

    cache.clear()
    assert len(cache) == 0


def test_rejects_invalid_size():
    with pytest.raises(ValueError):
        TTLCache(max_entries=0)
