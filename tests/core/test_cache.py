"""Tests for the bounded in-memory cache."""

import time

import pytest

from spindle.core.cache import InMemoryCache


class TestInMemoryCache:
    def test_set_get_delete(self):
        cache = InMemoryCache()
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.exists("a")
        cache.delete("a")
        assert cache.get("a") is None
        assert not cache.exists("a")

    def test_lru_eviction(self):
        cache = InMemoryCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")  # a is now most recent
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.stats()["evictions"] == 1

    def test_ttl_expiry(self):
        cache = InMemoryCache()
        cache.set("a", 1, ttl_seconds=1)
        assert cache.get("a") == 1
        time.sleep(1.05)
        assert cache.get("a") is None

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            InMemoryCache(max_size=0)

    def test_clear_and_size(self):
        cache = InMemoryCache()
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.size() == 2
        cache.clear()
        assert cache.size() == 0

    def test_hit_miss_counters(self):
        cache = InMemoryCache()
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
