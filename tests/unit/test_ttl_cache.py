"""
Unit tests for TTLCache.
"""

import pytest
from freezegun import freeze_time

from stride.utils.cache import TTLCache


class TestTTLCache:
    """Tests for expiry, eviction and read-through."""

    def test_get_and_set(self):
        cache = TTLCache(max_size=4, ttl_seconds=60)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert cache.get("missing", "fallback") == "fallback"

    def test_entries_expire(self):
        cache = TTLCache(ttl_seconds=60)
        with freeze_time("2026-03-01 12:00:00") as frozen:
            cache.set("a", 1)
            frozen.tick(59)
            assert cache.get("a") == 1
            frozen.tick(1)
            assert cache.get("a") is None
            assert "a" not in cache

    def test_evicts_least_recently_used(self):
        cache = TTLCache(max_size=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "b" not in cache
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_get_or_set_calls_factory_once(self):
        cache = TTLCache(ttl_seconds=60)
        calls = []

        def factory():
            calls.append(1)
            return ["u1", "u2"]

        assert cache.get_or_set("campus", factory) == ["u1", "u2"]
        assert cache.get_or_set("campus", factory) == ["u1", "u2"]
        assert len(calls) == 1
        assert cache.stats()["hits"] == 1

    def test_zero_ttl_disables_caching(self):
        cache = TTLCache(ttl_seconds=0)
        cache.set("a", 1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_invalidate_and_clear(self):
        cache = TTLCache()
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        cache.clear()
        assert len(cache) == 0

    def test_purge_expired(self):
        cache = TTLCache(ttl_seconds=10)
        with freeze_time("2026-03-01 12:00:00") as frozen:
            cache.set("old", 1)
            frozen.tick(5)
            cache.set("new", 2)
            frozen.tick(6)
            assert cache.purge_expired() == 1
            assert cache.get("new") == 2

    @pytest.mark.parametrize("kwargs", [{"max_size": 0}, {"ttl_seconds": -1}])
    def test_rejects_bad_bounds(self, kwargs):
        with pytest.raises(ValueError):
            TTLCache(**kwargs)
