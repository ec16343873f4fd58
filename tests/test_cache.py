"""Tests for ResponseCache."""

import pytest

from tourcall.cache import ResponseCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestResponseCache:
    def test_entries_expire_after_ttl(self, clock):
        cache = ResponseCache(ttl_sec=10, clock=clock)
        cache.set("tours", ["a", "b"])

        clock.now += 9
        assert cache.get("tours") == ["a", "b"]

        clock.now += 2
        assert cache.get("tours") is None
        assert len(cache) == 0

    def test_per_lookup_ttl(self, clock):
        cache = ResponseCache(ttl_sec=100, clock=clock)
        cache.set("k", 1)
        clock.now += 5

        assert cache.get("k", ttl=10) == 1
        assert cache.get("k", ttl=0) is None

    def test_stats_and_clear(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("k", 1)
        cache.get("k")
        cache.get("k")
        cache.get("missing")

        assert cache.stats() == {"size": 1, "hits": 2, "misses": 1}

        cache.clear()
        assert cache.stats() == {"size": 0, "hits": 0, "misses": 0}

    def test_least_used_entry_is_evicted(self, clock):
        cache = ResponseCache(max_entries=2, clock=clock)
        cache.set("hot", 1)
        cache.set("cold", 2)
        cache.get("hot")

        cache.set("new", 3)

        assert cache.get("cold") is None
        assert cache.get("hot") == 1
        assert cache.get("new") == 3

    def test_overwrite_does_not_evict(self, clock):
        cache = ResponseCache(max_entries=1, clock=clock)
        cache.set("k", 1)
        cache.set("k", 2)

        assert cache.get("k") == 2
        assert len(cache) == 1

    def test_invalidate(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("audio-inputs", [1])
        cache.set("audio-outputs", [2])
        cache.set("tours", [3])

        assert cache.invalidate("tours")
        assert not cache.invalidate("tours")
        assert cache.invalidate_prefix("audio-") == 2
        assert len(cache) == 0

    def test_cleanup_drops_only_expired(self, clock):
        cache = ResponseCache(ttl_sec=10, clock=clock)
        cache.set("old", 1)
        clock.now += 8
        cache.set("fresh", 2)
        clock.now += 5

        assert cache.cleanup() == 1
        assert cache.get("fresh") == 2

    def test_get_or_create_calls_factory_once(self, clock):
        cache = ResponseCache(clock=clock)
        calls = []

        def factory():
            calls.append(1)
            return "value"

        assert cache.get_or_create("k", factory) == "value"
        assert cache.get_or_create("k", factory) == "value"
        assert len(calls) == 1

    def test_none_is_not_cached(self, clock):
        cache = ResponseCache(clock=clock)

        assert cache.get_or_create("k", lambda: None) is None
        assert len(cache) == 0

    def test_rejects_empty_capacity(self):
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)

    @pytest.mark.asyncio
    async def test_get_or_fetch(self, clock):
        cache = ResponseCache(ttl_sec=60, clock=clock)
        calls = []

        async def fetch():
            calls.append(1)
            return {"id": len(calls)}

        assert await cache.get_or_fetch("tour:1", fetch) == {"id": 1}
        assert await cache.get_or_fetch("tour:1", fetch) == {"id": 1}

        clock.now += 61
        assert await cache.get_or_fetch("tour:1", fetch) == {"id": 2}
        assert len(calls) == 2
