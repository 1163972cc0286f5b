"""Tests for the TTL + LRU embedding cache."""

import asyncio
import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from retrieval_services.embedding_cache_service import EmbeddingCache, EmbeddingCacheConfig

DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_cache(clock, **overrides):
    return EmbeddingCache(EmbeddingCacheConfig(**overrides), clock=clock, autostart=False)


def test_put_then_get_returns_vector(clock):
    cache = make_cache(clock)
    cache.put("breach of contract", [0.1, 0.2, 0.3])

    assert cache.get("breach of contract") == [0.1, 0.2, 0.3]


def test_lookup_ignores_surrounding_whitespace(clock):
    cache = make_cache(clock)
    cache.put("  duty of care  ", [1.0])

    assert cache.get("duty of care") == [1.0]
    assert cache.get("\nduty of care\t") == [1.0]


def test_miss_returns_none(clock):
    cache = make_cache(clock)

    assert cache.get("unknown text") is None
    assert cache.get_stats().misses == 1


def test_entry_expires_after_ttl(clock):
    cache = make_cache(clock)
    cache.put("limitation period", [0.5])

    clock.advance(2 * DAY - 1)
    assert cache.get("limitation period") == [0.5]

    clock.advance(1)
    assert cache.get("limitation period") is None
    assert len(cache) == 0


def test_lru_entry_is_evicted_at_capacity(clock):
    cache = make_cache(clock, max_size=3)
    cache.put("a", [1.0])
    clock.advance(1)
    cache.put("b", [2.0])
    clock.advance(1)
    cache.put("c", [3.0])
    clock.advance(1)

    # Touch "a" so "b" becomes least recently accessed
    assert cache.get("a") == [1.0]
    clock.advance(1)
    cache.put("d", [4.0])

    assert len(cache) == 3
    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.get("d") == [4.0]


def test_expired_entries_are_purged_before_eviction(clock):
    cache = make_cache(clock, max_size=5, ttl=10)
    for i in range(4):
        cache.put(f"old {i}", [float(i)])
    clock.advance(10)
    cache.put("fresh", [9.0])

    assert len(cache) == 1
    assert cache.get("fresh") == [9.0]


def test_overwriting_existing_key_does_not_evict(clock):
    cache = make_cache(clock, max_size=2)
    cache.put("a", [1.0])
    cache.put("b", [2.0])
    cache.put("a", [1.5])

    assert len(cache) == 2
    assert cache.get("a") == [1.5]
    assert cache.get("b") == [2.0]


def test_get_returns_a_copy(clock):
    cache = make_cache(clock)
    cache.put("negligence", [1.0, 2.0])

    vector = cache.get("negligence")
    vector.append(3.0)

    assert cache.get("negligence") == [1.0, 2.0]


def test_access_count_and_stats(clock):
    cache = make_cache(clock)
    cache.put("estoppel", [1.0])

    cache.get("estoppel")
    entry = cache.get_entry("estoppel")
    cache.get("missing")

    assert entry.access_count == 2
    stats = cache.get_stats()
    assert stats.size == 1
    assert stats.hits == 2
    assert stats.misses == 1
    assert stats.hit_rate == pytest.approx(2 / 3)
    assert stats.total_accesses == 2


def test_purge_expired_and_clear(clock):
    cache = make_cache(clock, ttl=5)
    cache.put("a", [1.0])
    clock.advance(3)
    cache.put("b", [2.0])
    clock.advance(3)

    assert cache.purge_expired() == 1
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0
    assert cache.get_stats().hits == 0


def test_background_sweep_removes_expired_entries():
    async def scenario():
        clock = FakeClock()
        cache = EmbeddingCache(EmbeddingCacheConfig(ttl=5, cleanup_interval=0.01), clock=clock)
        cache.put("a", [1.0])
        clock.advance(10)
        await asyncio.sleep(0.05)
        size = len(cache)
        health = await cache.health_check()
        await cache.shutdown()
        return size, health

    size, health = asyncio.run(scenario())

    assert size == 0
    assert health["sweeper_running"] is True


def test_no_sweep_without_running_loop(clock):
    cache = EmbeddingCache(EmbeddingCacheConfig(), clock=clock)

    health = asyncio.run(cache.health_check())

    assert health["sweeper_running"] is False
    assert health["status"] == "healthy"


def test_async_context_manager_stops_sweep():
    async def scenario():
        async with EmbeddingCache(autostart=False) as cache:
            running = (await cache.health_check())["sweeper_running"]
        return running, (await cache.health_check())["sweeper_running"]

    assert asyncio.run(scenario()) == (True, False)
