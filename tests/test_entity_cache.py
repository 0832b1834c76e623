"""
Tests for the core entity store.

These tests verify:
- TTL expiry through TimedEntry
- Prefix invalidation
- Coalesced cold loads
- Loads overtaken by a write or invalidation are not stored
"""

import asyncio
from datetime import timedelta

import pytest

from songstudio.cache.entity_cache import CacheStats, EntityCache
from songstudio.cache.entry import TimedEntry
from songstudio.cache.invalidation import CacheEvent, CacheInvalidator, CacheKeys


# =============================================================================
# TIMED ENTRY TESTS
# =============================================================================

class TestTimedEntry:
    """Test the time-boxed entry."""

    def test_entry_without_ttl_never_expires(self):
        entry = TimedEntry(value="x")
        entry.created_at -= 10_000
        assert not entry.is_expired()

    def test_entry_expires_after_ttl(self):
        entry = TimedEntry(value="x", ttl=timedelta(seconds=60))
        assert not entry.is_expired()
        entry.created_at -= 61
        assert entry.is_expired()

    def test_refresh_restarts_window(self):
        entry = TimedEntry(value="old", ttl=timedelta(seconds=60))
        entry.created_at -= 61
        entry.refresh("new")
        assert not entry.is_expired()
        assert entry.value == "new"


# =============================================================================
# BASIC OPERATIONS
# =============================================================================

class TestEntityCacheBasics:
    """Test get/set/invalidate."""

    def test_get_miss_then_hit(self):
        cache = EntityCache()
        assert cache.get("songs:all") is None
        cache.set("songs:all", {"a": 1})
        assert cache.get("songs:all") == {"a": 1}
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1

    def test_peek_does_not_count(self):
        cache = EntityCache()
        cache.set("k", 1)
        assert cache.peek("k") == 1
        assert cache.stats.hits == 0

    def test_expired_entry_is_dropped(self):
        cache = EntityCache(default_ttl=timedelta(seconds=30))
        cache.set("k", 1)
        cache._entries["k"].created_at -= 31
        assert cache.get("k") is None
        assert "k" not in cache

    def test_invalidate_single_key(self):
        cache = EntityCache()
        cache.set("k", 1)
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is False
        assert cache.get("k") is None

    def test_generation_counts_writes_to_absent_keys(self):
        cache = EntityCache()
        assert cache.generation("singers:all#s1") == 0
        cache.invalidate("singers:all#s1")
        cache.set("k", 1)
        assert cache.generation("singers:all#s1") == 1
        assert cache.generation("k") == 1
        assert "singers:all#s1" not in cache

    def test_invalidate_pattern(self):
        cache = EntityCache()
        cache.set("pitches:all", [])
        cache.set("sessions:detail:a", {})
        cache.set("sessions:detail:b", {})
        cache.set("sessions:all", {})

        removed = cache.invalidate_pattern("sessions:detail:")

        assert removed == 2
        assert sorted(cache.keys()) == ["pitches:all", "sessions:all"]

    def test_clear(self):
        cache = EntityCache()
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.clear() == 2
        assert len(cache) == 0

    def test_cleanup_expired(self):
        cache = EntityCache(default_ttl=timedelta(seconds=30))
        cache.set("old", 1)
        cache.set("new", 2)
        cache._entries["old"].created_at -= 31
        assert cache.cleanup_expired() == 1
        assert cache.keys() == ["new"]

    def test_stats_hit_rate(self):
        stats = CacheStats(hits=3, misses=1)
        assert stats.hit_rate == 0.75
        assert CacheStats().hit_rate == 0.0


# =============================================================================
# LOADING
# =============================================================================

@pytest.mark.asyncio
class TestGetOrLoad:
    """Test coalescing and stale-load protection."""

    async def test_miss_loads_and_stores(self):
        cache = EntityCache()
        calls = []

        async def loader():
            calls.append(1)
            return {"id": 1}

        assert await cache.get_or_load("k", loader) == {"id": 1}
        assert await cache.get_or_load("k", loader) == {"id": 1}
        assert len(calls) == 1

    async def test_concurrent_misses_share_one_load(self):
        cache = EntityCache()
        calls = []
        release = asyncio.Event()

        async def loader():
            calls.append(1)
            await release.wait()
            return ["song"]

        waiters = [asyncio.create_task(cache.get_or_load("songs:all", loader)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters)

        assert len(calls) == 1
        assert all(r == ["song"] for r in results)
        assert cache.stats.coalesced == 4

    async def test_load_overtaken_by_invalidation_is_not_stored(self):
        cache = EntityCache()
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.get_or_load("pitches:all", loader))
        await asyncio.sleep(0)
        cache.invalidate_pattern("pitches:")
        release.set()

        assert await task == "stale"
        assert cache.peek("pitches:all") is None
        assert cache.stats.stale_loads_discarded == 1

    async def test_load_overtaken_by_set_keeps_written_value(self):
        cache = EntityCache()
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0)
        cache.set("k", "fresh")
        release.set()
        await task

        assert cache.peek("k") == "fresh"

    async def test_loader_failure_propagates_to_all_waiters(self):
        cache = EntityCache()
        release = asyncio.Event()

        async def loader():
            await release.wait()
            raise RuntimeError("database down")

        first = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert cache.peek("k") is None

    async def test_none_result_is_not_cached(self):
        cache = EntityCache()
        calls = []

        async def loader():
            calls.append(1)
            return None

        assert await cache.get_or_load("songs:full:missing", loader) is None
        assert await cache.get_or_load("songs:full:missing", loader) is None
        assert len(calls) == 2


# =============================================================================
# INVALIDATION EVENTS
# =============================================================================

class TestCacheInvalidator:
    """Test event to prefix mapping."""

    def test_merge_drops_every_derived_collection(self):
        cache = EntityCache()
        for key in (CacheKeys.SINGERS, CacheKeys.PITCHES, CacheKeys.CENTERS,
                    CacheKeys.session_detail("s1"), CacheKeys.SONGS):
            cache.set(key, {})

        result = CacheInvalidator(cache).handle_event(CacheEvent.SINGERS_MERGED)

        assert result.success
        assert result.keys_invalidated == 4
        assert cache.keys() == [CacheKeys.SONGS]

    def test_session_items_changed_targets_one_session(self):
        cache = EntityCache()
        cache.set(CacheKeys.session_detail("s1"), {})
        cache.set(CacheKeys.session_detail("s2"), {})

        CacheInvalidator(cache).handle_event(CacheEvent.SESSION_ITEMS_CHANGED, session_id="s1")

        assert cache.keys() == [CacheKeys.session_detail("s2")]

    def test_missing_context_is_reported(self):
        cache = EntityCache()
        result = CacheInvalidator(cache).handle_event(CacheEvent.SESSION_ITEMS_CHANGED)
        assert not result.success
        assert result.keys_invalidated == 0
