"""
Tests for cache warming and background cleanup.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from songstudio.cache.entity_cache import EntityCache
from songstudio.cache.service import CacheService
from songstudio.cache.warming import WarmupReport
from songstudio.errors import GatewayError


class TestWarmupReport:

    def test_all_failed(self):
        assert WarmupReport(failed={"songs": "down"}).all_failed
        assert not WarmupReport(loaded={"songs": 1}, failed={"pitches": "down"}).all_failed
        assert not WarmupReport().all_failed

    def test_to_dict_rounds_duration(self):
        report = WarmupReport(loaded={"songs": 2}, duration_seconds=0.123456)
        assert report.to_dict()["duration_seconds"] == 0.123


@pytest.mark.asyncio
class TestCacheWarmer:
    """Test eager loading."""

    async def test_warmup_loads_every_collection(self, service, seeded):
        service.cache.clear()

        report = await service.warmer.warmup(include_exports=False)

        assert report.loaded == {
            "songs": 2,
            "singers": 3,
            "pitches": 2,
            "sessions": 0,
            "templates": 0,
            "centers": 2,
            "feedback": 0,
        }
        assert report.export == {}

    async def test_every_collection_failing(self, service):
        with patch.object(service.gateway, "query_all", AsyncMock(side_effect=GatewayError("down"))):
            report = await service.warmer.warmup(include_exports=False)

        assert report.all_failed
        assert len(report.failed) == 7

    async def test_export_failure_is_reported(self, service, seeded):
        with patch.object(service.export, "load_all_from_db", AsyncMock(return_value={"singers": "down"})):
            report = await service.warmup()
        assert report.export == {"singers": "down"}
        assert not report.failed


@pytest.mark.asyncio
class TestBackgroundCleanup:
    """Test the periodic expiry task."""

    async def test_cleanup_removes_expired_entries(self, gateway, export_cache):
        cache = EntityCache(default_ttl=timedelta(seconds=30))
        service = CacheService(gateway, export_cache=export_cache, cache=cache)
        cache.set("songs:all", {})
        cache._entries["songs:all"].created_at -= 31

        await service.warmer.start_background_cleanup(interval_seconds=0.01)
        for _ in range(50):
            if "songs:all" not in cache:
                break
            await asyncio.sleep(0.01)
        await service.warmer.stop_background_cleanup()

        assert "songs:all" not in cache
        assert not service.warmer.running

    async def test_start_twice_keeps_one_task(self, service):
        await service.warmer.start_background_cleanup(interval_seconds=3600)
        task = service.warmer._task
        await service.warmer.start_background_cleanup(interval_seconds=3600)
        assert service.warmer._task is task
        await service.warmer.stop_background_cleanup()
