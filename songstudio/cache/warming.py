"""
Cache Warming Service

Loads resident collections at process start so first requests are
served from memory, and runs a background task that drops expired
entries independent of request traffic.

Song large-object content is never warmed; it is fetched per song on
first detail view, or in bulk by the offline export.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

from songstudio.cache.config import get_cache_config

if TYPE_CHECKING:
    from songstudio.cache.service import CacheService


logger = logging.getLogger(__name__)


@dataclass
class WarmupReport:
    """Outcome of a warmup run."""
    loaded: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    export: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def all_failed(self) -> bool:
        return not self.loaded and bool(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loaded": self.loaded,
            "failed": self.failed,
            "export": self.export,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class CacheWarmer:
    """
    Eager loading of entity collections.

    A failure loading one collection is logged and recorded; the other
    collections still load, and the failed one is loaded lazily on
    first access.
    """

    def __init__(self, service: "CacheService"):
        self.service = service
        self._config = get_cache_config()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def warmup(self, include_exports: bool = True) -> WarmupReport:
        start = time.time()
        report = WarmupReport()

        collections = {
            "songs": self.service.get_all_songs,
            "singers": self.service.get_all_singers,
            "pitches": self.service.get_all_pitches,
            "sessions": self.service.get_all_sessions,
            "templates": self.service.get_all_templates,
            "centers": self.service.get_all_centers,
            "feedback": self.service.get_all_feedback,
        }

        for name, loader in collections.items():
            try:
                records = await loader()
                report.loaded[name] = len(records)
                logger.debug(f"Warmed {name}: {len(records)} records")
            except Exception as e:
                logger.error(f"Failed to warm {name}: {e}")
                report.failed[name] = str(e)

        if include_exports:
            report.export = await self.service.export.load_all_from_db()

        report.duration_seconds = time.time() - start
        if report.all_failed:
            logger.error(f"Cache warmup failed for every collection: {report.failed}")
        else:
            logger.info(
                f"Cache warmup complete: {len(report.loaded)}/{len(collections)} collections "
                f"in {report.duration_seconds:.2f}s"
            )
        return report

    async def start_background_cleanup(
        self,
        interval_seconds: Optional[int] = None,
    ):
        """Start periodic removal of expired cache entries."""
        if self._running:
            logger.warning("Background cache cleanup already running")
            return

        interval = interval_seconds or self._config.cleanup_interval_seconds
        self._running = True

        async def cleanup_loop():
            while self._running:
                await asyncio.sleep(interval)
                try:
                    removed = self.service.cache.cleanup_expired()
                    if removed:
                        logger.info(f"Background cleanup removed {removed} expired entries")
                except Exception as e:
                    logger.error(f"Background cleanup error: {e}")

        self._task = asyncio.create_task(cleanup_loop())
        logger.info(f"Background cache cleanup started (interval: {interval}s)")

    async def stop_background_cleanup(self):
        """Stop periodic cleanup task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Background cache cleanup stopped")

    @property
    def running(self) -> bool:
        return self._running
