"""
Song Studio Caching Layer

In-process cache between the HTTP routes and the database:
- EntityCache: keyed resident collections with TTL, prefix invalidation
  and coalesced cold loads
- CacheService: typed write-through operations per entity
- CacheInvalidator: event-driven invalidation of denormalized views
- ExportCache: per-entity gzip blobs and zip bundles for offline clients
- CacheWarmer: startup loading and background expiry cleanup

Usage:
    service = CacheService(PersistenceGateway(engine))
    await service.warmup()

    songs = await service.get_all_songs()          # metadata only
    song = await service.get_song(song_id)         # with lyrics/meaning/tags
    singer = await service.create_singer({"name": "Asha"})

    archive = await service.export.get_bundle(ExportKind.SINGERS)
"""

from songstudio.cache.config import CacheConfig, CacheTTL, get_cache_config
from songstudio.cache.entry import TimedEntry
from songstudio.cache.entity_cache import CacheStats, EntityCache
from songstudio.cache.compression import RecordCompressor, CompressionStats
from songstudio.cache.invalidation import (
    CacheEvent,
    CacheInvalidator,
    CacheKeys,
    InvalidationResult,
)
from songstudio.cache.export import ExportCache, ExportKind, build_bundle
from songstudio.cache.warming import CacheWarmer, WarmupReport
from songstudio.cache.service import CacheService, PitchWriteResult, filter_by_center_access

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    # Core store
    "TimedEntry",
    "CacheStats",
    "EntityCache",
    # Compression
    "RecordCompressor",
    "CompressionStats",
    # Invalidation
    "CacheEvent",
    "CacheInvalidator",
    "CacheKeys",
    "InvalidationResult",
    # Export
    "ExportCache",
    "ExportKind",
    "build_bundle",
    # Warming
    "CacheWarmer",
    "WarmupReport",
    # Service
    "CacheService",
    "PitchWriteResult",
    "filter_by_center_access",
]
