"""
Cache Configuration

Centralized configuration for the in-process caching layer.
TTLs bound how long resident collections, export bundles and
cached web sessions may be served before they are re-read.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL configuration by data type.

    Collections are kept consistent by write-through and invalidation;
    the TTL only bounds drift caused by writes from other processes.
    """

    # Resident entity collections (songs, singers, pitches, ...)
    COLLECTION: timedelta = timedelta(minutes=10)

    # Assembled zip bundles for offline download
    EXPORT_BUNDLE: timedelta = timedelta(minutes=5)

    # Web sessions held in process memory
    SESSION_CACHE: timedelta = timedelta(minutes=5)

    # Web session lifetime when the cookie carries no expiry
    SESSION_MAX_AGE: timedelta = timedelta(days=30)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - CACHE_DEFAULT_TTL_SECONDS: Lifetime of resident collections
    - EXPORT_BUNDLE_TTL_SECONDS: Freshness window of zip bundles
    - SESSION_CACHE_TTL_SECONDS: Lifetime of cached web sessions
    """

    default_ttl_seconds: int = field(default_factory=lambda: _env_int(
        "CACHE_DEFAULT_TTL_SECONDS",
        int(CacheTTL.COLLECTION.total_seconds()),
    ))

    bundle_ttl_seconds: int = field(default_factory=lambda: _env_int(
        "EXPORT_BUNDLE_TTL_SECONDS",
        int(CacheTTL.EXPORT_BUNDLE.total_seconds()),
    ))

    # gzip level for per-item export blobs
    compression_level: int = field(default_factory=lambda: _env_int(
        "EXPORT_COMPRESSION_LEVEL",
        6,
    ))

    session_ttl_seconds: int = field(default_factory=lambda: _env_int(
        "SESSION_CACHE_TTL_SECONDS",
        int(CacheTTL.SESSION_CACHE.total_seconds()),
    ))

    session_sweep_interval_seconds: int = field(default_factory=lambda: _env_int(
        "SESSION_SWEEP_INTERVAL_SECONDS",
        300,
    ))

    session_max_age_days: int = field(default_factory=lambda: _env_int(
        "SESSION_DEFAULT_MAX_AGE_DAYS",
        CacheTTL.SESSION_MAX_AGE.days,
    ))

    cleanup_interval_seconds: int = field(default_factory=lambda: _env_int(
        "CACHE_CLEANUP_INTERVAL_SECONDS",
        600,
    ))

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(seconds=self.default_ttl_seconds)

    @property
    def bundle_ttl(self) -> timedelta:
        return timedelta(seconds=self.bundle_ttl_seconds)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(seconds=self.session_ttl_seconds)

    @property
    def session_max_age(self) -> timedelta:
        return timedelta(days=self.session_max_age_days)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()
