"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Statistics for the entity cache and export cache
- Manual invalidation of one key or a key prefix
- Reload: drop everything and warm again (the only cross-instance
  consistency tool, since each process holds its own cache)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import get_cache_service
from songstudio.cache.invalidation import CacheEvent
from songstudio.cache.service import CacheService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    cache: Dict[str, Any]
    export: Dict[str, Any]
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class InvalidationRequest(BaseModel):
    key: Optional[str] = None
    prefix: Optional[str] = None


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    keys_invalidated: int
    duration_ms: float = 0.0


class ReloadResponse(BaseModel):
    success: bool
    loaded: Dict[str, int]
    failed: Dict[str, str]
    export: Dict[str, Any]
    duration_seconds: float


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(service: CacheService = Depends(get_cache_service)):
    """Hit rates, resident keys, load latency and export bundle state."""
    return CacheStatsResponse(**service.get_stats())


@router.post("/invalidate", response_model=InvalidationResponse)
async def invalidate_cache(
    body: InvalidationRequest,
    service: CacheService = Depends(get_cache_service),
):
    """
    Invalidate one key or every key under a prefix.

    Examples:
        {"key": "songs:all"}
        {"prefix": "pitches:"}
    """
    if body.key:
        existed = service.invalidate(body.key)
        return InvalidationResponse(success=True, keys_invalidated=int(existed))
    if body.prefix is not None:
        count = service.invalidate_pattern(body.prefix)
        return InvalidationResponse(success=True, keys_invalidated=count)
    raise HTTPException(status_code=400, detail="Provide a key or a prefix")


@router.post("/invalidate/all", response_model=InvalidationResponse)
async def invalidate_all(service: CacheService = Depends(get_cache_service)):
    result = service.invalidator.handle_event(CacheEvent.MANUAL_INVALIDATE_ALL)
    logger.info(f"Manual invalidation removed {result.keys_invalidated} keys")
    return InvalidationResponse(
        success=result.success,
        keys_invalidated=result.keys_invalidated,
        duration_ms=result.duration_ms,
    )


@router.post("/reload", response_model=ReloadResponse)
async def reload_cache(service: CacheService = Depends(get_cache_service)):
    """Clear resident collections and export blobs, then warm up again."""
    report = await service.reload()
    return ReloadResponse(success=not report.all_failed, **report.to_dict())
