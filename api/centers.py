"""
Centers API

Endpoints:
- GET /api/centers - List centers with editor ids and singer counts
- GET /api/centers/{center_id} - Get center
- GET /api/centers/{center_id}/stats - Counts of tagged singers, templates, sessions
- POST /api/centers - Create
- PUT /api/centers/{center_id} - Update
- DELETE /api/centers/{center_id} - Delete (409 while still referenced)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status

from api.dependencies import (
    CamelModel,
    get_cache_service,
    get_user,
    list_or_empty,
    not_found,
    translate_errors,
)
from songstudio.cache.service import CacheService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/centers", tags=["Centers"])


class CenterFields(CamelModel):
    name: Optional[str] = None
    badge_text_color: Optional[str] = None


@router.get("")
async def list_centers(service: CacheService = Depends(get_cache_service)):
    centers = await list_or_empty("load centers", service.get_all_centers)
    return [c.to_dict() for c in centers]


@router.get("/{center_id}")
async def get_center(center_id: int, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load center"):
        center = await service.get_center(center_id)
    return not_found(center, "Center").to_dict()


@router.get("/{center_id}/stats")
async def get_center_stats(center_id: int, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load center stats"):
        stats = await service.get_center_stats(center_id)
    return not_found(stats, "Center")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_center(
    body: CenterFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("create center"):
        center = await service.create_center(body.payload(), created_by=user)
    return center.to_dict()


@router.put("/{center_id}")
async def update_center(
    center_id: int,
    body: CenterFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update center"):
        center = await service.update_center(center_id, body.payload(), updated_by=user)
    return center.to_dict()


@router.delete("/{center_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_center(center_id: int, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete center"):
        await service.delete_center(center_id)
