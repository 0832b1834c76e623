"""
Singers API

Endpoints:
- GET /api/singers - List singers (optionally scoped to centers)
- GET /api/singers/{singer_id} - Get singer
- POST /api/singers - Create (returns the existing singer on a duplicate name)
- PUT /api/singers/{singer_id} - Update
- DELETE /api/singers/{singer_id} - Delete (pitches cascade)
- PATCH /api/singers/{singer_id}/admin - Grant or revoke admin
- POST /api/singers/{singer_id}/editor-access - Grant editor access to a center
- DELETE /api/singers/{singer_id}/editor-access/{center_id} - Revoke editor access
- POST /api/singers/merge - Merge singers into a target singer
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import Field

from api.dependencies import (
    CamelModel,
    center_scope,
    get_cache_service,
    get_user,
    list_or_empty,
    not_found,
    translate_errors,
)
from songstudio.cache.service import CacheService, filter_by_center_access


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/singers", tags=["Singers"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SingerFields(CamelModel):
    name: Optional[str] = None
    gender: Optional[str] = None
    email: Optional[str] = None
    is_admin: Optional[bool] = None
    center_ids: Optional[List[int]] = None
    editor_for: Optional[List[int]] = None


class AdminStatusRequest(CamelModel):
    is_admin: bool


class EditorAccessRequest(CamelModel):
    center_id: int


class MergeRequest(CamelModel):
    target_singer_id: str
    singer_ids_to_merge: List[str] = Field(..., min_length=1)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("")
async def list_singers(
    scope=Depends(center_scope),
    service: CacheService = Depends(get_cache_service),
):
    center_ids, is_admin = scope
    singers = await list_or_empty("load singers", service.get_all_singers)
    return [s.to_dict() for s in filter_by_center_access(singers, center_ids, is_admin)]


@router.post("/merge")
async def merge_singers(
    body: MergeRequest,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("merge singers"):
        result = await service.merge_singers(body.target_singer_id, body.singer_ids_to_merge, updated_by=user)
    return {
        "targetSingerId": result.target_id,
        "mergedSingerIds": result.merged_ids,
        "pitchesReassigned": result.reassigned_pitches,
        "duplicatePitchesRemoved": result.removed_duplicate_pitches,
        "sessionItemsUpdated": result.session_items_updated,
    }


@router.get("/{singer_id}")
async def get_singer(singer_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load singer"):
        singer = await service.get_singer(singer_id)
    return not_found(singer, "Singer").to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_singer(
    body: SingerFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("create singer"):
        singer = await service.create_singer(body.payload(), created_by=user)
    return singer.to_dict()


@router.put("/{singer_id}")
async def update_singer(
    singer_id: str,
    body: SingerFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update singer"):
        singer = await service.update_singer(singer_id, body.payload(), updated_by=user)
    return singer.to_dict()


@router.delete("/{singer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_singer(singer_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete singer"):
        await service.delete_singer(singer_id)


@router.patch("/{singer_id}/admin")
async def update_admin_status(
    singer_id: str,
    body: AdminStatusRequest,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update admin status"):
        singer = await service.update_singer_admin_status(singer_id, body.is_admin, updated_by=user)
    return singer.to_dict()


@router.post("/{singer_id}/editor-access")
async def add_editor_access(
    singer_id: str,
    body: EditorAccessRequest,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("grant editor access"):
        singer = await service.add_editor_access(singer_id, body.center_id, updated_by=user)
    return singer.to_dict()


@router.delete("/{singer_id}/editor-access/{center_id}")
async def remove_editor_access(
    singer_id: str,
    center_id: int,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("revoke editor access"):
        singer = await service.remove_editor_access(singer_id, center_id, updated_by=user)
    return singer.to_dict()
