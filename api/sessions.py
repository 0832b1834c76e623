"""
Named Sessions API

Presentation playlists: an ordered list of (song, singer, pitch) items.

Endpoints:
- GET /api/sessions - List sessions (no items)
- GET /api/sessions/{session_id} - Session with items
- POST /api/sessions - Create
- PUT /api/sessions/{session_id} - Update name/description/centers
- DELETE /api/sessions/{session_id} - Delete (items cascade)
- POST /api/sessions/{session_id}/duplicate - Copy with items
- GET /api/sessions/{session_id}/items - Items in sequence order
- POST /api/sessions/{session_id}/items - Add item (append or insert at position)
- PUT /api/sessions/{session_id}/items - Replace every item
- PUT /api/sessions/{session_id}/reorder - Reorder items
- PUT /api/sessions/items/{item_id} - Update item
- DELETE /api/sessions/items/{item_id} - Delete item
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
router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


class SessionFields(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    center_ids: Optional[List[int]] = None


class SessionItemFields(CamelModel):
    song_id: Optional[str] = None
    singer_id: Optional[str] = None
    pitch: Optional[str] = None
    sequence_order: Optional[int] = Field(default=None, ge=1)


class DuplicateRequest(CamelModel):
    name: str


class ReplaceItemsRequest(CamelModel):
    items: List[SessionItemFields]


class ReorderRequest(CamelModel):
    item_ids: List[str]


# =============================================================================
# SESSION ITEMS (registered before /{session_id} routes)
# =============================================================================

@router.put("/items/{item_id}")
async def update_session_item(
    item_id: str,
    body: SessionItemFields,
    service: CacheService = Depends(get_cache_service),
):
    with translate_errors("update session item"):
        item = await service.update_session_item(item_id, body.payload())
    return item.to_dict()


@router.delete("/items/{item_id}")
async def delete_session_item(item_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete session item"):
        session = await service.delete_session_item(item_id)
    return session.to_dict()


# =============================================================================
# SESSIONS
# =============================================================================

@router.get("")
async def list_sessions(
    scope=Depends(center_scope),
    service: CacheService = Depends(get_cache_service),
):
    center_ids, is_admin = scope
    sessions = await list_or_empty("load sessions", service.get_all_sessions)
    return [s.to_dict() for s in filter_by_center_access(sessions, center_ids, is_admin)]


@router.get("/{session_id}")
async def get_session(session_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load session"):
        session = await service.get_session(session_id)
    return not_found(session, "Session").to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("create session"):
        session = await service.create_session(body.payload(), created_by=user)
    return session.to_dict()


@router.put("/{session_id}")
async def update_session(
    session_id: str,
    body: SessionFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update session"):
        session = await service.update_session(session_id, body.payload(), updated_by=user)
    return session.to_dict()


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete session"):
        await service.delete_session(session_id)


@router.post("/{session_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_session(
    session_id: str,
    body: DuplicateRequest,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("duplicate session"):
        session = await service.duplicate_session(session_id, body.name, created_by=user)
    return session.to_dict()


@router.get("/{session_id}/items")
async def get_session_items(session_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load session items"):
        items = await service.get_session_items(session_id)
    return [item.to_dict() for item in not_found(items, "Session")]


@router.post("/{session_id}/items", status_code=status.HTTP_201_CREATED)
async def add_session_item(
    session_id: str,
    body: SessionItemFields,
    service: CacheService = Depends(get_cache_service),
):
    with translate_errors("add session item"):
        item = await service.add_session_item(session_id, body.payload())
    return item.to_dict()


@router.put("/{session_id}/items")
async def set_session_items(
    session_id: str,
    body: ReplaceItemsRequest,
    service: CacheService = Depends(get_cache_service),
):
    with translate_errors("replace session items"):
        session = await service.set_session_items(session_id, [item.payload() for item in body.items])
    return session.to_dict()


@router.put("/{session_id}/reorder")
async def reorder_session_items(
    session_id: str,
    body: ReorderRequest,
    service: CacheService = Depends(get_cache_service),
):
    with translate_errors("reorder session items"):
        session = await service.reorder_session_items(session_id, body.item_ids)
    return session.to_dict()
