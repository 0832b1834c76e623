"""
Pitches API

Endpoints:
- GET /api/pitches - All pitches (filter by songId or singerId)
- GET /api/pitches/{pitch_id} - Get pitch
- POST /api/pitches - Create, or update the existing pitch of the pair
- PUT /api/pitches/{pitch_id} - Update pitch value
- DELETE /api/pitches/{pitch_id} - Delete
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

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
router = APIRouter(prefix="/api/pitches", tags=["Pitches"])


class PitchCreate(CamelModel):
    song_id: str
    singer_id: str
    pitch: str


class PitchUpdate(CamelModel):
    pitch: str


@router.get("")
async def list_pitches(
    song_id: Optional[str] = Query(default=None, alias="songId"),
    singer_id: Optional[str] = Query(default=None, alias="singerId"),
    service: CacheService = Depends(get_cache_service),
):
    if song_id:
        loader = lambda: service.get_song_pitches(song_id)
    elif singer_id:
        loader = lambda: service.get_singer_pitches(singer_id)
    else:
        loader = service.get_all_pitches
    pitches = await list_or_empty("load pitches", loader)
    return [p.to_dict() for p in pitches]


@router.get("/{pitch_id}")
async def get_pitch(pitch_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load pitch"):
        pitch = await service.get_pitch(pitch_id)
    return not_found(pitch, "Pitch").to_dict()


@router.post("")
async def create_pitch(
    body: PitchCreate,
    response: Response,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    """201 when a new pitch was created, 200 when the pair already existed."""
    with translate_errors("create pitch"):
        result = await service.create_pitch(body.song_id, body.singer_id, body.pitch, created_by=user)
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return {**result.pitch.to_dict(), "updated": result.updated}


@router.put("/{pitch_id}")
async def update_pitch(
    pitch_id: str,
    body: PitchUpdate,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update pitch"):
        pitch = await service.update_pitch(pitch_id, body.pitch, updated_by=user)
    return pitch.to_dict()


@router.delete("/{pitch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pitch(pitch_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete pitch"):
        await service.delete_pitch(pitch_id)
