"""
Songs API

Endpoints:
- GET /api/songs - Metadata-only listing (no lyrics/meaning/tags)
- GET /api/songs/{song_id} - Full song with large-object content
- POST /api/songs - Create (idempotent on external source URL)
- PUT /api/songs/{song_id} - Update
- DELETE /api/songs/{song_id} - Delete (pitches cascade)
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
router = APIRouter(prefix="/api/songs", tags=["Songs"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SongFields(CamelModel):
    """Writable song fields."""
    name: Optional[str] = None
    external_source_url: Optional[str] = None
    language: Optional[str] = None
    deity: Optional[str] = None
    tempo: Optional[str] = None
    beat: Optional[str] = None
    raga: Optional[str] = None
    level: Optional[str] = None
    audio_link: Optional[str] = None
    video_link: Optional[str] = None
    golden_voice: Optional[bool] = None
    reference_gents_pitch: Optional[str] = None
    reference_ladies_pitch: Optional[str] = None
    lyrics: Optional[str] = None
    meaning: Optional[str] = None
    song_tags: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("")
async def list_songs(service: CacheService = Depends(get_cache_service)):
    songs = await list_or_empty("load songs", service.get_all_songs)
    return [song.to_dict() for song in songs]


@router.get("/{song_id}")
async def get_song(song_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load song"):
        song = await service.get_song(song_id)
    return not_found(song, "Song").to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_song(
    body: SongFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("create song"):
        song = await service.create_song(body.payload(), created_by=user)
    return song.to_dict()


@router.put("/{song_id}")
async def update_song(
    song_id: str,
    body: SongFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update song"):
        song = await service.update_song(song_id, body.payload(), updated_by=user)
    return song.to_dict()


@router.delete("/{song_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_song(song_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete song"):
        await service.delete_song(song_id)
