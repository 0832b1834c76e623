"""
Offline Download API

"Take offline" support for clients that work without a connection.

Endpoints:
- GET /api/offline/manifest - Per-kind blob counts and sizes
- GET /api/offline/bundles/{kind} - Zip of per-entity gzip blobs for one kind
- POST /api/offline/songs/batch - Full songs (with lyrics) for a list of ids
- GET /api/offline/download - Everything visible to the caller's centers, as JSON
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response

from api.dependencies import (
    CamelModel,
    center_scope,
    get_cache_service,
    translate_errors,
)
from songstudio.cache.export import ExportKind
from songstudio.cache.service import CacheService, filter_by_center_access


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/offline", tags=["Offline"])


class SongsBatchRequest(CamelModel):
    song_ids: List[str]


@router.get("/manifest")
async def get_manifest(service: CacheService = Depends(get_cache_service)):
    return service.export.get_manifest()


@router.get("/bundles/{kind}")
async def get_bundle(kind: str, service: CacheService = Depends(get_cache_service)):
    try:
        export_kind = ExportKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown export kind: {kind}")

    with translate_errors(f"build {kind} bundle"):
        bundle = await service.export.get_bundle(export_kind)
    return Response(
        content=bundle,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{export_kind.value}.zip"'},
    )


@router.post("/songs/batch")
async def get_songs_batch(body: SongsBatchRequest, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load songs"):
        songs = await service.get_songs_batch(body.song_ids)
    return [song.to_dict() for song in songs]


@router.get("/download")
async def download_all(
    scope=Depends(center_scope),
    service: CacheService = Depends(get_cache_service),
):
    """
    Data needed to run sessions offline, filtered to the caller's centers.

    Pitches are limited to visible singers. Songs come without
    lyrics; clients fetch content through /songs/batch.
    """
    center_ids, is_admin = scope
    with translate_errors("prepare offline download"):
        singers = filter_by_center_access(await service.get_all_singers(), center_ids, is_admin)
        visible = {s.id for s in singers}
        pitches = [p for p in await service.get_all_pitches() if p.singer_id in visible]
        payload = {
            "songs": [s.to_dict() for s in await service.get_all_songs()],
            "singers": [s.to_dict() for s in singers],
            "pitches": [p.to_dict() for p in pitches],
            "templates": [
                t.to_dict() for t in
                filter_by_center_access(await service.get_all_templates(), center_ids, is_admin)
            ],
            "sessions": [
                s.to_dict() for s in
                filter_by_center_access(await service.get_all_sessions(), center_ids, is_admin)
            ],
            "centers": [c.to_dict() for c in await service.get_all_centers()],
        }
    logger.info(
        f"Offline download: {len(payload['songs'])} songs, {len(singers)} singers, "
        f"{len(pitches)} pitches"
    )
    return payload
