"""
Compressed Export Cache

Offline ("take offline") downloads are served from two layers:

1. Per-entity blobs: one gzip member per entity id holding the
   entity's canonical JSON. A single write recompresses one blob.
2. Bundles: a zip of every blob of one entity kind, assembled lazily
   and cached for a short freshness window. Any set/delete of a blob
   drops the cached bundle of that kind immediately, so a bundle is
   never older than the earlier of its TTL and the next write.

Bundles are all-or-nothing: if any blob is unusable the request fails
with ExportBuildError instead of serving a truncated archive.
"""

import asyncio
import io
import logging
import zipfile
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from songstudio.cache.compression import (
    RecordCompressor,
    deserialize_value,
    is_gzip,
)
from songstudio.cache.config import get_cache_config
from songstudio.cache.entry import TimedEntry
from songstudio.database.gateway import EntityType, PersistenceGateway
from songstudio.errors import ExportBuildError
from songstudio.models import (
    normalize_center,
    normalize_pitch,
    normalize_session,
    normalize_session_item,
    normalize_singer,
    normalize_song_content,
    normalize_song_summary,
    normalize_template,
)


logger = logging.getLogger(__name__)

# Fixed timestamp so identical content produces identical archives
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


class ExportKind(str, Enum):
    """Independently bundled export collections."""
    SONGS_LIST = "songs-list"
    SONGS_CONTENT = "songs-content"
    SINGERS = "singers"
    PITCHES = "pitches"
    TEMPLATES = "templates"
    SESSIONS = "sessions"
    CENTERS = "centers"


# Fields kept in the exported form of a kind (None = all)
EXPORT_FIELDS: Dict[ExportKind, Optional[Tuple[str, ...]]] = {
    ExportKind.CENTERS: ("id", "name", "badgeTextColor"),
}

SESSION_ITEM_EXPORT_FIELDS = ("id", "songId", "singerId", "pitch", "sequenceOrder")


def build_bundle(kind: ExportKind, blobs: List[Tuple[str, bytes]]) -> bytes:
    """Assemble a zip of already-compressed blobs (entries are stored, not deflated)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        for record_id, blob in blobs:
            if not is_gzip(blob):
                raise ExportBuildError(kind.value, f"invalid blob for id {record_id}")
            info = zipfile.ZipInfo(f"{record_id}.json.gz", date_time=ZIP_DATE_TIME)
            archive.writestr(info, blob)
    return buffer.getvalue()


class ExportCache:
    """
    Per-entity compressed blobs plus time-boxed zip bundles.

    Usage:
        export = ExportCache(gateway)
        await export.load_from_db(ExportKind.SINGERS)
        export.set(ExportKind.SINGERS, singer.id, singer)
        archive = await export.get_bundle(ExportKind.SINGERS)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        compressor: Optional[RecordCompressor] = None,
        bundle_ttl: Optional[timedelta] = None,
    ):
        config = get_cache_config()
        self.gateway = gateway
        self.compressor = compressor or RecordCompressor(level=config.compression_level)
        self.bundle_ttl = bundle_ttl or config.bundle_ttl

        self._blobs: Dict[ExportKind, Dict[str, bytes]] = {kind: {} for kind in ExportKind}
        self._bundles: Dict[ExportKind, TimedEntry] = {}
        # Bumped on every blob mutation; guards bundle storage
        self._versions: Dict[ExportKind, int] = {kind: 0 for kind in ExportKind}
        self._loaded: Set[ExportKind] = set()
        # Mutations made while a kind is being reloaded from the gateway
        self._journals: Dict[ExportKind, List[Tuple[str, Optional[bytes]]]] = {}
        self._locks: Dict[ExportKind, asyncio.Lock] = {}

        self.bundle_builds = 0
        self.bundle_hits = 0

    # =========================================================================
    # PER-ENTITY BLOBS
    # =========================================================================

    def _encode(self, kind: ExportKind, record: Any) -> bytes:
        data = record.to_dict() if hasattr(record, "to_dict") else dict(record)
        keep = EXPORT_FIELDS.get(kind)
        if keep is not None:
            data = {k: v for k, v in data.items() if k in keep}
        if kind is ExportKind.SESSIONS and data.get("items") is not None:
            # Items reference songs/singers by id; display fields come from their own bundles
            data["items"] = [
                {k: item.get(k) for k in SESSION_ITEM_EXPORT_FIELDS} for item in data["items"]
            ]
        return self.compressor.compress_record(data)

    def _mutate(self, kind: ExportKind, record_id: str, blob: Optional[bytes]) -> None:
        blobs = self._blobs[kind]
        if blob is None:
            blobs.pop(record_id, None)
        else:
            blobs[record_id] = blob
        if kind in self._journals:
            self._journals[kind].append((record_id, blob))
        self._invalidate_bundle(kind)

    def set(self, kind: ExportKind, record_id, record: Any) -> None:
        """Replace one entity's blob and drop the kind's bundle."""
        self._mutate(kind, str(record_id), self._encode(kind, record))

    def delete(self, kind: ExportKind, record_id) -> None:
        """Remove one entity's blob and drop the kind's bundle."""
        self._mutate(kind, str(record_id), None)

    def set_song(self, song_id: str, summary: Any, content: Any = None) -> None:
        """Songs are exported as two kinds: the listing and the large-object content."""
        self.set(ExportKind.SONGS_LIST, song_id, summary)
        if content is not None:
            self.set(ExportKind.SONGS_CONTENT, song_id, {"id": song_id, **content.to_dict()})

    def delete_song(self, song_id: str) -> None:
        self.delete(ExportKind.SONGS_LIST, song_id)
        self.delete(ExportKind.SONGS_CONTENT, song_id)

    def mark_stale(self, kind: ExportKind) -> None:
        """Force a full reload of a kind on its next bundle request."""
        self._loaded.discard(kind)
        self._invalidate_bundle(kind)

    async def refresh(self, kind: ExportKind) -> None:
        """Reload a kind now if it is loaded; otherwise leave it to lazy loading."""
        if kind in self._loaded:
            await self.load_from_db(kind)

    def get(self, kind: ExportKind, record_id) -> Optional[Dict[str, Any]]:
        """Decompressed exported form of one entity, or None."""
        blob = self._blobs[kind].get(str(record_id))
        if blob is None:
            return None
        return self.compressor.decompress_record(blob)

    def version(self, kind: ExportKind) -> int:
        """Bumped on every blob mutation of a kind."""
        return self._versions[kind]

    def ids(self, kind: ExportKind) -> List[str]:
        return sorted(self._blobs[kind].keys())

    def is_loaded(self, kind: ExportKind) -> bool:
        return kind in self._loaded

    # =========================================================================
    # LOADING
    # =========================================================================

    async def _fetch(self, kind: ExportKind) -> List[Tuple[str, Any]]:
        """Read every entity of a kind from the gateway as (id, record)."""
        if kind is ExportKind.SONGS_LIST:
            rows = await self.gateway.query_all(EntityType.SONGS)
            return [(r.id, r) for r in map(normalize_song_summary, rows)]

        if kind is ExportKind.SONGS_CONTENT:
            rows = await self.gateway.query_all_song_content()
            return [
                (str(row["id"]), {"id": str(row["id"]), **normalize_song_content(row).to_dict()})
                for row in rows
            ]

        if kind is ExportKind.SESSIONS:
            sessions = [normalize_session(r) for r in await self.gateway.query_all(EntityType.SESSIONS)]
            items = [normalize_session_item(r) for r in await self.gateway.query_session_items()]
            by_session: Dict[str, list] = {}
            for item in items:
                by_session.setdefault(item.session_id, []).append(item)
            for session in sessions:
                session.items = by_session.get(session.id, [])
            return [(s.id, s) for s in sessions]

        entity, normalize = {
            ExportKind.SINGERS: (EntityType.SINGERS, normalize_singer),
            ExportKind.PITCHES: (EntityType.PITCHES, normalize_pitch),
            ExportKind.TEMPLATES: (EntityType.TEMPLATES, normalize_template),
            ExportKind.CENTERS: (EntityType.CENTERS, normalize_center),
        }[kind]
        rows = await self.gateway.query_all(entity)
        return [(str(r.id), r) for r in map(normalize, rows)]

    def _lock(self, kind: ExportKind) -> asyncio.Lock:
        if kind not in self._locks:
            self._locks[kind] = asyncio.Lock()
        return self._locks[kind]

    async def _load(self, kind: ExportKind) -> int:
        self._journals[kind] = []
        try:
            records = await self._fetch(kind)
            blobs = {str(record_id): self._encode(kind, record) for record_id, record in records}
            # Writes that landed while the gateway read was in flight win
            for record_id, blob in self._journals[kind]:
                if blob is None:
                    blobs.pop(record_id, None)
                else:
                    blobs[record_id] = blob
        finally:
            del self._journals[kind]

        self._blobs[kind] = blobs
        self._loaded.add(kind)
        self._invalidate_bundle(kind)
        logger.info(f"Loaded {len(blobs)} {kind.value} export blobs")
        return len(blobs)

    async def load_from_db(self, kind: ExportKind) -> int:
        """Rebuild the per-id blob map of one kind from the gateway."""
        async with self._lock(kind):
            return await self._load(kind)

    async def load_all_from_db(self, include_song_content: bool = False) -> Dict[str, Any]:
        """
        Rebuild every kind. Song content is skipped unless requested
        and is then loaded on first bundle request.

        Returns:
            Dict of kind -> blob count, or the error message on failure
        """
        results: Dict[str, Any] = {}
        for kind in ExportKind:
            if kind is ExportKind.SONGS_CONTENT and not include_song_content:
                continue
            try:
                results[kind.value] = await self.load_from_db(kind)
            except Exception as e:
                logger.error(f"Failed to load {kind.value} export blobs: {e}")
                results[kind.value] = str(e)
        return results

    async def _ensure_loaded(self, kind: ExportKind) -> None:
        if kind in self._loaded:
            return
        async with self._lock(kind):
            if kind not in self._loaded:
                await self._load(kind)

    # =========================================================================
    # BUNDLES
    # =========================================================================

    def _invalidate_bundle(self, kind: ExportKind) -> None:
        self._versions[kind] += 1
        self._bundles.pop(kind, None)

    async def get_bundle(self, kind: ExportKind) -> bytes:
        """
        Zip of every blob of a kind, rebuilt when the cached bundle is
        older than the TTL or a blob changed since it was built.
        """
        entry = self._bundles.get(kind)
        if entry is not None and not entry.is_expired():
            entry.hit_count += 1
            self.bundle_hits += 1
            return entry.value

        await self._ensure_loaded(kind)
        version = self._versions[kind]
        snapshot = sorted(self._blobs[kind].items())

        try:
            bundle = await asyncio.to_thread(build_bundle, kind, snapshot)
        except ExportBuildError:
            logger.error(f"Refusing to serve partial {kind.value} bundle")
            raise
        except (zipfile.BadZipFile, OSError, ValueError) as e:
            raise ExportBuildError(kind.value, str(e)) from e

        self.bundle_builds += 1
        if self._versions[kind] == version:
            self._bundles[kind] = TimedEntry(value=bundle, ttl=self.bundle_ttl)
        logger.debug(f"Built {kind.value} bundle: {len(snapshot)} entries, {len(bundle)} bytes")
        return bundle

    def read_bundle(self, bundle: bytes) -> Dict[str, Any]:
        """Unpack a bundle into {id: record}."""
        records = {}
        with zipfile.ZipFile(io.BytesIO(bundle)) as archive:
            for name in archive.namelist():
                record_id = name[: -len(".json.gz")]
                records[record_id] = deserialize_value(self.compressor.decompress(archive.read(name)))
        return records

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def clear(self) -> None:
        for kind in ExportKind:
            self._blobs[kind] = {}
            self._invalidate_bundle(kind)
        self._loaded.clear()

    def get_manifest(self) -> Dict[str, Any]:
        """Per-kind blob counts and sizes."""
        manifest = {}
        for kind in ExportKind:
            blobs = self._blobs[kind]
            entry = self._bundles.get(kind)
            manifest[kind.value] = {
                "loaded": kind in self._loaded,
                "count": len(blobs),
                "size_bytes_compressed": sum(len(b) for b in blobs.values()),
                "bundle_cached": entry is not None and not entry.is_expired(),
            }
        return manifest

    def get_stats(self) -> Dict[str, Any]:
        return {
            "bundle_builds": self.bundle_builds,
            "bundle_hits": self.bundle_hits,
            "kinds": self.get_manifest(),
        }
