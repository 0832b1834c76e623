"""
Cache Service

Write-through cache between the HTTP routes and the persistence
gateway. One instance is created at process start and injected into
the routes.

Rules every write follows:
1. Persist through the gateway first. If that fails, memory is untouched.
2. Re-read the written row and patch the resident collection (or
   invalidate it when it is not resident).
   A re-read overtaken by a concurrent write or delete of the same
   record is discarded and the collection invalidated instead.
3. Refresh the entity's export blob in the same operation.
4. Invalidate other collections the write reaches indirectly
   (see songstudio.cache.invalidation).

Creates are idempotent: an advisory duplicate check runs against the
resident collection, and a unique-key violation from the store is
resolved by returning the record that already exists.

Songs use two tiers. The resident listing holds metadata only;
lyrics, meaning and tags are fetched per song on first get_song()
and cached under a per-song key.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from songstudio.cache.config import CacheConfig, get_cache_config
from songstudio.cache.entity_cache import EntityCache
from songstudio.cache.export import ExportCache, ExportKind
from songstudio.cache.invalidation import CacheEvent, CacheInvalidator, CacheKeys
from songstudio.cache.warming import CacheWarmer, WarmupReport
from songstudio.database.gateway import EntityType, MergeResult, PersistenceGateway
from songstudio.errors import (
    CenterInUseError,
    GatewayError,
    RecordNotFoundError,
    UniqueConstraintError,
    ValidationError,
)
from songstudio.models import (
    DEFAULT_BADGE_COLOR,
    FEEDBACK_CATEGORIES,
    Center,
    Feedback,
    NamedSession,
    Pitch,
    SessionItem,
    Singer,
    Song,
    SongContent,
    SongSummary,
    Template,
    name_key,
    normalize_center,
    normalize_feedback,
    normalize_pitch,
    normalize_session,
    normalize_session_item,
    normalize_singer,
    normalize_song_content,
    normalize_song_summary,
    normalize_template,
    parse_id_list,
)


logger = logging.getLogger(__name__)

SONG_FIELDS = (
    "name", "external_source_url", "language", "deity", "tempo", "beat",
    "raga", "level", "audio_link", "video_link", "golden_voice",
    "reference_gents_pitch", "reference_ladies_pitch",
    "lyrics", "meaning", "song_tags",
)
SINGER_FIELDS = ("name", "gender", "email", "is_admin", "center_ids", "editor_for")
TEMPLATE_FIELDS = (
    "name", "description", "aspect_ratio", "slides",
    "reference_slide_index", "center_ids", "is_default",
)
SESSION_FIELDS = ("name", "description", "center_ids")
SESSION_ITEM_FIELDS = ("song_id", "singer_id", "pitch", "sequence_order")
CENTER_FIELDS = ("name", "badge_text_color")
FEEDBACK_FIELDS = ("feedback", "category", "email", "user_agent", "url", "ip_address")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class PitchWriteResult:
    """Outcome of create_pitch: a new row, an in-place update, or a no-op."""
    pitch: Pitch
    created: bool = False
    updated: bool = False


def _by_name(record) -> str:
    return (record.name or "").lower()


def _pick(payload: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    """Keep only known fields; unknown ones are a caller error."""
    unknown = set(payload) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", sorted(unknown)[0])
    return dict(payload)


def _require_name(fields: Dict[str, Any], entity: str, required: bool = True) -> None:
    if "name" not in fields:
        if required:
            raise ValidationError(f"{entity} name is required", "name")
        return
    name = (fields["name"] or "").strip()
    if not name:
        raise ValidationError(f"{entity} name cannot be empty", "name")
    if len(name) > 255:
        raise ValidationError(f"{entity} name must be 255 characters or less", "name")
    fields["name"] = name


def filter_by_center_access(
    records: Iterable[Any],
    center_ids: Optional[Iterable[int]],
    is_admin: bool = False,
) -> List[Any]:
    """
    Restrict records to those visible from a set of centers.

    Admins and callers without centers see everything; records with no
    center_ids are public; otherwise any overlap grants visibility.
    """
    records = list(records)
    allowed = set(parse_id_list(list(center_ids or [])))
    if is_admin or not allowed:
        return records
    return [r for r in records if not r.center_ids or allowed.intersection(r.center_ids)]


class CacheService:
    """
    Typed get/invalidate/export interface over the gateway.

    Lifecycle:
        service = CacheService(gateway)
        await service.warmup()       # process start
        ...
        await service.shutdown()     # graceful termination
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        export_cache: Optional[ExportCache] = None,
        cache: Optional[EntityCache] = None,
        config: Optional[CacheConfig] = None,
    ):
        self.config = config or get_cache_config()
        self.gateway = gateway
        self.export = export_cache or ExportCache(gateway)
        self.cache = cache or EntityCache(default_ttl=self.config.default_ttl)
        self.invalidator = CacheInvalidator(self.cache)
        self.warmer = CacheWarmer(self)

    # =========================================================================
    # RESIDENT COLLECTION HELPERS
    # =========================================================================

    async def _collection(
        self,
        key: str,
        entity: EntityType,
        normalize: Callable[[Dict[str, Any]], Any],
    ) -> Dict[Any, Any]:
        async def load():
            rows = await self.gateway.query_all(entity)
            records = [normalize(row) for row in rows]
            logger.info(f"Loaded {len(records)} {entity.value} into cache")
            return {record.id: record for record in records}

        return await self.cache.get_or_load(key, load)

    def _resident(self, key: str) -> Optional[Dict[Any, Any]]:
        return self.cache.peek(key)

    def _mark_written(self, key: str, record_id: Any) -> None:
        self.cache.invalidate(CacheKeys.record(key, record_id))

    def _guard(self, key: str, record_id: Any) -> Tuple[str, int]:
        """Note a record's write generation before a gateway read."""
        marker = CacheKeys.record(key, record_id)
        return marker, self.cache.generation(marker)

    def _overtaken(self, guard: Tuple[str, int], key: str, kind: Optional[ExportKind]) -> bool:
        """
        True if the record was written or deleted since the guard was
        taken. The read is then stale: nothing is stored, the collection
        is dropped and the export kind reloads on its next bundle request.
        """
        marker, generation = guard
        if self.cache.generation(marker) == generation:
            return False
        logger.debug(f"Discarding read of {marker} overtaken by a concurrent write")
        self.cache.invalidate(key)
        if kind is not None:
            self.export.mark_stale(kind)
        return True

    def _upsert_resident(self, key: str, record: Any) -> None:
        self._mark_written(key, record.id)
        collection = self._resident(key)
        if collection is None:
            # A cold load may be in flight; make sure it is not stored
            self.cache.invalidate(key)
        else:
            collection[record.id] = record

    def _remove_resident(self, key: str, record_id: Any) -> None:
        self._mark_written(key, record_id)
        collection = self._resident(key)
        if collection is None:
            self.cache.invalidate(key)
        else:
            collection.pop(record_id, None)

    def _remove_resident_where(self, key: str, predicate: Callable[[Any], bool]) -> List[Any]:
        collection = self._resident(key)
        if collection is None:
            self.cache.invalidate(key)
            return []
        removed = [record for record in collection.values() if predicate(record)]
        for record in removed:
            self._mark_written(key, record.id)
            del collection[record.id]
        return removed

    async def _best_effort(self, description: str, key: str, work: Awaitable[Any]) -> None:
        """
        Run a secondary refresh after a durable write. On gateway failure
        the affected collection is dropped so it re-reads on next access.
        """
        try:
            await work
        except GatewayError as e:
            logger.warning(f"Could not refresh {description} after write, invalidating {key}: {e}")
            self.cache.invalidate_pattern(key)

    # =========================================================================
    # SONGS
    # =========================================================================

    async def _songs(self) -> Dict[str, SongSummary]:
        return await self._collection(CacheKeys.SONGS, EntityType.SONGS, normalize_song_summary)

    async def get_all_songs(self) -> List[SongSummary]:
        """Metadata-only projection of every song (getAllLight)."""
        return sorted((await self._songs()).values(), key=_by_name)

    async def get_song_summary(self, song_id: str) -> Optional[SongSummary]:
        songs = self._resident(CacheKeys.SONGS)
        if songs is not None:
            return songs.get(song_id)
        row = await self.gateway.query_by_id(EntityType.SONGS, song_id)
        return normalize_song_summary(row) if row else None

    async def get_song(self, song_id: str) -> Optional[Song]:
        """Metadata merged with large-object content (getFull)."""
        async def load():
            summary = await self.get_song_summary(song_id)
            if summary is None:
                return None
            row = await self.gateway.query_song_content(song_id)
            if row is None:
                return None
            return Song.hydrate(summary, normalize_song_content(row))

        return await self.cache.get_or_load(CacheKeys.song_full(song_id), load)

    async def get_all_songs_full(self) -> List[Song]:
        """Every song with content; for bulk export paths only."""
        summaries = await self.get_all_songs()
        rows = await self.gateway.query_all_song_content()
        contents = {str(row["id"]): normalize_song_content(row) for row in rows}
        return [Song.hydrate(s, contents.get(s.id, SongContent())) for s in summaries]

    async def get_songs_batch(self, song_ids: List[str]) -> List[Song]:
        songs = await asyncio.gather(*(self.get_song(song_id) for song_id in song_ids))
        return [song for song in songs if song is not None]

    async def _refresh_song(self, song_id: str) -> Optional[Song]:
        """Re-read one song after a write and propagate it everywhere."""
        self.cache.invalidate(CacheKeys.song_full(song_id))
        guard = self._guard(CacheKeys.SONGS, song_id)
        row = await self.gateway.query_by_id(EntityType.SONGS, song_id)
        content_row = await self.gateway.query_song_content(song_id)
        if self._overtaken(guard, CacheKeys.SONGS, ExportKind.SONGS_LIST):
            self.export.mark_stale(ExportKind.SONGS_CONTENT)
            if row is None or content_row is None:
                return None
            return Song.hydrate(normalize_song_summary(row), normalize_song_content(content_row))
        if row is None or content_row is None:
            self._remove_resident(CacheKeys.SONGS, song_id)
            self.export.delete_song(song_id)
            return None

        summary = normalize_song_summary(row)
        content = normalize_song_content(content_row)
        song = Song.hydrate(summary, content)
        self._upsert_resident(CacheKeys.SONGS, summary)
        self.cache.set(CacheKeys.song_full(song_id), song)
        self.export.set_song(song_id, summary, content)
        return song

    async def _refresh_song_counts(self, song_ids: Iterable[str]) -> None:
        for song_id in set(song_ids):
            guard = self._guard(CacheKeys.SONGS, song_id)
            count = await self.gateway.count_pitches(song_id=song_id)
            songs = self._resident(CacheKeys.SONGS)
            summary = songs.get(song_id) if songs is not None else None
            if summary is None:
                summary = await self.get_song_summary(song_id)
            if self._overtaken(guard, CacheKeys.SONGS, ExportKind.SONGS_LIST) or summary is None:
                continue
            summary = replace(summary, pitch_count=count)
            self._upsert_resident(CacheKeys.SONGS, summary)
            full = self.cache.peek(CacheKeys.song_full(song_id))
            if full is not None:
                self.cache.set(CacheKeys.song_full(song_id), replace(full, pitch_count=count))
            self.export.set(ExportKind.SONGS_LIST, song_id, summary)

    async def create_song(self, payload: Dict[str, Any], created_by: Optional[str] = None) -> Song:
        fields = _pick(payload, SONG_FIELDS)
        _require_name(fields, "Song")
        url = fields.get("external_source_url")

        if url:
            existing = next((s for s in (await self._songs()).values() if s.external_source_url == url), None)
            if existing is not None:
                logger.info(f"Song with source {url} already exists, returning {existing.id}")
                return await self.get_song(existing.id)

        try:
            song_id = await self.gateway.insert(EntityType.SONGS, {**fields, "created_by": created_by})
        except UniqueConstraintError:
            row = await self.gateway.query_by_natural_key(EntityType.SONGS, url) if url else None
            if row is None:
                raise
            logger.info(f"Song with source {url} was created concurrently, returning existing")
            return await self._refresh_song(str(row["id"]))

        return await self._refresh_song(song_id)

    async def update_song(self, song_id: str, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Song:
        fields = _pick(payload, SONG_FIELDS)
        _require_name(fields, "Song", required=False)
        await self.gateway.update(EntityType.SONGS, song_id, {**fields, "updated_by": updated_by})

        song = await self._refresh_song(song_id)
        if song is None:
            raise RecordNotFoundError(EntityType.SONGS.value, song_id)
        if "name" in fields:
            # Pitch listings carry the song name
            self.invalidator.handle_event(CacheEvent.SONG_UPDATED)
            await self._best_effort("pitch exports", "pitches:", self._refresh_pitch_exports(song_id=song_id))
        return song

    async def delete_song(self, song_id: str) -> None:
        pitches = [normalize_pitch(r) for r in await self.gateway.query_pitches(song_id=song_id)]
        await self.gateway.delete(EntityType.SONGS, song_id)

        self._remove_resident(CacheKeys.SONGS, song_id)
        self.cache.invalidate(CacheKeys.song_full(song_id))
        self.export.delete_song(song_id)

        removed = self._remove_resident_where(CacheKeys.PITCHES, lambda p: p.song_id == song_id)
        for pitch_id in {p.id for p in pitches} | {p.id for p in removed}:
            self._mark_written(CacheKeys.PITCHES, pitch_id)
            self.export.delete(ExportKind.PITCHES, pitch_id)

        self.invalidator.handle_event(CacheEvent.SONG_DELETED)
        await self._best_effort(
            "singer pitch counts", "singers:",
            self._refresh_singer_counts({p.singer_id for p in pitches}),
        )
        await self._best_effort("session exports", "sessions:", self.export.refresh(ExportKind.SESSIONS))
        logger.info(f"Deleted song {song_id} and {len(pitches)} pitches")

    # =========================================================================
    # SINGERS
    # =========================================================================

    async def _singers(self) -> Dict[str, Singer]:
        return await self._collection(CacheKeys.SINGERS, EntityType.SINGERS, normalize_singer)

    async def get_all_singers(self) -> List[Singer]:
        return sorted((await self._singers()).values(), key=_by_name)

    async def get_singer(self, singer_id: str) -> Optional[Singer]:
        singers = self._resident(CacheKeys.SINGERS)
        if singers is not None:
            return singers.get(singer_id)
        row = await self.gateway.query_by_id(EntityType.SINGERS, singer_id)
        return normalize_singer(row) if row else None

    async def _refresh_singer(self, singer_id: str) -> Optional[Singer]:
        guard = self._guard(CacheKeys.SINGERS, singer_id)
        row = await self.gateway.query_by_id(EntityType.SINGERS, singer_id)
        if self._overtaken(guard, CacheKeys.SINGERS, ExportKind.SINGERS):
            return normalize_singer(row) if row else None
        if row is None:
            self._remove_resident(CacheKeys.SINGERS, singer_id)
            self.export.delete(ExportKind.SINGERS, singer_id)
            return None
        singer = normalize_singer(row)
        self._upsert_resident(CacheKeys.SINGERS, singer)
        self.export.set(ExportKind.SINGERS, singer_id, singer)
        return singer

    async def _refresh_singer_counts(self, singer_ids: Iterable[str]) -> None:
        for singer_id in set(singer_ids):
            await self._refresh_singer(singer_id)

    def _validate_singer(self, fields: Dict[str, Any], current: Optional[Singer] = None) -> None:
        is_admin = fields.get("is_admin", current.is_admin if current else False)
        email = fields.get("email", current.email if current else None)
        if is_admin and not (email or "").strip():
            raise ValidationError("Admin users must have an email address", "email")
        for key in ("center_ids", "editor_for"):
            if key in fields:
                fields[key] = parse_id_list(fields[key])

    async def create_singer(self, payload: Dict[str, Any], created_by: Optional[str] = None) -> Singer:
        """
        Create a singer, or return the existing one with the same name
        (case-insensitive). Safe under concurrent double-submits.
        """
        fields = _pick(payload, SINGER_FIELDS)
        _require_name(fields, "Singer")
        self._validate_singer(fields)
        key = name_key(fields["name"])

        existing = next((s for s in (await self._singers()).values() if name_key(s.name) == key), None)
        if existing is not None:
            logger.info(f"Singer '{fields['name']}' already exists, returning {existing.id}")
            return existing

        try:
            singer_id = await self.gateway.insert(EntityType.SINGERS, {**fields, "created_by": created_by})
        except UniqueConstraintError:
            row = await self.gateway.query_by_natural_key(EntityType.SINGERS, fields["name"])
            if row is None:
                raise
            logger.info(f"Singer '{fields['name']}' was created concurrently, returning existing")
            return await self._refresh_singer(str(row["id"]))

        singer = await self._refresh_singer(singer_id)
        self.invalidator.handle_event(CacheEvent.SINGER_CREATED)
        return singer

    async def update_singer(self, singer_id: str, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Singer:
        fields = _pick(payload, SINGER_FIELDS)
        _require_name(fields, "Singer", required=False)
        current = await self.get_singer(singer_id)
        if current is None:
            raise RecordNotFoundError(EntityType.SINGERS.value, singer_id)
        self._validate_singer(fields, current)

        if "name" in fields:
            key = name_key(fields["name"])
            clash = next(
                (s for s in (await self._singers()).values() if s.id != singer_id and name_key(s.name) == key),
                None,
            )
            if clash is not None:
                raise UniqueConstraintError(f"Singer name already exists: {fields['name']}", "update")

        await self.gateway.update(EntityType.SINGERS, singer_id, {**fields, "updated_by": updated_by})
        singer = await self._refresh_singer(singer_id)
        if singer is None:
            raise RecordNotFoundError(EntityType.SINGERS.value, singer_id)

        if "name" in fields and fields["name"] != current.name:
            self.invalidator.handle_event(CacheEvent.SINGER_UPDATED)
            await self._best_effort("pitch exports", "pitches:", self._refresh_pitch_exports(singer_id=singer_id))
        elif {"center_ids", "editor_for", "is_admin"} & set(fields):
            self.invalidator.handle_event(CacheEvent.SINGER_ACCESS_CHANGED)
        return singer

    async def update_singer_admin_status(self, singer_id: str, is_admin: bool, updated_by: Optional[str] = None) -> Singer:
        return await self.update_singer(singer_id, {"is_admin": is_admin}, updated_by)

    async def add_editor_access(self, singer_id: str, center_id: int, updated_by: Optional[str] = None) -> Singer:
        singer = await self.get_singer(singer_id)
        if singer is None:
            raise RecordNotFoundError(EntityType.SINGERS.value, singer_id)
        if center_id in singer.editor_for:
            return singer
        return await self.update_singer(singer_id, {"editor_for": singer.editor_for + [center_id]}, updated_by)

    async def remove_editor_access(self, singer_id: str, center_id: int, updated_by: Optional[str] = None) -> Singer:
        singer = await self.get_singer(singer_id)
        if singer is None:
            raise RecordNotFoundError(EntityType.SINGERS.value, singer_id)
        if center_id not in singer.editor_for:
            return singer
        editor_for = [c for c in singer.editor_for if c != center_id]
        return await self.update_singer(singer_id, {"editor_for": editor_for}, updated_by)

    async def delete_singer(self, singer_id: str) -> None:
        pitches = [normalize_pitch(r) for r in await self.gateway.query_pitches(singer_id=singer_id)]
        await self.gateway.delete(EntityType.SINGERS, singer_id)

        self._remove_resident(CacheKeys.SINGERS, singer_id)
        self.export.delete(ExportKind.SINGERS, singer_id)

        removed = self._remove_resident_where(CacheKeys.PITCHES, lambda p: p.singer_id == singer_id)
        for pitch_id in {p.id for p in pitches} | {p.id for p in removed}:
            self._mark_written(CacheKeys.PITCHES, pitch_id)
            self.export.delete(ExportKind.PITCHES, pitch_id)

        self.invalidator.handle_event(CacheEvent.SINGER_DELETED)
        await self._best_effort(
            "song pitch counts", "songs:",
            self._refresh_song_counts({p.song_id for p in pitches}),
        )
        await self._best_effort("session exports", "sessions:", self.export.refresh(ExportKind.SESSIONS))
        logger.info(f"Deleted singer {singer_id} and {len(pitches)} pitches")

    async def merge_singers(self, target_id: str, source_ids: List[str], updated_by: Optional[str] = None) -> MergeResult:
        """
        Merge singers into target_id. Source pitches move to the target
        (dropped where the target already has the song), session items
        are repointed and the sources are deleted.
        """
        source_ids = list(dict.fromkeys(source_ids))
        if not source_ids:
            raise ValidationError("At least one singer to merge is required", "source_ids")

        result = await self.gateway.merge_singers(target_id, source_ids)

        for source_id in source_ids:
            self._remove_resident(CacheKeys.SINGERS, source_id)
            self.export.delete(ExportKind.SINGERS, source_id)
        self.invalidator.handle_event(CacheEvent.SINGERS_MERGED)

        await self._best_effort("merged singer", "singers:", self._refresh_singer(target_id))
        await self._best_effort("pitch exports", "pitches:", self.export.refresh(ExportKind.PITCHES))
        await self._best_effort("session exports", "sessions:", self.export.refresh(ExportKind.SESSIONS))
        await self._best_effort("song pitch counts", "songs:", self._refresh_song_counts(result.affected_song_ids))

        logger.info(
            f"Merged {len(source_ids)} singers into {target_id}: "
            f"{result.reassigned_pitches} pitches moved, "
            f"{result.removed_duplicate_pitches} duplicates removed"
        )
        return result

    # =========================================================================
    # PITCHES
    # =========================================================================

    async def _pitches(self) -> Dict[str, Pitch]:
        return await self._collection(CacheKeys.PITCHES, EntityType.PITCHES, normalize_pitch)

    async def get_all_pitches(self) -> List[Pitch]:
        return list((await self._pitches()).values())

    async def get_pitch(self, pitch_id: str) -> Optional[Pitch]:
        pitches = self._resident(CacheKeys.PITCHES)
        if pitches is not None:
            return pitches.get(pitch_id)
        row = await self.gateway.query_by_id(EntityType.PITCHES, pitch_id)
        return normalize_pitch(row) if row else None

    async def get_song_pitches(self, song_id: str) -> List[Pitch]:
        pitches = self._resident(CacheKeys.PITCHES)
        if pitches is not None:
            return [p for p in pitches.values() if p.song_id == song_id]
        return [normalize_pitch(r) for r in await self.gateway.query_pitches(song_id=song_id)]

    async def get_singer_pitches(self, singer_id: str) -> List[Pitch]:
        pitches = self._resident(CacheKeys.PITCHES)
        if pitches is not None:
            return [p for p in pitches.values() if p.singer_id == singer_id]
        return [normalize_pitch(r) for r in await self.gateway.query_pitches(singer_id=singer_id)]

    async def _find_pitch(self, song_id: str, singer_id: str) -> Optional[Pitch]:
        pitches = self._resident(CacheKeys.PITCHES)
        if pitches is not None:
            return next((p for p in pitches.values() if p.song_id == song_id and p.singer_id == singer_id), None)
        row = await self.gateway.query_pitch_by_pair(song_id, singer_id)
        return normalize_pitch(row) if row else None

    async def _refresh_pitch(self, pitch_id: str) -> Optional[Pitch]:
        guard = self._guard(CacheKeys.PITCHES, pitch_id)
        row = await self.gateway.query_by_id(EntityType.PITCHES, pitch_id)
        if self._overtaken(guard, CacheKeys.PITCHES, ExportKind.PITCHES):
            return normalize_pitch(row) if row else None
        if row is None:
            self._remove_resident(CacheKeys.PITCHES, pitch_id)
            self.export.delete(ExportKind.PITCHES, pitch_id)
            return None
        pitch = normalize_pitch(row)
        self._upsert_resident(CacheKeys.PITCHES, pitch)
        self.export.set(ExportKind.PITCHES, pitch_id, pitch)
        return pitch

    async def _refresh_pitch_exports(self, song_id: Optional[str] = None, singer_id: Optional[str] = None) -> None:
        version = self.export.version(ExportKind.PITCHES)
        rows = await self.gateway.query_pitches(song_id=song_id, singer_id=singer_id)
        if self.export.version(ExportKind.PITCHES) != version:
            # Pitch blobs changed during the read; reload them all instead
            self.export.mark_stale(ExportKind.PITCHES)
            return
        for row in rows:
            pitch = normalize_pitch(row)
            self.export.set(ExportKind.PITCHES, pitch.id, pitch)

    async def _refresh_pitch_counts(self, song_id: str, singer_id: str) -> None:
        await self._best_effort("song pitch count", "songs:", self._refresh_song_counts([song_id]))
        await self._best_effort("singer pitch count", "singers:", self._refresh_singer_counts([singer_id]))

    async def create_pitch(
        self,
        song_id: str,
        singer_id: str,
        pitch: str,
        created_by: Optional[str] = None,
    ) -> PitchWriteResult:
        """
        Create the pitch for a (song, singer) pair. An existing pair is
        returned unchanged when the value matches, else updated in place.
        """
        value = (pitch or "").strip()
        if not value:
            raise ValidationError("Pitch is required", "pitch")
        if await self.get_song_summary(song_id) is None:
            raise RecordNotFoundError(EntityType.SONGS.value, song_id)
        if await self.get_singer(singer_id) is None:
            raise RecordNotFoundError(EntityType.SINGERS.value, singer_id)

        existing = await self._find_pitch(song_id, singer_id)
        if existing is None:
            try:
                pitch_id = await self.gateway.insert(EntityType.PITCHES, {
                    "song_id": song_id,
                    "singer_id": singer_id,
                    "pitch": value,
                    "created_by": created_by,
                })
            except UniqueConstraintError:
                row = await self.gateway.query_pitch_by_pair(song_id, singer_id)
                if row is None:
                    raise
                existing = normalize_pitch(row)
            else:
                created = await self._refresh_pitch(pitch_id)
                await self._refresh_pitch_counts(song_id, singer_id)
                return PitchWriteResult(pitch=created, created=True)

        if existing.pitch.strip() == value:
            return PitchWriteResult(pitch=existing)
        updated = await self.update_pitch(existing.id, value, updated_by=created_by)
        return PitchWriteResult(pitch=updated, updated=True)

    async def update_pitch(self, pitch_id: str, pitch: str, updated_by: Optional[str] = None) -> Pitch:
        value = (pitch or "").strip()
        if not value:
            raise ValidationError("Pitch is required", "pitch")
        await self.gateway.update(EntityType.PITCHES, pitch_id, {"pitch": value, "updated_by": updated_by})
        updated = await self._refresh_pitch(pitch_id)
        if updated is None:
            raise RecordNotFoundError(EntityType.PITCHES.value, pitch_id)
        return updated

    async def delete_pitch(self, pitch_id: str) -> None:
        existing = await self.get_pitch(pitch_id)
        await self.gateway.delete(EntityType.PITCHES, pitch_id)
        self._remove_resident(CacheKeys.PITCHES, pitch_id)
        self.export.delete(ExportKind.PITCHES, pitch_id)
        if existing is not None:
            await self._refresh_pitch_counts(existing.song_id, existing.singer_id)

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    async def _templates(self) -> Dict[str, Template]:
        return await self._collection(CacheKeys.TEMPLATES, EntityType.TEMPLATES, normalize_template)

    async def get_all_templates(self) -> List[Template]:
        return sorted((await self._templates()).values(), key=_by_name)

    async def get_template(self, template_id: str) -> Optional[Template]:
        return (await self._templates()).get(template_id)

    async def get_default_template(self) -> Optional[Template]:
        return next((t for t in await self.get_all_templates() if t.is_default), None)

    async def _refresh_template(self, template_id: str) -> Optional[Template]:
        guard = self._guard(CacheKeys.TEMPLATES, template_id)
        row = await self.gateway.query_by_id(EntityType.TEMPLATES, template_id)
        if self._overtaken(guard, CacheKeys.TEMPLATES, ExportKind.TEMPLATES):
            return normalize_template(row) if row else None
        if row is None:
            self._remove_resident(CacheKeys.TEMPLATES, template_id)
            self.export.delete(ExportKind.TEMPLATES, template_id)
            return None
        template = normalize_template(row)
        self._upsert_resident(CacheKeys.TEMPLATES, template)
        self.export.set(ExportKind.TEMPLATES, template_id, template)
        return template

    @staticmethod
    def _template_columns(fields: Dict[str, Any], current: Optional[Template] = None) -> Dict[str, Any]:
        columns = {k: fields[k] for k in ("name", "description") if k in fields}
        if "center_ids" in fields:
            columns["center_ids"] = parse_id_list(fields["center_ids"])
        if {"aspect_ratio", "slides", "reference_slide_index"} & set(fields) or current is None:
            base = current or Template(id="", name="")
            definition = replace(
                base,
                aspect_ratio=fields.get("aspect_ratio") or base.aspect_ratio,
                slides=fields.get("slides", base.slides) or [],
                reference_slide_index=int(fields.get("reference_slide_index", base.reference_slide_index) or 0),
            )
            if definition.slides and not 0 <= definition.reference_slide_index < len(definition.slides):
                raise ValidationError("Reference slide index is out of range", "reference_slide_index")
            columns["template_json"] = definition.template_json()
        return columns

    async def create_template(self, payload: Dict[str, Any], created_by: Optional[str] = None) -> Template:
        fields = _pick(payload, TEMPLATE_FIELDS)
        _require_name(fields, "Template")
        columns = self._template_columns(fields)

        template_id = await self.gateway.insert(
            EntityType.TEMPLATES,
            {**columns, "is_default": False, "created_by": created_by},
        )
        if fields.get("is_default"):
            return await self.set_template_as_default(template_id, created_by)
        return await self._refresh_template(template_id)

    async def update_template(self, template_id: str, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Template:
        fields = _pick(payload, TEMPLATE_FIELDS)
        _require_name(fields, "Template", required=False)
        current = await self.get_template(template_id)
        if current is None:
            raise RecordNotFoundError(EntityType.TEMPLATES.value, template_id)

        columns = self._template_columns(fields, current)
        if fields.get("is_default") is False:
            columns["is_default"] = False
        await self.gateway.update(EntityType.TEMPLATES, template_id, {**columns, "updated_by": updated_by})

        if fields.get("is_default"):
            return await self.set_template_as_default(template_id, updated_by)
        template = await self._refresh_template(template_id)
        if template is None:
            raise RecordNotFoundError(EntityType.TEMPLATES.value, template_id)
        return template

    async def set_template_as_default(self, template_id: str, updated_by: Optional[str] = None) -> Template:
        """Make one template the default; every other default is unset atomically."""
        previous = await self.gateway.set_default_template(template_id, updated_by)

        template = await self._refresh_template(template_id)
        for other_id in previous:
            await self._best_effort("template", "templates:", self._refresh_template(other_id))

        templates = self._resident(CacheKeys.TEMPLATES)
        if templates is not None:
            for other in list(templates.values()):
                if other.is_default and other.id != template_id:
                    unset = replace(other, is_default=False)
                    templates[other.id] = unset
                    self.export.set(ExportKind.TEMPLATES, other.id, unset)
        logger.info(f"Template {template_id} set as default ({len(previous)} unset)")
        return template

    async def duplicate_template(
        self,
        template_id: str,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Template:
        source = await self.get_template(template_id)
        if source is None:
            raise RecordNotFoundError(EntityType.TEMPLATES.value, template_id)
        return await self.create_template({
            "name": name or f"{source.name} (Copy)",
            "description": source.description,
            "aspect_ratio": source.aspect_ratio,
            "slides": source.slides,
            "reference_slide_index": source.reference_slide_index,
            "center_ids": source.center_ids,
        }, created_by)

    async def delete_template(self, template_id: str) -> None:
        await self.gateway.delete(EntityType.TEMPLATES, template_id)
        self._remove_resident(CacheKeys.TEMPLATES, template_id)
        self.export.delete(ExportKind.TEMPLATES, template_id)

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def _sessions(self) -> Dict[str, NamedSession]:
        return await self._collection(CacheKeys.SESSIONS, EntityType.SESSIONS, normalize_session)

    async def get_all_sessions(self) -> List[NamedSession]:
        return sorted((await self._sessions()).values(), key=_by_name)

    async def get_session(self, session_id: str) -> Optional[NamedSession]:
        """Session with its items (joined song/singer display fields)."""
        async def load():
            row = await self.gateway.query_by_id(EntityType.SESSIONS, session_id)
            if row is None:
                return None
            session = normalize_session(row)
            session.items = [
                normalize_session_item(r) for r in await self.gateway.query_session_items(session_id)
            ]
            return session

        return await self.cache.get_or_load(CacheKeys.session_detail(session_id), load)

    async def get_session_items(self, session_id: str) -> Optional[List[SessionItem]]:
        session = await self.get_session(session_id)
        return session.items if session is not None else None

    async def _refresh_session(self, session_id: str) -> Optional[NamedSession]:
        self.cache.invalidate(CacheKeys.session_detail(session_id))
        guard = self._guard(CacheKeys.SESSIONS, session_id)
        row = await self.gateway.query_by_id(EntityType.SESSIONS, session_id)
        detail = await self.get_session(session_id) if row is not None else None
        if self._overtaken(guard, CacheKeys.SESSIONS, ExportKind.SESSIONS):
            self.cache.invalidate(CacheKeys.session_detail(session_id))
            return detail
        if row is None or detail is None:
            self._remove_resident(CacheKeys.SESSIONS, session_id)
            self.export.delete(ExportKind.SESSIONS, session_id)
            return None
        self._upsert_resident(CacheKeys.SESSIONS, normalize_session(row))
        self.export.set(ExportKind.SESSIONS, session_id, detail)
        return detail

    async def create_session(self, payload: Dict[str, Any], created_by: Optional[str] = None) -> NamedSession:
        fields = _pick(payload, SESSION_FIELDS)
        _require_name(fields, "Session")

        existing = next((s for s in (await self._sessions()).values() if s.name == fields["name"]), None)
        if existing is not None:
            logger.info(f"Session '{fields['name']}' already exists, returning {existing.id}")
            return await self.get_session(existing.id)

        try:
            session_id = await self.gateway.insert(EntityType.SESSIONS, {**fields, "created_by": created_by})
        except UniqueConstraintError:
            row = await self.gateway.query_by_natural_key(EntityType.SESSIONS, fields["name"])
            if row is None:
                raise
            logger.info(f"Session '{fields['name']}' was created concurrently, returning existing")
            session_id = str(row["id"])
        return await self._refresh_session(session_id)

    async def update_session(self, session_id: str, payload: Dict[str, Any], updated_by: Optional[str] = None) -> NamedSession:
        fields = _pick(payload, SESSION_FIELDS)
        _require_name(fields, "Session", required=False)
        await self.gateway.update(EntityType.SESSIONS, session_id, {**fields, "updated_by": updated_by})
        session = await self._refresh_session(session_id)
        if session is None:
            raise RecordNotFoundError(EntityType.SESSIONS.value, session_id)
        return session

    async def delete_session(self, session_id: str) -> None:
        await self.gateway.delete(EntityType.SESSIONS, session_id)
        self._remove_resident(CacheKeys.SESSIONS, session_id)
        self.cache.invalidate(CacheKeys.session_detail(session_id))
        self.export.delete(ExportKind.SESSIONS, session_id)

    async def duplicate_session(self, session_id: str, name: str, created_by: Optional[str] = None) -> NamedSession:
        fields = {"name": name}
        _require_name(fields, "Session")
        new_id = await self.gateway.duplicate_session(session_id, fields["name"], created_by)
        return await self._refresh_session(new_id)

    async def _session_items_changed(self, session_id: str) -> NamedSession:
        self.invalidator.handle_event(CacheEvent.SESSION_ITEMS_CHANGED, session_id=session_id)
        session = await self._refresh_session(session_id)
        if session is None:
            raise RecordNotFoundError(EntityType.SESSIONS.value, session_id)
        return session

    def _item_fields(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        fields = _pick(payload, SESSION_ITEM_FIELDS)
        if "song_id" in fields and not fields["song_id"]:
            raise ValidationError("Session item requires a song", "song_id")
        return fields

    async def add_session_item(self, session_id: str, payload: Dict[str, Any]) -> SessionItem:
        fields = self._item_fields(payload)
        if not fields.get("song_id"):
            raise ValidationError("Session item requires a song", "song_id")
        item_id = await self.gateway.add_session_item(session_id, fields)
        session = await self._session_items_changed(session_id)
        return next(item for item in session.items if item.id == item_id)

    async def update_session_item(self, item_id: str, payload: Dict[str, Any]) -> SessionItem:
        fields = self._item_fields(payload)
        fields.pop("sequence_order", None)
        row = await self.gateway.query_by_id(EntityType.SESSION_ITEMS, item_id)
        if row is None:
            raise RecordNotFoundError(EntityType.SESSION_ITEMS.value, item_id)
        await self.gateway.update(EntityType.SESSION_ITEMS, item_id, fields)
        session = await self._session_items_changed(str(row["session_id"]))
        return next(item for item in session.items if item.id == item_id)

    async def delete_session_item(self, item_id: str) -> NamedSession:
        session_id = await self.gateway.delete_session_item(item_id)
        return await self._session_items_changed(session_id)

    async def reorder_session_items(self, session_id: str, item_ids: List[str]) -> NamedSession:
        """Positions become 1..N in the order given."""
        await self.gateway.reorder_session_items(session_id, item_ids)
        return await self._session_items_changed(session_id)

    async def set_session_items(self, session_id: str, items: List[Dict[str, Any]]) -> NamedSession:
        """Replace every item; positions become 1..N in list order."""
        prepared = []
        for payload in items:
            fields = self._item_fields(payload)
            fields.pop("sequence_order", None)
            if not fields.get("song_id"):
                raise ValidationError("Session item requires a song", "song_id")
            prepared.append(fields)
        await self.gateway.replace_session_items(session_id, prepared)
        return await self._session_items_changed(session_id)

    # =========================================================================
    # CENTERS
    # =========================================================================

    async def _centers(self) -> Dict[int, Center]:
        async def load():
            rows = await self.gateway.query_all(EntityType.CENTERS)
            singers = list((await self._singers()).values())
            centers = {}
            for center in map(normalize_center, rows):
                center.editor_ids = [s.id for s in singers if center.id in s.editor_for]
                center.singer_count = sum(1 for s in singers if center.id in s.center_ids)
                centers[center.id] = center
            logger.info(f"Loaded {len(centers)} centers into cache")
            return centers

        return await self.cache.get_or_load(CacheKeys.CENTERS, load)

    async def get_all_centers(self) -> List[Center]:
        return sorted((await self._centers()).values(), key=_by_name)

    async def get_center(self, center_id: int) -> Optional[Center]:
        return (await self._centers()).get(int(center_id))

    async def _center_changed(self, center_id: int) -> Optional[Center]:
        self.invalidator.handle_event(CacheEvent.CENTER_CHANGED)
        guard = self._guard(CacheKeys.CENTERS, center_id)
        center = await self.get_center(center_id)
        if self._overtaken(guard, CacheKeys.CENTERS, ExportKind.CENTERS):
            return center
        self._mark_written(CacheKeys.CENTERS, center_id)
        if center is None:
            self.export.delete(ExportKind.CENTERS, center_id)
        else:
            self.export.set(ExportKind.CENTERS, center_id, center)
        return center

    async def create_center(self, payload: Dict[str, Any], created_by: Optional[str] = None) -> Center:
        fields = _pick(payload, CENTER_FIELDS)
        _require_name(fields, "Center")
        fields["badge_text_color"] = fields.get("badge_text_color") or DEFAULT_BADGE_COLOR

        lowered = fields["name"].lower()
        existing = next((c for c in (await self._centers()).values() if c.name.lower() == lowered), None)
        if existing is not None:
            return existing

        try:
            center_id = await self.gateway.insert(EntityType.CENTERS, {**fields, "created_by": created_by})
        except UniqueConstraintError:
            row = await self.gateway.query_by_natural_key(EntityType.CENTERS, fields["name"])
            if row is None:
                raise
            center_id = int(row["id"])
        return await self._center_changed(center_id)

    async def update_center(self, center_id: int, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Center:
        fields = _pick(payload, CENTER_FIELDS)
        _require_name(fields, "Center", required=False)
        await self.gateway.update(EntityType.CENTERS, int(center_id), {**fields, "updated_by": updated_by})
        center = await self._center_changed(int(center_id))
        if center is None:
            raise RecordNotFoundError(EntityType.CENTERS.value, center_id)
        return center

    async def delete_center(self, center_id: int) -> None:
        """Delete a center that no singer, template or session references."""
        center_id = int(center_id)
        dependents = (
            ("singer(s)", await self.get_all_singers()),
            ("template(s)", await self.get_all_templates()),
            ("session(s)", await self.get_all_sessions()),
        )
        for dependency_type, records in dependents:
            tagged = [r.name for r in records if center_id in r.center_ids]
            if tagged:
                raise CenterInUseError(center_id, dependency_type, tagged)

        await self.gateway.delete(EntityType.CENTERS, center_id)
        self._remove_resident(CacheKeys.CENTERS, center_id)
        self.export.delete(ExportKind.CENTERS, center_id)

    async def get_center_stats(self, center_id: int) -> Optional[Dict[str, Any]]:
        center = await self.get_center(center_id)
        if center is None:
            return None
        return {
            "centerName": center.name,
            "singersCount": center.singer_count,
            "templatesCount": sum(1 for t in await self.get_all_templates() if center.id in t.center_ids),
            "sessionsCount": sum(1 for s in await self.get_all_sessions() if center.id in s.center_ids),
        }

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    async def _feedback(self) -> Dict[int, Feedback]:
        return await self._collection(CacheKeys.FEEDBACK, EntityType.FEEDBACK, normalize_feedback)

    async def get_all_feedback(self) -> List[Feedback]:
        return sorted(
            (await self._feedback()).values(),
            key=lambda f: (f.created_at is not None, f.created_at, f.id),
            reverse=True,
        )

    async def get_feedback(self, feedback_id: int) -> Optional[Feedback]:
        return (await self._feedback()).get(int(feedback_id))

    async def _refresh_feedback(self, feedback_id: int) -> Optional[Feedback]:
        guard = self._guard(CacheKeys.FEEDBACK, feedback_id)
        row = await self.gateway.query_by_id(EntityType.FEEDBACK, feedback_id)
        if self._overtaken(guard, CacheKeys.FEEDBACK, None):
            return normalize_feedback(row) if row else None
        if row is None:
            self._remove_resident(CacheKeys.FEEDBACK, feedback_id)
            return None
        feedback = normalize_feedback(row)
        self._upsert_resident(CacheKeys.FEEDBACK, feedback)
        return feedback

    async def create_feedback(self, payload: Dict[str, Any]) -> Feedback:
        fields = _pick(payload, FEEDBACK_FIELDS)
        text = (fields.get("feedback") or "").strip()
        if not text:
            raise ValidationError("Feedback cannot be empty", "feedback")
        if fields.get("category") not in FEEDBACK_CATEGORIES:
            raise ValidationError("Invalid category", "category")
        email = (fields.get("email") or "").strip()
        if not email:
            raise ValidationError("Email is required", "email")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", "email")

        feedback_id = await self.gateway.insert(
            EntityType.FEEDBACK,
            {**fields, "feedback": text, "email": email, "status": "new"},
        )
        logger.info(f"Feedback received: {fields['category']} from {email}")
        return await self._refresh_feedback(feedback_id)

    async def update_feedback(
        self,
        feedback_id: int,
        status: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> Feedback:
        fields = {}
        if status is not None:
            fields["status"] = status
        if admin_notes is not None:
            fields["admin_notes"] = admin_notes
        await self.gateway.update(EntityType.FEEDBACK, int(feedback_id), fields)
        feedback = await self._refresh_feedback(int(feedback_id))
        if feedback is None:
            raise RecordNotFoundError(EntityType.FEEDBACK.value, feedback_id)
        return feedback

    async def delete_feedback(self, feedback_id: int) -> None:
        await self.gateway.delete(EntityType.FEEDBACK, int(feedback_id))
        self._remove_resident(CacheKeys.FEEDBACK, int(feedback_id))

    # =========================================================================
    # INVALIDATION & LIFECYCLE
    # =========================================================================

    def invalidate(self, key: str) -> bool:
        return self.cache.invalidate(key)

    def invalidate_pattern(self, prefix: str) -> int:
        count = self.cache.invalidate_pattern(prefix)
        logger.info(f"Invalidated {count} cache keys matching {prefix}*")
        return count

    async def warmup(self) -> WarmupReport:
        """Load every collection except song content; failures are isolated."""
        return await self.warmer.warmup()

    async def reload(self) -> WarmupReport:
        """Drop all resident state and export blobs, then warm again."""
        self.cache.clear()
        self.export.clear()
        logger.info("Cache cleared for reload")
        return await self.warmup()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.get_stats(),
            "export": self.export.get_stats(),
        }

    async def shutdown(self) -> None:
        """Stop background work and drop resident state."""
        await self.warmer.stop_background_cleanup()
        self.cache.clear()
        self.export.clear()
        logger.info("Cache service shut down")
