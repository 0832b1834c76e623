"""
Persistence Gateway

The only component allowed to perform durable writes. Every public
method is a coroutine that runs its SQLAlchemy work on a worker
thread, so each gateway call is an await point for the event loop.

Rows are returned as plain dicts keyed by column name; turning them
into records is the job of the normalize_* functions in
songstudio.models.

Driver failures surface as typed errors:
- UniqueConstraintError: a natural key already exists
- RecordNotFoundError: an update/delete targeted a missing row
- GatewayError: anything else (timeouts, disconnects, schema missing)
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, text
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from songstudio.database.models import (
    Song, Singer, Pitch, Template, NamedSession, SessionItem,
    Center, Feedback, WebSession,
)
from songstudio.database.session import create_session_factory, session_scope
from songstudio.errors import (
    GatewayError,
    RecordNotFoundError,
    UniqueConstraintError,
    ValidationError,
    is_unique_violation,
)
from songstudio.models import SONG_CONTENT_FIELDS, dump_id_list, name_key, parse_id_list


logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    """Entity types addressable through the generic gateway operations."""
    SONGS = "songs"
    SINGERS = "singers"
    PITCHES = "pitches"
    TEMPLATES = "templates"
    SESSIONS = "sessions"
    SESSION_ITEMS = "session_items"
    CENTERS = "centers"
    FEEDBACK = "feedback"


MODELS = {
    EntityType.SONGS: Song,
    EntityType.SINGERS: Singer,
    EntityType.PITCHES: Pitch,
    EntityType.TEMPLATES: Template,
    EntityType.SESSIONS: NamedSession,
    EntityType.SESSION_ITEMS: SessionItem,
    EntityType.CENTERS: Center,
    EntityType.FEEDBACK: Feedback,
}

# Columns holding JSON-encoded center-id lists
ID_LIST_COLUMNS = ("center_ids", "editor_for")

# Columns callers may not set directly
PROTECTED_COLUMNS = ("id", "name_key", "created_at", "updated_at")


@dataclass
class MergeResult:
    """Outcome of merging singers into a target singer."""
    target_id: str
    merged_ids: List[str]
    reassigned_pitches: int = 0
    removed_duplicate_pitches: int = 0
    session_items_updated: int = 0
    affected_song_ids: List[str] = field(default_factory=list)


def _row(row) -> Dict[str, Any]:
    return dict(row._mapping)


class PersistenceGateway:
    """
    Relational read/write interface consumed by the cache.

    Usage:
        gateway = PersistenceGateway(engine)
        rows = await gateway.query_all(EntityType.SONGS)
        new_id = await gateway.insert(EntityType.SINGERS, {"name": "Asha"})
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._factory = create_session_factory(engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _run(self, operation: str, fn: Callable, *args) -> Any:
        """Run fn on a worker thread, translating driver errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except IntegrityError as e:
            message = str(e.orig) if e.orig is not None else str(e)
            if is_unique_violation(message):
                raise UniqueConstraintError(message, operation) from e
            raise GatewayError(message, operation) from e
        except SQLAlchemyError as e:
            logger.error(f"Gateway {operation} failed: {e}")
            raise GatewayError(str(e), operation) from e

    def _transaction(self):
        return session_scope(self._factory)

    # =========================================================================
    # READ QUERIES
    # =========================================================================

    def _select(self, db: Session, entity: EntityType) -> Query:
        """Listing query for an entity type (songs exclude large objects)."""
        if entity is EntityType.SONGS:
            counts = (
                db.query(Pitch.song_id, func.count(Pitch.id).label("pitch_count"))
                .group_by(Pitch.song_id)
                .subquery()
            )
            columns = [c for c in Song.__table__.columns if c.key not in SONG_CONTENT_FIELDS]
            return (
                db.query(*columns, func.coalesce(counts.c.pitch_count, 0).label("pitch_count"))
                .outerjoin(counts, counts.c.song_id == Song.id)
                .order_by(Song.name)
            )

        if entity is EntityType.SINGERS:
            counts = (
                db.query(Pitch.singer_id, func.count(Pitch.id).label("pitch_count"))
                .group_by(Pitch.singer_id)
                .subquery()
            )
            columns = [c for c in Singer.__table__.columns if c.key != "name_key"]
            return (
                db.query(*columns, func.coalesce(counts.c.pitch_count, 0).label("pitch_count"))
                .outerjoin(counts, counts.c.singer_id == Singer.id)
                .order_by(Singer.name)
            )

        if entity is EntityType.PITCHES:
            return (
                db.query(
                    *Pitch.__table__.columns,
                    Song.name.label("song_name"),
                    Singer.name.label("singer_name"),
                )
                .join(Song, Song.id == Pitch.song_id)
                .join(Singer, Singer.id == Pitch.singer_id)
                .order_by(Song.name, Singer.name)
            )

        if entity is EntityType.SESSION_ITEMS:
            return (
                db.query(
                    *SessionItem.__table__.columns,
                    Song.name.label("song_name"),
                    Song.deity.label("song_deity"),
                    Song.language.label("song_language"),
                    Song.tempo.label("song_tempo"),
                    Song.raga.label("song_raga"),
                    Singer.name.label("singer_name"),
                    Singer.gender.label("singer_gender"),
                    Singer.center_ids.label("singer_center_ids"),
                )
                .join(Song, Song.id == SessionItem.song_id)
                .outerjoin(Singer, Singer.id == SessionItem.singer_id)
                .order_by(SessionItem.session_id, SessionItem.sequence_order)
            )

        model = MODELS[entity]
        query = db.query(*model.__table__.columns)
        if entity is EntityType.FEEDBACK:
            return query.order_by(Feedback.created_at.desc(), Feedback.id.desc())
        return query.order_by(model.name)

    def _query_all(self, entity: EntityType) -> List[Dict[str, Any]]:
        with self._transaction() as db:
            return [_row(r) for r in self._select(db, entity).all()]

    def _query_by_id_in(self, db: Session, entity: EntityType, record_id) -> Optional[Dict[str, Any]]:
        model = MODELS[entity]
        row = self._select(db, entity).filter(model.id == record_id).first()
        return _row(row) if row is not None else None

    def _query_by_id(self, entity: EntityType, record_id) -> Optional[Dict[str, Any]]:
        with self._transaction() as db:
            return self._query_by_id_in(db, entity, record_id)

    def _query_by_natural_key(self, entity: EntityType, value: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as db:
            if entity is EntityType.SINGERS:
                match = db.query(Singer.id).filter(Singer.name_key == name_key(value)).first()
            elif entity is EntityType.SONGS:
                match = db.query(Song.id).filter(Song.external_source_url == value).first()
            elif entity in (EntityType.SESSIONS, EntityType.CENTERS, EntityType.TEMPLATES):
                model = MODELS[entity]
                match = db.query(model.id).filter(model.name == value).first()
            else:
                raise ValueError(f"{entity.value} has no natural key")
            if match is None:
                return None
            return self._query_by_id_in(db, entity, match[0])

    def _query_song_content(self, song_id: Optional[str]) -> List[Dict[str, Any]]:
        with self._transaction() as db:
            query = db.query(Song.id, Song.lyrics, Song.meaning, Song.song_tags)
            if song_id is not None:
                query = query.filter(Song.id == song_id)
            return [_row(r) for r in query.all()]

    def _query_pitches(self, song_id: Optional[str], singer_id: Optional[str]) -> List[Dict[str, Any]]:
        with self._transaction() as db:
            query = self._select(db, EntityType.PITCHES)
            if song_id is not None:
                query = query.filter(Pitch.song_id == song_id)
            if singer_id is not None:
                query = query.filter(Pitch.singer_id == singer_id)
            return [_row(r) for r in query.all()]

    def _count_pitches(self, song_id: Optional[str], singer_id: Optional[str]) -> int:
        with self._transaction() as db:
            query = db.query(func.count(Pitch.id))
            if song_id is not None:
                query = query.filter(Pitch.song_id == song_id)
            if singer_id is not None:
                query = query.filter(Pitch.singer_id == singer_id)
            return query.scalar() or 0

    def _query_session_items(self, session_id: Optional[str]) -> List[Dict[str, Any]]:
        with self._transaction() as db:
            query = self._select(db, EntityType.SESSION_ITEMS)
            if session_id is not None:
                query = query.filter(SessionItem.session_id == session_id)
            return [_row(r) for r in query.all()]

    async def query_all(self, entity: EntityType) -> List[Dict[str, Any]]:
        """All rows of an entity type (songs without large-object columns)."""
        return await self._run("query_all", self._query_all, entity)

    async def query_by_id(self, entity: EntityType, record_id) -> Optional[Dict[str, Any]]:
        """One row by id, or None."""
        return await self._run("query_by_id", self._query_by_id, entity, record_id)

    async def query_by_natural_key(self, entity: EntityType, value: str) -> Optional[Dict[str, Any]]:
        """
        One row by natural key, or None.

        Singers match case-insensitively on name, songs on external
        source URL, sessions/centers/templates on exact name.
        """
        return await self._run("query_by_natural_key", self._query_by_natural_key, entity, value)

    async def query_song_content(self, song_id: str) -> Optional[Dict[str, Any]]:
        """Large-object fields (lyrics, meaning, song_tags) of one song."""
        rows = await self._run("query_song_content", self._query_song_content, song_id)
        return rows[0] if rows else None

    async def query_all_song_content(self) -> List[Dict[str, Any]]:
        """Large-object fields of every song, in one query."""
        return await self._run("query_all_song_content", self._query_song_content, None)

    async def query_pitches(
        self,
        song_id: Optional[str] = None,
        singer_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return await self._run("query_pitches", self._query_pitches, song_id, singer_id)

    async def query_pitch_by_pair(self, song_id: str, singer_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.query_pitches(song_id=song_id, singer_id=singer_id)
        return rows[0] if rows else None

    async def count_pitches(
        self,
        song_id: Optional[str] = None,
        singer_id: Optional[str] = None,
    ) -> int:
        return await self._run("count_pitches", self._count_pitches, song_id, singer_id)

    async def query_session_items(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Session items joined with song/singer display fields, in sequence order."""
        return await self._run("query_session_items", self._query_session_items, session_id)

    # =========================================================================
    # GENERIC WRITES
    # =========================================================================

    def _prepare(self, entity: EntityType, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate column names and encode storage-only representations."""
        model = MODELS[entity]
        columns = set(model.__table__.columns.keys())
        prepared = {}
        for key, value in fields.items():
            if key not in columns or key in PROTECTED_COLUMNS:
                raise ValidationError(f"Unknown or read-only field: {key}", key)
            if key in ID_LIST_COLUMNS and isinstance(value, (list, tuple, set)):
                value = dump_id_list(list(value))
            elif key == "template_json" and isinstance(value, dict):
                value = json.dumps(value)
            prepared[key] = value

        if entity is EntityType.SINGERS and "name" in prepared:
            prepared["name_key"] = name_key(prepared["name"])
        return prepared

    def _insert(self, entity: EntityType, fields: Dict[str, Any], record_id):
        with self._transaction() as db:
            obj = MODELS[entity](**self._prepare(entity, fields))
            if record_id is not None:
                obj.id = record_id
            db.add(obj)
            db.flush()
            return obj.id

    def _update(self, entity: EntityType, record_id, fields: Dict[str, Any]) -> None:
        prepared = self._prepare(entity, fields)
        with self._transaction() as db:
            model = MODELS[entity]
            obj = db.query(model).filter(model.id == record_id).first()
            if obj is None:
                raise RecordNotFoundError(entity.value, record_id)
            for key, value in prepared.items():
                setattr(obj, key, value)
            obj.updated_at = datetime.utcnow()

    def _delete(self, entity: EntityType, record_id) -> None:
        with self._transaction() as db:
            model = MODELS[entity]
            obj = db.query(model).filter(model.id == record_id).first()
            if obj is None:
                raise RecordNotFoundError(entity.value, record_id)
            if entity is EntityType.SONGS:
                self._remove_song_from_sessions(db, record_id)
            db.delete(obj)

    async def insert(self, entity: EntityType, fields: Dict[str, Any], record_id=None):
        """Insert a row and return its id."""
        return await self._run("insert", self._insert, entity, fields, record_id)

    async def update(self, entity: EntityType, record_id, fields: Dict[str, Any]) -> None:
        """Update columns of one row. Raises RecordNotFoundError if absent."""
        if not fields:
            return
        await self._run("update", self._update, entity, record_id, fields)

    async def delete(self, entity: EntityType, record_id) -> None:
        """Delete one row (dependent rows cascade). Raises RecordNotFoundError if absent."""
        await self._run("delete", self._delete, entity, record_id)

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    def _set_default_template(self, template_id: str, updated_by: Optional[str]) -> List[str]:
        with self._transaction() as db:
            target = db.query(Template).filter(Template.id == template_id).first()
            if target is None:
                raise RecordNotFoundError(EntityType.TEMPLATES.value, template_id)

            previous = [
                row[0] for row in
                db.query(Template.id).filter(Template.is_default.is_(True), Template.id != template_id).all()
            ]
            if previous:
                db.query(Template).filter(Template.id.in_(previous)).update(
                    {Template.is_default: False, Template.updated_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            target.is_default = True
            target.updated_by = updated_by
            target.updated_at = datetime.utcnow()
            return previous

    async def set_default_template(self, template_id: str, updated_by: Optional[str] = None) -> List[str]:
        """
        Make one template the default and unset every other default,
        in a single transaction. Returns the ids that lost the flag.
        """
        return await self._run("set_default_template", self._set_default_template, template_id, updated_by)

    # =========================================================================
    # SESSION ITEMS
    # =========================================================================

    def _require_session(self, db: Session, session_id: str) -> None:
        if db.query(NamedSession.id).filter(NamedSession.id == session_id).first() is None:
            raise RecordNotFoundError(EntityType.SESSIONS.value, session_id)

    def _renumber(self, db: Session, items: List[SessionItem]) -> None:
        """Assign positions 1..N in list order without tripping the unique key."""
        for index, item in enumerate(items):
            item.sequence_order = -(index + 1)
        db.flush()
        for index, item in enumerate(items):
            item.sequence_order = index + 1
        db.flush()

    def _ordered_items(self, db: Session, session_id: str) -> List[SessionItem]:
        return (
            db.query(SessionItem)
            .filter(SessionItem.session_id == session_id)
            .order_by(SessionItem.sequence_order)
            .all()
        )

    def _remove_song_from_sessions(self, db: Session, song_id: str) -> List[str]:
        """Drop a song's session items and renumber every session it appeared in."""
        session_ids = [
            row[0] for row in
            db.query(SessionItem.session_id).filter(SessionItem.song_id == song_id).distinct().all()
        ]
        if not session_ids:
            return []
        db.query(SessionItem).filter(SessionItem.song_id == song_id).delete(synchronize_session=False)
        db.flush()
        for session_id in session_ids:
            self._renumber(db, self._ordered_items(db, session_id))
        return session_ids

    def _add_session_item(self, session_id: str, fields: Dict[str, Any]) -> str:
        with self._transaction() as db:
            self._require_session(db, session_id)
            items = self._ordered_items(db, session_id)
            position = fields.pop("sequence_order", None)

            item = SessionItem(session_id=session_id, **self._prepare(EntityType.SESSION_ITEMS, fields))
            # Positions may have gaps; append after the highest
            item.sequence_order = (items[-1].sequence_order if items else 0) + 1
            db.add(item)
            db.flush()

            if position is not None and 1 <= int(position) <= len(items):
                items.insert(int(position) - 1, item)
                self._renumber(db, items)
            return item.id

    def _delete_session_item(self, item_id: str) -> str:
        with self._transaction() as db:
            item = db.query(SessionItem).filter(SessionItem.id == item_id).first()
            if item is None:
                raise RecordNotFoundError(EntityType.SESSION_ITEMS.value, item_id)
            session_id = item.session_id
            db.delete(item)
            db.flush()
            self._renumber(db, self._ordered_items(db, session_id))
            return session_id

    def _replace_session_items(self, session_id: str, items: List[Dict[str, Any]]) -> None:
        with self._transaction() as db:
            self._require_session(db, session_id)
            db.query(SessionItem).filter(SessionItem.session_id == session_id).delete(
                synchronize_session=False
            )
            db.flush()
            for index, fields in enumerate(items):
                fields = {k: v for k, v in fields.items() if k != "sequence_order"}
                db.add(SessionItem(
                    session_id=session_id,
                    sequence_order=index + 1,
                    **self._prepare(EntityType.SESSION_ITEMS, fields),
                ))
            db.flush()

    def _reorder_session_items(self, session_id: str, item_ids: List[str]) -> None:
        with self._transaction() as db:
            self._require_session(db, session_id)
            items = {item.id: item for item in self._ordered_items(db, session_id)}
            if len(item_ids) != len(set(item_ids)) or set(item_ids) != set(items):
                raise ValidationError(
                    "Reorder must list every item of the session exactly once", "item_ids"
                )
            self._renumber(db, [items[item_id] for item_id in item_ids])

    def _duplicate_session(self, session_id: str, new_name: str, created_by: Optional[str]) -> str:
        with self._transaction() as db:
            source = db.query(NamedSession).filter(NamedSession.id == session_id).first()
            if source is None:
                raise RecordNotFoundError(EntityType.SESSIONS.value, session_id)
            copy = NamedSession(
                name=new_name,
                description=source.description,
                center_ids=source.center_ids,
                created_by=created_by,
            )
            db.add(copy)
            db.flush()
            for item in self._ordered_items(db, session_id):
                db.add(SessionItem(
                    session_id=copy.id,
                    song_id=item.song_id,
                    singer_id=item.singer_id,
                    pitch=item.pitch,
                    sequence_order=item.sequence_order,
                ))
            db.flush()
            return copy.id

    async def add_session_item(self, session_id: str, fields: Dict[str, Any]) -> str:
        """Append an item (or insert it at fields["sequence_order"])."""
        return await self._run("add_session_item", self._add_session_item, session_id, dict(fields))

    async def delete_session_item(self, item_id: str) -> str:
        """Delete an item and close the gap. Returns the owning session id."""
        return await self._run("delete_session_item", self._delete_session_item, item_id)

    async def replace_session_items(self, session_id: str, items: Iterable[Dict[str, Any]]) -> None:
        """Replace all items of a session; positions become 1..N in list order."""
        return await self._run("replace_session_items", self._replace_session_items, session_id, list(items))

    async def reorder_session_items(self, session_id: str, item_ids: List[str]) -> None:
        """Reassign positions 1..N following item_ids."""
        return await self._run("reorder_session_items", self._reorder_session_items, session_id, list(item_ids))

    async def duplicate_session(self, session_id: str, new_name: str, created_by: Optional[str] = None) -> str:
        return await self._run("duplicate_session", self._duplicate_session, session_id, new_name, created_by)

    # =========================================================================
    # SINGER MERGE
    # =========================================================================

    def _merge_singers(self, target_id: str, source_ids: List[str]) -> MergeResult:
        result = MergeResult(target_id=target_id, merged_ids=list(source_ids))
        affected_songs = set()

        with self._transaction() as db:
            target = db.query(Singer).filter(Singer.id == target_id).first()
            if target is None:
                raise RecordNotFoundError(EntityType.SINGERS.value, target_id)

            target_songs = {
                row[0] for row in db.query(Pitch.song_id).filter(Pitch.singer_id == target_id).all()
            }
            center_ids = parse_id_list(target.center_ids)
            editor_for = parse_id_list(target.editor_for)

            for source_id in source_ids:
                source = db.query(Singer).filter(Singer.id == source_id).first()
                if source is None:
                    raise RecordNotFoundError(EntityType.SINGERS.value, source_id)

                for pitch in db.query(Pitch).filter(Pitch.singer_id == source_id).all():
                    if pitch.song_id in target_songs:
                        # Target already has a pitch for this song
                        db.delete(pitch)
                        result.removed_duplicate_pitches += 1
                        affected_songs.add(pitch.song_id)
                    else:
                        pitch.singer_id = target_id
                        pitch.updated_at = datetime.utcnow()
                        target_songs.add(pitch.song_id)
                        result.reassigned_pitches += 1
                    db.flush()

                result.session_items_updated += (
                    db.query(SessionItem)
                    .filter(SessionItem.singer_id == source_id)
                    .update({SessionItem.singer_id: target_id}, synchronize_session=False)
                )

                center_ids.extend(parse_id_list(source.center_ids))
                editor_for.extend(parse_id_list(source.editor_for))
                db.delete(source)
                db.flush()

            target.center_ids = dump_id_list(center_ids)
            target.editor_for = dump_id_list(editor_for)
            target.updated_at = datetime.utcnow()

        result.affected_song_ids = sorted(affected_songs)
        return result

    async def merge_singers(self, target_id: str, source_ids: List[str]) -> MergeResult:
        """
        Merge source singers into target in one transaction.

        Pitches move to the target unless the target already has a
        pitch for that song, in which case the source pitch is dropped.
        Session items are repointed, center scopes are unioned, and
        the source singers are deleted.
        """
        if target_id in source_ids:
            raise ValidationError("Cannot merge a singer into itself", "source_ids")
        return await self._run("merge_singers", self._merge_singers, target_id, list(source_ids))

    # =========================================================================
    # WEB SESSION TABLE
    # =========================================================================

    def _ensure_web_session_table(self) -> None:
        WebSession.__table__.create(bind=self.engine, checkfirst=True)

    def _fetch_web_session(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as db:
            row = db.query(*WebSession.__table__.columns).filter(WebSession.sid == sid).first()
            return _row(row) if row is not None else None

    def _upsert_web_session(self, sid: str, sess: str, expire: datetime) -> None:
        values = {"sid": sid, "sess": sess, "expire": expire}
        with self._transaction() as db:
            if self.dialect in ("postgresql", "sqlite"):
                insert = postgresql_insert if self.dialect == "postgresql" else sqlite_insert
                stmt = insert(WebSession.__table__).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[WebSession.__table__.c.sid],
                    set_={"sess": stmt.excluded.sess, "expire": stmt.excluded.expire},
                )
                db.execute(stmt)
            elif self.dialect == "oracle":
                db.execute(
                    text(
                        "MERGE INTO sessions s "
                        "USING (SELECT :sid AS sid FROM dual) src ON (s.sid = src.sid) "
                        "WHEN MATCHED THEN UPDATE SET s.sess = :sess, s.expire = :expire "
                        "WHEN NOT MATCHED THEN INSERT (sid, sess, expire) VALUES (:sid, :sess, :expire)"
                    ),
                    values,
                )
            else:
                raise GatewayError(f"Session upsert not supported on {self.dialect}", "upsert_web_session")

    def _delete_web_session(self, sid: str) -> int:
        with self._transaction() as db:
            return db.query(WebSession).filter(WebSession.sid == sid).delete(synchronize_session=False)

    def _count_web_sessions(self, now: datetime) -> int:
        with self._transaction() as db:
            return db.query(func.count(WebSession.sid)).filter(WebSession.expire > now).scalar() or 0

    def _clear_web_sessions(self) -> int:
        with self._transaction() as db:
            return db.query(WebSession).delete(synchronize_session=False)

    async def ensure_web_session_table(self) -> None:
        """Create the web session table if it does not exist (idempotent)."""
        await self._run("ensure_web_session_table", self._ensure_web_session_table)

    async def fetch_web_session(self, sid: str) -> Optional[Dict[str, Any]]:
        return await self._run("fetch_web_session", self._fetch_web_session, sid)

    async def upsert_web_session(self, sid: str, sess: str, expire: datetime) -> None:
        """Atomic insert-or-update keyed by sid."""
        await self._run("upsert_web_session", self._upsert_web_session, sid, sess, expire)

    async def delete_web_session(self, sid: str) -> int:
        return await self._run("delete_web_session", self._delete_web_session, sid)

    async def count_web_sessions(self, now: Optional[datetime] = None) -> int:
        """Number of unexpired web sessions."""
        return await self._run("count_web_sessions", self._count_web_sessions, now or datetime.utcnow())

    async def clear_web_sessions(self) -> int:
        return await self._run("clear_web_sessions", self._clear_web_sessions)
