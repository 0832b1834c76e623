"""
Cache Invalidation Service

Event-driven invalidation for writes whose effects cross entity
collections. Single-entity writes patch the resident collection in
place; the events below cover the denormalized views that a write can
reach indirectly (pitch listings carry singer names, session details
carry song and singer fields, centers carry derived singer counts).

Invalidation is collection-level: every key under a prefix is dropped
and re-read on next access.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from songstudio.cache.entity_cache import EntityCache


logger = logging.getLogger(__name__)


class CacheKeys:
    """Key builders for resident collections."""

    SONGS = "songs:all"
    SINGERS = "singers:all"
    PITCHES = "pitches:all"
    TEMPLATES = "templates:all"
    SESSIONS = "sessions:all"
    CENTERS = "centers:all"
    FEEDBACK = "feedback:all"

    @staticmethod
    def song_full(song_id: str) -> str:
        return f"songs:full:{song_id}"

    @staticmethod
    def record(collection: str, record_id) -> str:
        """Write marker for one record of a collection; never stored."""
        return f"{collection}#{record_id}"

    @staticmethod
    def session_detail(session_id: str) -> str:
        return f"sessions:detail:{session_id}"


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    # Songs
    SONG_UPDATED = "song_updated"
    SONG_DELETED = "song_deleted"

    # Singers
    SINGER_CREATED = "singer_created"
    SINGER_UPDATED = "singer_updated"
    SINGER_ACCESS_CHANGED = "singer_access_changed"
    SINGER_DELETED = "singer_deleted"
    SINGERS_MERGED = "singers_merged"

    # Sessions
    SESSION_ITEMS_CHANGED = "session_items_changed"

    # Centers
    CENTER_CHANGED = "center_changed"

    # Manual invalidation
    MANUAL_INVALIDATE_ALL = "manual_invalidate_all"


INVALIDATION_RULES: Dict[CacheEvent, Tuple[str, ...]] = {
    CacheEvent.SONG_UPDATED: ("pitches:", "sessions:detail:"),
    CacheEvent.SONG_DELETED: ("sessions:detail:",),
    CacheEvent.SINGER_CREATED: ("centers:",),
    CacheEvent.SINGER_UPDATED: ("pitches:", "sessions:detail:", "centers:"),
    CacheEvent.SINGER_ACCESS_CHANGED: ("centers:",),
    CacheEvent.SINGER_DELETED: ("sessions:detail:", "centers:"),
    CacheEvent.SINGERS_MERGED: ("singers:", "pitches:", "sessions:detail:", "centers:"),
    CacheEvent.SESSION_ITEMS_CHANGED: ("sessions:detail:{session_id}",),
    CacheEvent.CENTER_CHANGED: ("centers:",),
    CacheEvent.MANUAL_INVALIDATE_ALL: ("",),
}


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    prefixes: List[str]
    keys_invalidated: int
    duration_ms: float
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class CacheInvalidator:
    """
    Maps write events to the key prefixes they make stale.

    Usage:
        invalidator = CacheInvalidator(cache)
        invalidator.handle_event(CacheEvent.SINGERS_MERGED)
        invalidator.handle_event(CacheEvent.SESSION_ITEMS_CHANGED, session_id=sid)
    """

    def __init__(self, cache: EntityCache):
        self.cache = cache

    def handle_event(self, event: CacheEvent, **context) -> InvalidationResult:
        start = time.time()
        prefixes: List[str] = []
        errors: List[str] = []
        count = 0

        for template in INVALIDATION_RULES.get(event, ()):
            try:
                prefix = template.format(**context)
            except KeyError as e:
                errors.append(f"Missing context {e} for {event.value}")
                continue
            prefixes.append(prefix)
            count += self.cache.invalidate_pattern(prefix)

        duration_ms = (time.time() - start) * 1000
        if errors:
            logger.error(f"Invalidation for {event.value} incomplete: {errors}")
        else:
            logger.debug(f"Invalidated {count} keys for {event.value}")

        return InvalidationResult(
            event=event,
            prefixes=prefixes,
            keys_invalidated=count,
            duration_ms=duration_ms,
            errors=errors,
        )
