"""
Song Studio - Data Models

Canonical in-memory records shared by the cache, the export layer
and the API. Every gateway row passes through exactly one
normalize_* function before it is used anywhere else, so driver
quirks (upper-case column names, LOB readers, JSON-encoded id lists,
booleans stored as integers) stay at this seam.
"""

import json
import logging
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_BADGE_COLOR = "#1e40af"
DEFAULT_ASPECT_RATIO = "16:9"


# =============================================================================
# ROW HELPERS
# =============================================================================

def _get(row: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Read a column regardless of the driver's key casing."""
    if key in row:
        return row[key]
    upper = key.upper()
    if upper in row:
        return row[upper]
    return default


def _read_lob(value: Any) -> Optional[str]:
    """Materialize a LOB handle (anything with read()) into a string."""
    if value is None:
        return None
    if hasattr(value, "read"):
        value = value.read()
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "y", "yes")
    return bool(value)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_id_list(value: Any) -> List[int]:
    """
    Parse a center-id list stored as JSON text, a list, or a
    comma-separated string. Non-numeric entries are dropped.
    """
    value = _read_lob(value) if not isinstance(value, (list, tuple)) else value
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            value = value.split(",")
    if not isinstance(value, (list, tuple)):
        value = [value]

    ids = []
    for item in value:
        try:
            number = int(str(item).strip())
        except ValueError:
            continue
        if number not in ids:
            ids.append(number)
    return ids


def dump_id_list(ids: Optional[List[int]]) -> Optional[str]:
    """Encode a center-id list for storage."""
    if not ids:
        return None
    return json.dumps(parse_id_list(list(ids)))


def name_key(name: str) -> str:
    """Case-insensitive natural key for singer names."""
    return " ".join(name.split()).lower()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _wire_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class Record:
    """Mixin providing the camelCase wire representation."""

    # Fields omitted from the wire shape when they are None
    OMIT_WHEN_NONE: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name in self.OMIT_WHEN_NONE:
                continue
            if isinstance(value, list):
                value = [v.to_dict() if isinstance(v, Record) else _wire_value(v) for v in value]
            data[_camel(f.name)] = _wire_value(value)
        return data


# =============================================================================
# SONGS
# =============================================================================

SONG_CONTENT_FIELDS = ("lyrics", "meaning", "song_tags")


@dataclass
class SongSummary(Record):
    """Metadata-only song projection (no large-object fields)."""
    id: str
    name: str
    external_source_url: Optional[str] = None
    language: Optional[str] = None
    deity: Optional[str] = None
    tempo: Optional[str] = None
    beat: Optional[str] = None
    raga: Optional[str] = None
    level: Optional[str] = None
    audio_link: Optional[str] = None
    video_link: Optional[str] = None
    golden_voice: bool = False
    reference_gents_pitch: Optional[str] = None
    reference_ladies_pitch: Optional[str] = None
    pitch_count: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SongContent:
    """The large-object fields of a song, always fetched as a unit."""
    lyrics: Optional[str] = None
    meaning: Optional[str] = None
    song_tags: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"lyrics": self.lyrics, "meaning": self.meaning, "songTags": self.song_tags}


@dataclass
class Song(SongSummary):
    """Full song record: metadata merged with large-object content."""
    lyrics: Optional[str] = None
    meaning: Optional[str] = None
    song_tags: Optional[str] = None

    @classmethod
    def hydrate(cls, summary: SongSummary, content: SongContent) -> "Song":
        return cls(**asdict(summary), **asdict(content))

    def summary(self) -> SongSummary:
        data = asdict(self)
        for name in SONG_CONTENT_FIELDS:
            data.pop(name)
        return SongSummary(**data)

    def content(self) -> SongContent:
        return SongContent(lyrics=self.lyrics, meaning=self.meaning, song_tags=self.song_tags)


def normalize_song_summary(row: Dict[str, Any]) -> SongSummary:
    return SongSummary(
        id=str(_get(row, "id")),
        name=_get(row, "name") or "",
        external_source_url=_get(row, "external_source_url"),
        language=_get(row, "language"),
        deity=_get(row, "deity"),
        tempo=_get(row, "tempo"),
        beat=_get(row, "beat"),
        raga=_get(row, "raga"),
        level=_get(row, "level"),
        audio_link=_get(row, "audio_link"),
        video_link=_get(row, "video_link"),
        golden_voice=_to_bool(_get(row, "golden_voice", False)),
        reference_gents_pitch=_get(row, "reference_gents_pitch"),
        reference_ladies_pitch=_get(row, "reference_ladies_pitch"),
        pitch_count=_to_int(_get(row, "pitch_count", 0)),
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


def normalize_song_content(row: Dict[str, Any]) -> SongContent:
    return SongContent(
        lyrics=_read_lob(_get(row, "lyrics")),
        meaning=_read_lob(_get(row, "meaning")),
        song_tags=_read_lob(_get(row, "song_tags")),
    )


# =============================================================================
# SINGERS & PITCHES
# =============================================================================

@dataclass
class Singer(Record):
    id: str
    name: str
    gender: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False
    center_ids: List[int] = field(default_factory=list)
    editor_for: List[int] = field(default_factory=list)
    pitch_count: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def normalize_singer(row: Dict[str, Any]) -> Singer:
    return Singer(
        id=str(_get(row, "id")),
        name=_get(row, "name") or "",
        gender=_get(row, "gender"),
        email=_get(row, "email"),
        is_admin=_to_bool(_get(row, "is_admin", False)),
        center_ids=parse_id_list(_get(row, "center_ids")),
        editor_for=parse_id_list(_get(row, "editor_for")),
        pitch_count=_to_int(_get(row, "pitch_count", 0)),
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


@dataclass
class Pitch(Record):
    id: str
    song_id: str
    singer_id: str
    pitch: str
    song_name: Optional[str] = None
    singer_name: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def normalize_pitch(row: Dict[str, Any]) -> Pitch:
    return Pitch(
        id=str(_get(row, "id")),
        song_id=str(_get(row, "song_id")),
        singer_id=str(_get(row, "singer_id")),
        pitch=_get(row, "pitch") or "",
        song_name=_get(row, "song_name"),
        singer_name=_get(row, "singer_name"),
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


# =============================================================================
# TEMPLATES
# =============================================================================

@dataclass
class Template(Record):
    """
    Presentation template.

    Each slide is a layered composition (background, images, videos,
    audios, text elements and the song-title/lyrics/translation style
    blocks) kept as the raw JSON mapping the editor produced.
    """
    id: str
    name: str
    description: Optional[str] = None
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    slides: List[Dict[str, Any]] = field(default_factory=list)
    reference_slide_index: int = 0
    center_ids: List[int] = field(default_factory=list)
    is_default: bool = False
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def template_json(self) -> str:
        """Storage form of the slide definition."""
        return json.dumps({
            "aspectRatio": self.aspect_ratio,
            "slides": self.slides,
            "referenceSlideIndex": self.reference_slide_index,
        })

    @property
    def yaml(self) -> str:
        """Derived YAML serialization shown in the template editor."""
        return yaml.safe_dump(
            {
                "name": self.name,
                "description": self.description,
                "aspectRatio": self.aspect_ratio,
                "referenceSlideIndex": self.reference_slide_index,
                "slides": self.slides,
            },
            sort_keys=False,
            allow_unicode=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["yaml"] = self.yaml
        return data


def normalize_template(row: Dict[str, Any]) -> Template:
    raw = _read_lob(_get(row, "template_json"))
    definition: Dict[str, Any] = {}
    if raw:
        try:
            definition = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Template {_get(row, 'id')} has unparseable template_json")

    slides = definition.get("slides")
    if slides is None:
        # Single-slide legacy layout stored the slide at the top level
        legacy = {k: v for k, v in definition.items() if k not in ("aspectRatio", "referenceSlideIndex")}
        slides = [legacy] if legacy else []

    return Template(
        id=str(_get(row, "id")),
        name=_get(row, "name") or "",
        description=_read_lob(_get(row, "description")),
        aspect_ratio=definition.get("aspectRatio") or DEFAULT_ASPECT_RATIO,
        slides=slides,
        reference_slide_index=_to_int(definition.get("referenceSlideIndex", 0)),
        center_ids=parse_id_list(_get(row, "center_ids")),
        is_default=_to_bool(_get(row, "is_default", False)),
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


# =============================================================================
# SESSIONS
# =============================================================================

@dataclass
class SessionItem(Record):
    id: str
    session_id: str
    song_id: str
    sequence_order: int
    singer_id: Optional[str] = None
    pitch: Optional[str] = None
    song_name: Optional[str] = None
    song_deity: Optional[str] = None
    song_language: Optional[str] = None
    song_tempo: Optional[str] = None
    song_raga: Optional[str] = None
    singer_name: Optional[str] = None
    singer_gender: Optional[str] = None
    singer_center_ids: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def normalize_session_item(row: Dict[str, Any]) -> SessionItem:
    singer_id = _get(row, "singer_id")
    return SessionItem(
        id=str(_get(row, "id")),
        session_id=str(_get(row, "session_id")),
        song_id=str(_get(row, "song_id")),
        sequence_order=_to_int(_get(row, "sequence_order")),
        singer_id=str(singer_id) if singer_id is not None else None,
        pitch=_get(row, "pitch"),
        song_name=_get(row, "song_name"),
        song_deity=_get(row, "song_deity"),
        song_language=_get(row, "song_language"),
        song_tempo=_get(row, "song_tempo"),
        song_raga=_get(row, "song_raga"),
        singer_name=_get(row, "singer_name"),
        singer_gender=_get(row, "singer_gender"),
        singer_center_ids=parse_id_list(_get(row, "singer_center_ids")),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


@dataclass
class NamedSession(Record):
    """Presentation playlist; items are present only on the detail view."""
    id: str
    name: str
    description: Optional[str] = None
    center_ids: List[int] = field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: Optional[List[SessionItem]] = None

    OMIT_WHEN_NONE = ("items",)


def normalize_session(row: Dict[str, Any]) -> NamedSession:
    return NamedSession(
        id=str(_get(row, "id")),
        name=_get(row, "name") or "",
        description=_read_lob(_get(row, "description")),
        center_ids=parse_id_list(_get(row, "center_ids")),
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


# =============================================================================
# CENTERS & FEEDBACK
# =============================================================================

@dataclass
class Center(Record):
    id: int
    name: str
    badge_text_color: str = DEFAULT_BADGE_COLOR
    editor_ids: List[str] = field(default_factory=list)
    singer_count: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def normalize_center(row: Dict[str, Any]) -> Center:
    return Center(
        id=_to_int(_get(row, "id")),
        name=_get(row, "name") or "",
        badge_text_color=_get(row, "badge_text_color") or DEFAULT_BADGE_COLOR,
        created_by=_get(row, "created_by"),
        updated_by=_get(row, "updated_by"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


FEEDBACK_CATEGORIES = ("bug", "feature", "improvement", "question", "other")


@dataclass
class Feedback(Record):
    id: int
    category: str
    feedback: str
    email: str
    status: str = "new"
    admin_notes: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def normalize_feedback(row: Dict[str, Any]) -> Feedback:
    return Feedback(
        id=_to_int(_get(row, "id")),
        category=_get(row, "category") or "other",
        feedback=_read_lob(_get(row, "feedback")) or "",
        email=_get(row, "email") or "",
        status=_get(row, "status") or "new",
        admin_notes=_read_lob(_get(row, "admin_notes")),
        ip_address=_get(row, "ip_address"),
        user_agent=_get(row, "user_agent"),
        url=_get(row, "url"),
        created_at=_get(row, "created_at"),
        updated_at=_get(row, "updated_at"),
    )


__all__ = [
    "DEFAULT_BADGE_COLOR",
    "FEEDBACK_CATEGORIES",
    "SONG_CONTENT_FIELDS",
    "Record",
    "SongSummary",
    "SongContent",
    "Song",
    "Singer",
    "Pitch",
    "Template",
    "SessionItem",
    "NamedSession",
    "Center",
    "Feedback",
    "normalize_song_summary",
    "normalize_song_content",
    "normalize_singer",
    "normalize_pitch",
    "normalize_template",
    "normalize_session_item",
    "normalize_session",
    "normalize_center",
    "normalize_feedback",
    "parse_id_list",
    "dump_id_list",
    "name_key",
]
