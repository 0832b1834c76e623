"""
SQLAlchemy Models for Song Studio

Design Principles:
1. The relational store is the only system of record
2. Large song content (lyrics, meaning, tags) lives in Text columns
   that are never loaded with the song listing
3. Natural keys carry unique constraints so concurrent creates are
   resolved by the database, not by in-process checks
4. Id lists (center ids, editor-for) are stored as JSON text

Schema ownership outside of tests belongs to migration tooling;
init_db() only creates missing tables.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_id() -> str:
    """Opaque string id (32 hex chars)."""
    return uuid4().hex


# =============================================================================
# SONGS & SINGERS
# =============================================================================

class Song(Base):
    """Devotional song metadata plus large-object content"""
    __tablename__ = "songs"

    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    external_source_url = Column(String(1000), unique=True)

    # Taxonomy
    language = Column(String(100))
    deity = Column(String(100))
    tempo = Column(String(50))
    beat = Column(String(50))
    raga = Column(String(100))
    level = Column(String(50))

    # Media and reference pitches
    audio_link = Column(String(1000))
    video_link = Column(String(1000))
    golden_voice = Column(Boolean, default=False)
    reference_gents_pitch = Column(String(50))
    reference_ladies_pitch = Column(String(50))

    # Large-object content (fetched on demand)
    lyrics = Column(Text)
    meaning = Column(Text)
    song_tags = Column(Text)

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    pitches = relationship("Pitch", back_populates="song", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_song_name", "name"),
    )


class Singer(Base):
    """Singers (also the user accounts of the admin UI)"""
    __tablename__ = "singers"

    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    # Lower-cased, trimmed name; authoritative guard for duplicate creates
    name_key = Column(String(255), nullable=False, unique=True)
    gender = Column(String(20))
    email = Column(String(255))
    is_admin = Column(Boolean, default=False)

    # JSON-encoded lists of center ids
    center_ids = Column(Text)
    editor_for = Column(Text)

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    pitches = relationship("Pitch", back_populates="singer", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_singer_email", "email"),
    )


class Pitch(Base):
    """Song-singer association carrying the singer's pitch for the song"""
    __tablename__ = "song_singer_pitches"

    id = Column(String(32), primary_key=True, default=generate_id)
    song_id = Column(String(32), ForeignKey("songs.id", ondelete="CASCADE"), nullable=False)
    singer_id = Column(String(32), ForeignKey("singers.id", ondelete="CASCADE"), nullable=False)
    pitch = Column(String(50), nullable=False)

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    song = relationship("Song", back_populates="pitches")
    singer = relationship("Singer", back_populates="pitches")

    __table_args__ = (
        UniqueConstraint("song_id", "singer_id", name="uq_pitch_song_singer"),
        Index("idx_pitch_singer", "singer_id"),
    )


# =============================================================================
# PRESENTATION
# =============================================================================

class Template(Base):
    """Presentation template (slides are stored as JSON text)"""
    __tablename__ = "presentation_templates"

    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    # {"aspectRatio": ..., "slides": [...], "referenceSlideIndex": ...}
    template_json = Column(Text)
    center_ids = Column(Text)
    is_default = Column(Boolean, default=False, nullable=False)

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NamedSession(Base):
    """Named presentation playlist"""
    __tablename__ = "named_sessions"

    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    center_ids = Column(Text)

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    items = relationship(
        "SessionItem",
        back_populates="session",
        order_by="SessionItem.sequence_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class SessionItem(Base):
    """One (song, singer, pitch) entry of a named session"""
    __tablename__ = "session_items"

    id = Column(String(32), primary_key=True, default=generate_id)
    session_id = Column(String(32), ForeignKey("named_sessions.id", ondelete="CASCADE"), nullable=False)
    song_id = Column(String(32), ForeignKey("songs.id", ondelete="CASCADE"), nullable=False)
    singer_id = Column(String(32), ForeignKey("singers.id", ondelete="SET NULL"))
    pitch = Column(String(50))
    sequence_order = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    session = relationship("NamedSession", back_populates="items")

    __table_args__ = (
        UniqueConstraint("session_id", "sequence_order", name="uq_session_item_order"),
    )


# =============================================================================
# ORGANIZATION & FEEDBACK
# =============================================================================

class Center(Base):
    """Organizational center used as a visibility scope"""
    __tablename__ = "centers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    badge_text_color = Column(String(20), default="#1e40af")

    # Audit
    created_by = Column(String(255))
    updated_by = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Feedback(Base):
    """User-submitted feedback"""
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(50), nullable=False)
    feedback = Column(Text, nullable=False)
    email = Column(String(255), nullable=False)
    ip_address = Column(String(100))
    user_agent = Column(String(500))
    url = Column(String(1000))
    status = Column(String(50), default="new", nullable=False)
    admin_notes = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# WEB SESSIONS
# =============================================================================

class WebSession(Base):
    """Server-side web session (serialized payload + expiry)"""
    __tablename__ = "sessions"

    sid = Column(String(255), primary_key=True)
    sess = Column(Text, nullable=False)
    expire = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_sessions_expire", "expire"),
    )
