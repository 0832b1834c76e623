"""
Song Studio Database Layer

Usage:
    from songstudio.database import create_db_engine, init_db, PersistenceGateway

    engine = create_db_engine()
    init_db(engine)
    gateway = PersistenceGateway(engine)
    rows = await gateway.query_all(EntityType.SINGERS)
"""

from .models import (
    Base,
    Song,
    Singer,
    Pitch,
    Template,
    NamedSession,
    SessionItem,
    Center,
    Feedback,
    WebSession,
)
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    dispose_engine,
    create_session_factory,
    session_scope,
    init_db,
    check_db_connection,
)
from .gateway import EntityType, MergeResult, PersistenceGateway

__all__ = [
    # Models
    "Base",
    "Song",
    "Singer",
    "Pitch",
    "Template",
    "NamedSession",
    "SessionItem",
    "Center",
    "Feedback",
    "WebSession",
    # Session management
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "dispose_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "check_db_connection",
    # Gateway
    "EntityType",
    "MergeResult",
    "PersistenceGateway",
]
