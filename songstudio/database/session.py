"""
Database Session Management

Handles connection pooling, session lifecycle, and database initialization.
Works against PostgreSQL or Oracle in production and SQLite locally.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from songstudio.utils.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def get_database_url() -> str:
    """
    Get database URL from settings.

    Priority:
    1. DATABASE_URL
    2. SQLite fallback for local development
    """
    settings = get_settings()
    url = settings.DATABASE_URL

    if url:
        # Hosted PostgreSQL URLs use postgres:// but SQLAlchemy needs postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        logger.info("Using database from DATABASE_URL")
        return url

    logger.warning(f"No DATABASE_URL found, using SQLite: {settings.SQLITE_PATH}")
    return f"sqlite:///{settings.SQLITE_PATH}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: Optional[str] = None) -> Engine:
    """
    Create database engine with appropriate settings.

    Server databases: Connection pooling with pre-ping
    SQLite: Cross-thread access, foreign key support
    """
    url = url or get_database_url()
    echo = get_settings().SQL_DEBUG

    if not url.startswith("sqlite"):
        engine = create_engine(
            url,
            pool_size=5,                # Base connections
            max_overflow=10,            # Additional connections under load
            pool_timeout=30,            # Wait for connection
            pool_recycle=1800,          # Recycle connections after 30 min
            pool_pre_ping=True,         # Verify connections before use
            echo=echo,
        )
        logger.info(f"Created {engine.dialect.name} engine with connection pooling")
    else:
        # Gateway work runs on worker threads
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

        # ON DELETE CASCADE / SET NULL need foreign keys enabled
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        logger.info("Created SQLite engine")

    return engine


# Global engine (lazy initialization)
_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get or create the process-wide database engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def dispose_engine() -> None:
    """Release pooled connections (graceful shutdown)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")


# =============================================================================
# SESSION MANAGEMENT
# =============================================================================

def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to an engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Rows are read after commit
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as db:
            db.add(item)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

def init_db(engine: Optional[Engine] = None, drop_all: bool = False) -> None:
    """
    Create all tables that do not exist yet.

    Args:
        engine: Engine to initialize (default: process-wide engine)
        drop_all: If True, drop all tables first (USE WITH CAUTION!)
    """
    engine = engine or get_engine()

    if drop_all:
        logger.warning("Dropping all database tables!")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def check_db_connection(engine: Optional[Engine] = None) -> bool:
    """
    Check if database connection is working.

    Returns:
        True if connection successful, False otherwise
    """
    engine = engine or get_engine()
    try:
        with engine.connect() as conn:
            if engine.dialect.name == "oracle":
                conn.execute(text("SELECT 1 FROM DUAL"))
            else:
                conn.execute(text("SELECT 1"))
        logger.info("Database connection verified")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
