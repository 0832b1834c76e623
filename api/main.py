"""
Song Studio API

FastAPI application. The cache service, export cache and session
store are built once at startup, kept on app.state and injected into
the routers; shutdown stops background tasks and releases the
database engine.
"""

import logging
import sys
from datetime import datetime

from fastapi import FastAPI

from api import cache, centers, feedback, offline, pitches, sessions, singers, songs, templates
from songstudio import __version__
from songstudio.cache.export import ExportCache
from songstudio.cache.service import CacheService
from songstudio.database.gateway import PersistenceGateway
from songstudio.database.session import check_db_connection, dispose_engine, get_engine, init_db
from songstudio.persistence.session_store import DatabaseSessionStore
from songstudio.utils.config import get_settings


settings = get_settings()

# Configure logging to stdout
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
    force=True,
)
logger = logging.getLogger(__name__)

# Quiet down chatty loggers
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

app = FastAPI(
    title="Song Studio",
    description="Devotional song, singer, pitch and presentation management",
    version=__version__,
)

for module in (songs, singers, pitches, templates, sessions, centers, feedback, offline, cache):
    app.include_router(module.router)


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize database, cache and session store."""
    settings = get_settings()
    engine = get_engine()

    logger.info("Initializing database...")
    try:
        init_db(engine)
        if check_db_connection(engine):
            logger.info("Database connection verified")
        else:
            logger.warning("Database connection check failed - continuing anyway")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        # Collections load lazily once the database is reachable

    gateway = PersistenceGateway(engine)
    service = CacheService(gateway, export_cache=ExportCache(gateway))
    store = DatabaseSessionStore(gateway)
    app.state.cache_service = service
    app.state.session_store = store

    if settings.SESSION_TABLE_BOOTSTRAP:
        try:
            await store.ensure_table()
        except Exception as e:
            logger.error(f"Session table bootstrap failed: {e}")

    if settings.CACHE_WARMUP_ON_STARTUP:
        try:
            await service.warmup()
        except Exception as e:
            logger.error(f"Cache warmup failed: {e}")

    await service.warmer.start_background_cleanup()
    await store.start_sweeper()


@app.on_event("shutdown")
async def shutdown_event():
    store = getattr(app.state, "session_store", None)
    if store is not None:
        await store.stop_sweeper()
    service = getattr(app.state, "cache_service", None)
    if service is not None:
        await service.shutdown()
    dispose_engine()


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Song Studio"}


@app.get("/api/health")
async def health():
    """Detailed health check including database and cache status."""
    db_connected = False
    try:
        db_connected = check_db_connection(get_engine())
    except Exception as e:
        logger.warning(f"Health check could not reach database: {e}")

    service = getattr(app.state, "cache_service", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "database": "connected" if db_connected else "disconnected",
        "cached_keys": len(service.cache) if service is not None else 0,
    }
