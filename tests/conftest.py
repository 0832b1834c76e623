"""
Pytest Configuration and Shared Fixtures

Every test gets its own file-backed SQLite database under tmp_path,
so gateway calls run on worker threads exactly as in production.
"""

from typing import Any, Dict

import pytest

from songstudio.cache.export import ExportCache
from songstudio.cache.service import CacheService
from songstudio.database.gateway import PersistenceGateway
from songstudio.database.session import create_db_engine, init_db
from songstudio.persistence.session_store import DatabaseSessionStore


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database with all tables created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'songstudio_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(engine) -> PersistenceGateway:
    return PersistenceGateway(engine)


# ============================================================================
# Cache
# ============================================================================

@pytest.fixture
def export_cache(gateway) -> ExportCache:
    return ExportCache(gateway)


@pytest.fixture
def service(gateway, export_cache) -> CacheService:
    return CacheService(gateway, export_cache=export_cache)


@pytest.fixture
def session_store(gateway) -> DatabaseSessionStore:
    return DatabaseSessionStore(gateway)


# ============================================================================
# Seed Data
# ============================================================================

@pytest.fixture
async def seeded(service) -> Dict[str, Any]:
    """
    Two centers, three singers, two songs and two pitches:

    - Asha (center 1) sings Om Namah Shivaya in C
    - Ravi (center 2) sings Govinda Bolo in D
    - Meera has no center and no pitches
    """
    north = await service.create_center({"name": "North"})
    south = await service.create_center({"name": "South", "badge_text_color": "#b91c1c"})

    asha = await service.create_singer({"name": "Asha", "gender": "Female", "center_ids": [north.id]})
    ravi = await service.create_singer({"name": "Ravi", "gender": "Male", "center_ids": [south.id]})
    meera = await service.create_singer({"name": "Meera", "gender": "Female"})

    shiva = await service.create_song({
        "name": "Om Namah Shivaya",
        "external_source_url": "https://songs.example.org/om-namah-shivaya",
        "language": "Sanskrit",
        "deity": "Shiva",
        "raga": "Bhairavi",
        "lyrics": "Om Namah Shivaya, Shivaya Namah Om",
        "meaning": "Salutations to Shiva",
        "song_tags": "shiva,bhajan",
    })
    govinda = await service.create_song({
        "name": "Govinda Bolo",
        "external_source_url": "https://songs.example.org/govinda-bolo",
        "language": "Hindi",
        "deity": "Krishna",
        "lyrics": "Govinda bolo Hari Gopala bolo",
    })

    asha_shiva = await service.create_pitch(shiva.id, asha.id, "C")
    ravi_govinda = await service.create_pitch(govinda.id, ravi.id, "D")

    return {
        "centers": {"north": north, "south": south},
        "singers": {"asha": asha, "ravi": ravi, "meera": meera},
        "songs": {"shiva": shiva, "govinda": govinda},
        "pitches": {"asha_shiva": asha_shiva.pitch, "ravi_govinda": ravi_govinda.pitch},
    }


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
