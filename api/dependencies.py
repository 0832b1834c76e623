"""
Shared API dependencies.

The cache service and session store are created once at startup and
kept on app.state; routers receive them through Depends().
"""

import logging
from contextlib import contextmanager
from typing import Any, List, Optional

from fastapi import HTTPException, Query, Request
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from songstudio.cache.service import CacheService
from songstudio.errors import (
    CenterInUseError,
    ExportBuildError,
    GatewayError,
    RecordNotFoundError,
    UniqueConstraintError,
    ValidationError,
)
from songstudio.persistence.session_store import DatabaseSessionStore


logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """Request body accepting camelCase (wire) or snake_case keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "forbid"

    def payload(self) -> dict:
        """Fields the client actually sent, by attribute name."""
        return self.model_dump(exclude_unset=True)


def get_cache_service(request: Request) -> CacheService:
    service = getattr(request.app.state, "cache_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Cache service not initialized")
    return service


def get_session_store(request: Request) -> DatabaseSessionStore:
    store = getattr(request.app.state, "session_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Session store not initialized")
    return store


def get_user(request: Request) -> Optional[str]:
    """Audit identity; authentication itself happens upstream."""
    return request.headers.get("x-user-email")


def center_scope(
    center_ids: Optional[List[int]] = Query(default=None, alias="centerIds"),
    is_admin: bool = Query(default=False, alias="isAdmin"),
):
    return center_ids, is_admin


@contextmanager
def translate_errors(action: str):
    """Map cache-layer failures to HTTP status codes."""
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UniqueConstraintError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CenterInUseError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": str(e), "dependencyType": e.dependency_type, "items": e.items},
        )
    except ExportBuildError as e:
        logger.error(f"{action} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except GatewayError as e:
        logger.error(f"{action} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


def not_found(record: Any, entity: str):
    if record is None:
        raise HTTPException(status_code=404, detail=f"{entity} not found")
    return record


async def list_or_empty(action: str, loader) -> list:
    """Collection reads degrade to an empty list while the database is unavailable."""
    try:
        return await loader()
    except GatewayError as e:
        logger.warning(f"Could not {action}, returning empty list: {e}")
        return []
