"""
Error Types

Typed failures raised by the gateway and the cache layer.
The HTTP routers translate these into status codes.
"""

from typing import List, Optional


class GatewayError(Exception):
    """Driver or transport failure reported by the persistence gateway."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class UniqueConstraintError(GatewayError):
    """A write collided with a unique key in the backing store."""
    pass


class RecordNotFoundError(GatewayError):
    """A write targeted a row that does not exist."""

    def __init__(self, entity: str, record_id):
        super().__init__(f"{entity} not found: {record_id}")
        self.entity = entity
        self.record_id = record_id


class ValidationError(Exception):
    """Payload rejected before reaching the gateway."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class CenterInUseError(Exception):
    """A center cannot be deleted while other records reference it."""

    def __init__(self, center_id: int, dependency_type: str, items: List[str]):
        super().__init__(
            f"Cannot delete center. {len(items)} {dependency_type} are tagged with this center."
        )
        self.center_id = center_id
        self.dependency_type = dependency_type
        self.items = items


class ExportBuildError(Exception):
    """An export bundle could not be assembled; no partial bundle is served."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"Failed to build {kind} bundle: {message}")
        self.kind = kind


UNIQUE_VIOLATION_MARKERS = (
    "unique constraint",        # Oracle ORA-00001, PostgreSQL
    "ora-00001",
    "duplicate key",            # PostgreSQL
    "unique violation",
)


def is_unique_violation(message: str) -> bool:
    """Detect a unique-key violation from a driver error message."""
    lowered = message.lower()
    return any(marker in lowered for marker in UNIQUE_VIOLATION_MARKERS)
