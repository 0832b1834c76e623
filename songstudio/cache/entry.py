"""
Time-Boxed Cache Entry

The one TTL abstraction used by the entity cache, the export-bundle
cache and the session store.
"""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class TimedEntry(Generic[T]):
    """Cache entry with creation time and optional TTL."""
    value: T
    ttl: Optional[timedelta] = None
    created_at: float = field(default_factory=time.monotonic)
    hit_count: int = 0

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.created_at

    def is_expired(self) -> bool:
        """Check if entry has outlived its TTL (entries without TTL never expire)."""
        if self.ttl is None:
            return False
        return self.age_seconds >= self.ttl.total_seconds()

    def refresh(self, value: Any = None) -> None:
        """Restart the freshness window, optionally replacing the value."""
        if value is not None:
            self.value = value
        self.created_at = time.monotonic()
