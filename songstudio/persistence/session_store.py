"""
Database Session Store

Server-side web session storage in the relational `sessions` table,
with an in-process read cache so authenticated requests do not need a
database round trip each time.

- get: cache first (fixed window), gateway on miss or cached expiry
- set: atomic upsert through the gateway, then cache update
- touch: memory only; the durable expiry catches up on the next set
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from songstudio.cache.config import get_cache_config
from songstudio.cache.entry import TimedEntry
from songstudio.database.gateway import PersistenceGateway


logger = logging.getLogger(__name__)


@dataclass
class StoredSession:
    """Cached session payload with its expiry."""
    data: Dict[str, Any]
    expire: datetime


def _parse_expiry(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        expire = value
    else:
        try:
            expire = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Ignoring unparseable session cookie expiry: {value!r}")
            return None
    if expire.tzinfo is not None:
        # Stored as naive UTC
        expire = expire.astimezone(timezone.utc).replace(tzinfo=None)
    return expire


class DatabaseSessionStore:
    """
    Session store over PersistenceGateway.

    Usage:
        store = DatabaseSessionStore(gateway)
        await store.ensure_table()
        await store.set(sid, {"cookie": {...}, "user": {...}})
        session = await store.get(sid)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        cache_ttl: Optional[timedelta] = None,
        max_age: Optional[timedelta] = None,
    ):
        config = get_cache_config()
        self.gateway = gateway
        self.cache_ttl = cache_ttl or config.session_ttl
        self.max_age = max_age or config.session_max_age
        self._sweep_interval = config.session_sweep_interval_seconds
        self._cache: Dict[str, TimedEntry] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _expiry_for(self, data: Dict[str, Any]) -> datetime:
        cookie = data.get("cookie") or {}
        return _parse_expiry(cookie.get("expires")) or datetime.utcnow() + self.max_age

    def _remember(self, sid: str, data: Dict[str, Any], expire: datetime) -> None:
        self._cache[sid] = TimedEntry(value=StoredSession(data=data, expire=expire), ttl=self.cache_ttl)

    async def ensure_table(self) -> None:
        """Create the sessions table if absent."""
        await self.gateway.ensure_web_session_table()
        logger.info("Session table ready")

    async def get(self, sid: str) -> Optional[Dict[str, Any]]:
        """Session payload, or None if absent or expired."""
        entry = self._cache.get(sid)
        if entry is not None and not entry.is_expired():
            if entry.value.expire < datetime.utcnow():
                await self.destroy(sid)
                return None
            entry.hit_count += 1
            return entry.value.data

        row = await self.gateway.fetch_web_session(sid)
        if row is None:
            self._cache.pop(sid, None)
            return None

        expire = row["expire"]
        if expire < datetime.utcnow():
            await self.destroy(sid)
            return None

        try:
            data = json.loads(row["sess"])
        except (TypeError, json.JSONDecodeError):
            logger.error(f"Discarding corrupt session {sid}")
            await self.destroy(sid)
            return None

        self._remember(sid, data, expire)
        return data

    async def set(self, sid: str, data: Dict[str, Any]) -> None:
        """Write through to the table, then cache."""
        expire = self._expiry_for(data)
        await self.gateway.upsert_web_session(sid, json.dumps(data, default=str), expire)
        self._remember(sid, data, expire)

    async def destroy(self, sid: str) -> None:
        self._cache.pop(sid, None)
        await self.gateway.delete_web_session(sid)

    def touch(self, sid: str, data: Dict[str, Any]) -> None:
        """Extend the cached expiry only; no durable write."""
        entry = self._cache.get(sid)
        if entry is None:
            return
        entry.value.expire = self._expiry_for(data)
        entry.value.data = data
        entry.refresh()

    async def length(self) -> int:
        return await self.gateway.count_web_sessions()

    async def clear(self) -> None:
        self._cache.clear()
        await self.gateway.clear_web_sessions()

    def sweep(self) -> int:
        """Drop cache entries past their window or their session expiry."""
        now = datetime.utcnow()
        stale = [
            sid for sid, entry in self._cache.items()
            if entry.is_expired() or entry.value.expire < now
        ]
        for sid in stale:
            del self._cache[sid]
        if stale:
            logger.debug(f"Swept {len(stale)} cached sessions")
        return len(stale)

    def __len__(self) -> int:
        return len(self._cache)

    async def start_sweeper(self, interval_seconds: Optional[int] = None):
        if self._running:
            return
        interval = interval_seconds or self._sweep_interval
        self._running = True

        async def sweep_loop():
            while self._running:
                await asyncio.sleep(interval)
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Session sweep error: {e}")

        self._task = asyncio.create_task(sweep_loop())
        logger.info(f"Session cache sweeper started (interval: {interval}s)")

    async def stop_sweeper(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Session cache sweeper stopped")
