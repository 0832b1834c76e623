"""
Tests for the database-backed web session store.
"""

import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from songstudio.persistence.session_store import DatabaseSessionStore, _parse_expiry


def session_data(user="asha@example.org", expires=None):
    cookie = {"httpOnly": True, "path": "/"}
    if expires is not None:
        cookie["expires"] = expires
    return {"cookie": cookie, "user": {"email": user}}


class TestExpiryParsing:

    def test_iso_with_zulu(self):
        assert _parse_expiry("2030-01-01T10:00:00.000Z") == datetime(2030, 1, 1, 10, 0, 0)

    def test_offset_is_converted_to_utc(self):
        assert _parse_expiry("2030-01-01T12:00:00+02:00") == datetime(2030, 1, 1, 10, 0, 0)

    def test_unparseable_is_ignored(self):
        assert _parse_expiry("next tuesday") is None
        assert _parse_expiry(None) is None


@pytest.mark.asyncio
class TestSessionStore:
    """Test get/set/destroy against the sessions table."""

    async def test_set_then_get(self, session_store):
        await session_store.set("sid-1", session_data())
        assert (await session_store.get("sid-1"))["user"]["email"] == "asha@example.org"

    async def test_get_unknown(self, session_store):
        assert await session_store.get("nope") is None

    async def test_cached_read_skips_database(self, session_store, gateway):
        await session_store.set("sid-1", session_data())
        with patch.object(gateway, "fetch_web_session", AsyncMock()) as fetch:
            assert await session_store.get("sid-1") is not None
            fetch.assert_not_called()

    async def test_cold_read_comes_from_table(self, gateway, session_store):
        await session_store.set("sid-1", session_data())
        other_process = DatabaseSessionStore(gateway)
        assert (await other_process.get("sid-1"))["user"]["email"] == "asha@example.org"
        assert len(other_process) == 1

    async def test_set_overwrites(self, session_store, gateway):
        await session_store.set("sid-1", session_data(user="a@example.org"))
        await session_store.set("sid-1", session_data(user="b@example.org"))

        row = await gateway.fetch_web_session("sid-1")
        assert json.loads(row["sess"])["user"]["email"] == "b@example.org"
        assert await session_store.length() == 1

    async def test_cookie_expiry_is_stored(self, session_store, gateway):
        await session_store.set("sid-1", session_data(expires="2030-06-01T00:00:00Z"))
        row = await gateway.fetch_web_session("sid-1")
        assert row["expire"] == datetime(2030, 6, 1)

    async def test_default_expiry_uses_max_age(self, gateway):
        store = DatabaseSessionStore(gateway, max_age=timedelta(hours=1))
        await store.set("sid-1", session_data())
        row = await gateway.fetch_web_session("sid-1")
        assert timedelta(minutes=59) < row["expire"] - datetime.utcnow() <= timedelta(hours=1)

    async def test_expired_row_is_destroyed(self, session_store, gateway):
        await gateway.upsert_web_session("old", json.dumps(session_data()), datetime.utcnow() - timedelta(seconds=1))

        assert await session_store.get("old") is None
        assert await gateway.fetch_web_session("old") is None

    async def test_expired_cached_session_is_destroyed(self, session_store, gateway):
        soon = (datetime.utcnow() + timedelta(seconds=5)).isoformat()
        await session_store.set("sid-1", session_data(expires=soon))
        session_store._cache["sid-1"].value.expire = datetime.utcnow() - timedelta(seconds=1)

        assert await session_store.get("sid-1") is None
        assert await gateway.fetch_web_session("sid-1") is None

    async def test_corrupt_payload_is_discarded(self, session_store, gateway):
        await gateway.upsert_web_session("bad", "{not json", datetime.utcnow() + timedelta(days=1))
        assert await session_store.get("bad") is None
        assert await gateway.fetch_web_session("bad") is None

    async def test_destroy(self, session_store):
        await session_store.set("sid-1", session_data())
        await session_store.destroy("sid-1")
        assert await session_store.get("sid-1") is None
        assert len(session_store) == 0

    async def test_concurrent_sets_leave_one_row(self, session_store):
        await asyncio.gather(
            session_store.set("sid-race", session_data(user="a@example.org")),
            session_store.set("sid-race", session_data(user="b@example.org")),
        )
        assert await session_store.length() == 1

    async def test_clear(self, session_store):
        await session_store.set("a", session_data())
        await session_store.set("b", session_data())
        await session_store.clear()
        assert await session_store.length() == 0
        assert len(session_store) == 0


@pytest.mark.asyncio
class TestTouchAndSweep:
    """Test memory-only expiry handling."""

    async def test_touch_does_not_write(self, session_store, gateway):
        await session_store.set("sid-1", session_data(expires="2030-01-01T00:00:00Z"))

        with patch.object(gateway, "upsert_web_session", AsyncMock()) as upsert:
            session_store.touch("sid-1", session_data(expires="2031-01-01T00:00:00Z"))
            upsert.assert_not_called()

        assert session_store._cache["sid-1"].value.expire == datetime(2031, 1, 1)
        row = await gateway.fetch_web_session("sid-1")
        assert row["expire"] == datetime(2030, 1, 1)

    async def test_touch_unknown_sid_is_noop(self, session_store):
        session_store.touch("nope", session_data())
        assert len(session_store) == 0

    async def test_sweep_drops_stale_entries(self, gateway):
        store = DatabaseSessionStore(gateway, cache_ttl=timedelta(seconds=30))
        await store.set("fresh", session_data())
        await store.set("stale", session_data())
        store._cache["stale"].created_at -= 31

        assert store.sweep() == 1
        assert len(store) == 1
        # Still durable; re-read on next access
        assert await store.get("stale") is not None

    async def test_sweeper_start_stop(self, session_store):
        await session_store.start_sweeper(interval_seconds=3600)
        await session_store.start_sweeper(interval_seconds=3600)
        await session_store.stop_sweeper()
        assert session_store._task is None
