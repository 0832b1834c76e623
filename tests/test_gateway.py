"""
Tests for the persistence gateway against SQLite.

These tests verify:
- Listings exclude large-object song columns
- Driver errors surface as typed errors
- Session item positions stay contiguous
- Singer merge runs as one transaction
- Web session upsert is atomic
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from songstudio.database.gateway import EntityType
from songstudio.errors import RecordNotFoundError, UniqueConstraintError, ValidationError, is_unique_violation


pytestmark = pytest.mark.integration


async def _song(gateway, name, url=None, **fields):
    return await gateway.insert(EntityType.SONGS, {"name": name, "external_source_url": url, **fields})


async def _singer(gateway, name, **fields):
    return await gateway.insert(EntityType.SINGERS, {"name": name, **fields})


class TestErrorClassification:

    def test_unique_markers(self):
        assert is_unique_violation("UNIQUE constraint failed: singers.name_key")
        assert is_unique_violation("ORA-00001: unique constraint (APP.UQ) violated")
        assert is_unique_violation('duplicate key value violates unique constraint "uq"')
        assert not is_unique_violation("FOREIGN KEY constraint failed")


@pytest.mark.asyncio
class TestGenericOperations:
    """Test query/insert/update/delete by entity type."""

    async def test_song_listing_excludes_large_objects(self, gateway):
        song_id = await _song(gateway, "Govinda Bolo", lyrics="Govinda bolo", meaning="Sing Govinda")

        rows = await gateway.query_all(EntityType.SONGS)
        assert len(rows) == 1
        assert "lyrics" not in rows[0]
        assert rows[0]["pitch_count"] == 0

        content = await gateway.query_song_content(song_id)
        assert content["lyrics"] == "Govinda bolo"

    async def test_query_by_id_missing(self, gateway):
        assert await gateway.query_by_id(EntityType.SINGERS, "nope") is None

    async def test_duplicate_singer_name_is_unique_violation(self, gateway):
        await _singer(gateway, "Asha")
        with pytest.raises(UniqueConstraintError):
            await _singer(gateway, "  ASHA ")

    async def test_natural_key_lookup_is_case_insensitive(self, gateway):
        singer_id = await _singer(gateway, "Asha")
        row = await gateway.query_by_natural_key(EntityType.SINGERS, "asha")
        assert row["id"] == singer_id
        assert "name_key" not in row

    async def test_update_missing_row(self, gateway):
        with pytest.raises(RecordNotFoundError):
            await gateway.update(EntityType.SONGS, "missing", {"name": "x"})

    async def test_delete_missing_row(self, gateway):
        with pytest.raises(RecordNotFoundError):
            await gateway.delete(EntityType.SONGS, "missing")

    async def test_protected_columns_rejected(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.insert(EntityType.SINGERS, {"name": "Asha", "name_key": "x"})

    async def test_deleting_song_cascades_pitches(self, gateway):
        song_id = await _song(gateway, "Govinda Bolo")
        singer_id = await _singer(gateway, "Ravi")
        await gateway.insert(EntityType.PITCHES, {"song_id": song_id, "singer_id": singer_id, "pitch": "D"})

        await gateway.delete(EntityType.SONGS, song_id)

        assert await gateway.count_pitches(singer_id=singer_id) == 0

    async def test_id_lists_round_trip_as_json(self, gateway):
        singer_id = await _singer(gateway, "Asha", center_ids=[2, 1, 2])
        row = await gateway.query_by_id(EntityType.SINGERS, singer_id)
        assert row["center_ids"] == "[2, 1]"


@pytest.mark.asyncio
class TestSessionItems:
    """Test sequence position maintenance."""

    async def _session_with_items(self, gateway, count):
        session_id = await gateway.insert(EntityType.SESSIONS, {"name": "Thursday Bhajans"})
        song_ids = [await _song(gateway, f"Song {i}") for i in range(count)]
        item_ids = [
            await gateway.add_session_item(session_id, {"song_id": song_id})
            for song_id in song_ids
        ]
        return session_id, item_ids

    async def _positions(self, gateway, session_id):
        rows = await gateway.query_session_items(session_id)
        return [(r["id"], r["sequence_order"]) for r in rows]

    async def test_append_assigns_next_position(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)
        assert await self._positions(gateway, session_id) == list(zip(item_ids, [1, 2, 3]))

    async def test_insert_at_position(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)
        song_id = await _song(gateway, "Inserted")

        new_id = await gateway.add_session_item(session_id, {"song_id": song_id, "sequence_order": 2})

        order = [item_id for item_id, _ in await self._positions(gateway, session_id)]
        assert order == [item_ids[0], new_id, item_ids[1], item_ids[2]]

    async def test_delete_closes_gap(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 4)

        assert await gateway.delete_session_item(item_ids[1]) == session_id

        positions = await self._positions(gateway, session_id)
        assert [p for _, p in positions] == [1, 2, 3]

    async def test_song_delete_closes_gaps(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)
        middle_song = (await gateway.query_by_id(EntityType.SESSION_ITEMS, item_ids[1]))["song_id"]

        await gateway.delete(EntityType.SONGS, middle_song)

        assert await self._positions(gateway, session_id) == [(item_ids[0], 1), (item_ids[2], 2)]

    async def test_append_after_song_delete(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)
        middle_song = (await gateway.query_by_id(EntityType.SESSION_ITEMS, item_ids[1]))["song_id"]
        await gateway.delete(EntityType.SONGS, middle_song)

        new_id = await gateway.add_session_item(session_id, {"song_id": await _song(gateway, "Late Addition")})

        assert await self._positions(gateway, session_id) == [(item_ids[0], 1), (item_ids[2], 2), (new_id, 3)]

    async def test_reorder(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)

        await gateway.reorder_session_items(session_id, list(reversed(item_ids)))

        assert await self._positions(gateway, session_id) == list(zip(reversed(item_ids), [1, 2, 3]))

    async def test_reorder_requires_every_item_once(self, gateway):
        session_id, item_ids = await self._session_with_items(gateway, 3)
        with pytest.raises(ValidationError):
            await gateway.reorder_session_items(session_id, item_ids[:2])
        with pytest.raises(ValidationError):
            await gateway.reorder_session_items(session_id, [item_ids[0]] * 3)

    async def test_replace(self, gateway):
        session_id, _ = await self._session_with_items(gateway, 3)
        song_id = await _song(gateway, "Only")

        await gateway.replace_session_items(session_id, [{"song_id": song_id}, {"song_id": song_id}])

        assert [p for _, p in await self._positions(gateway, session_id)] == [1, 2]

    async def test_duplicate_session_copies_items(self, gateway):
        session_id, _ = await self._session_with_items(gateway, 2)
        copy_id = await gateway.duplicate_session(session_id, "Thursday Bhajans (Copy)")
        assert len(await gateway.query_session_items(copy_id)) == 2


@pytest.mark.asyncio
class TestMergeSingers:
    """Test transactional singer merge."""

    async def test_merge_moves_and_deduplicates_pitches(self, gateway):
        shared = await _song(gateway, "Shared")
        only_source = await _song(gateway, "Only Source")
        target = await _singer(gateway, "Asha", center_ids=[1])
        source = await _singer(gateway, "Asha D", center_ids=[2], editor_for=[2])
        await gateway.insert(EntityType.PITCHES, {"song_id": shared, "singer_id": target, "pitch": "C"})
        await gateway.insert(EntityType.PITCHES, {"song_id": shared, "singer_id": source, "pitch": "D"})
        await gateway.insert(EntityType.PITCHES, {"song_id": only_source, "singer_id": source, "pitch": "E"})

        result = await gateway.merge_singers(target, [source])

        assert result.reassigned_pitches == 1
        assert result.removed_duplicate_pitches == 1
        assert await gateway.query_by_id(EntityType.SINGERS, source) is None
        pitches = await gateway.query_pitches(singer_id=target)
        assert sorted(p["pitch"] for p in pitches) == ["C", "E"]
        row = await gateway.query_by_id(EntityType.SINGERS, target)
        assert row["center_ids"] == "[1, 2]"
        assert row["editor_for"] == "[2]"

    async def test_merge_into_self_rejected(self, gateway):
        singer = await _singer(gateway, "Asha")
        with pytest.raises(ValidationError):
            await gateway.merge_singers(singer, [singer])

    async def test_failed_merge_changes_nothing(self, gateway):
        target = await _singer(gateway, "Asha")
        source = await _singer(gateway, "Ravi")

        with pytest.raises(RecordNotFoundError):
            await gateway.merge_singers(target, [source, "missing"])

        assert await gateway.query_by_id(EntityType.SINGERS, source) is not None


@pytest.mark.asyncio
class TestDefaultTemplate:

    async def test_set_default_unsets_others(self, gateway):
        first = await gateway.insert(EntityType.TEMPLATES, {"name": "A", "is_default": True})
        second = await gateway.insert(EntityType.TEMPLATES, {"name": "B"})

        previous = await gateway.set_default_template(second)

        assert previous == [first]
        rows = await gateway.query_all(EntityType.TEMPLATES)
        assert [r["id"] for r in rows if r["is_default"]] == [second]


@pytest.mark.asyncio
class TestWebSessions:
    """Test the web session table."""

    async def test_upsert_inserts_then_updates(self, gateway):
        expire = datetime.utcnow() + timedelta(days=1)
        await gateway.upsert_web_session("sid-1", '{"n": 1}', expire)
        await gateway.upsert_web_session("sid-1", '{"n": 2}', expire)

        row = await gateway.fetch_web_session("sid-1")
        assert row["sess"] == '{"n": 2}'
        assert await gateway.count_web_sessions() == 1

    async def test_concurrent_upserts_leave_one_row(self, gateway):
        expire = datetime.utcnow() + timedelta(days=1)
        await asyncio.gather(
            gateway.upsert_web_session("sid-race", '{"who": "a"}', expire),
            gateway.upsert_web_session("sid-race", '{"who": "b"}', expire),
        )
        row = await gateway.fetch_web_session("sid-race")
        assert row["sess"] in ('{"who": "a"}', '{"who": "b"}')
        assert await gateway.count_web_sessions() == 1

    async def test_count_ignores_expired(self, gateway):
        await gateway.upsert_web_session("old", "{}", datetime.utcnow() - timedelta(minutes=1))
        await gateway.upsert_web_session("new", "{}", datetime.utcnow() + timedelta(minutes=1))
        assert await gateway.count_web_sessions() == 1

    async def test_ensure_table_is_idempotent(self, gateway):
        await gateway.ensure_web_session_table()
        await gateway.ensure_web_session_table()
        assert await gateway.clear_web_sessions() == 0
