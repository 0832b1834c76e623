"""
Tests for compressed per-entity export blobs and zip bundles.

These tests verify:
- Bundles contain one plain-gzip entry per entity
- A blob write drops the kind's bundle immediately
- A bad blob fails the whole bundle
- Exported projections of sessions and centers
"""

import gzip
import io
import json
import zipfile
from datetime import timedelta

import pytest

from songstudio.cache.export import ExportCache, ExportKind, build_bundle
from songstudio.database.gateway import EntityType
from songstudio.errors import ExportBuildError


# =============================================================================
# BUNDLE ASSEMBLY
# =============================================================================

class TestBuildBundle:

    def test_entries_are_named_by_id(self):
        blob = gzip.compress(b'{"id": "a"}')
        bundle = build_bundle(ExportKind.SINGERS, [("a", blob)])

        with zipfile.ZipFile(io.BytesIO(bundle)) as archive:
            assert archive.namelist() == ["a.json.gz"]
            assert gzip.decompress(archive.read("a.json.gz")) == b'{"id": "a"}'

    def test_identical_content_gives_identical_archives(self):
        blobs = [("a", gzip.compress(b"{}", mtime=0))]
        assert build_bundle(ExportKind.PITCHES, blobs) == build_bundle(ExportKind.PITCHES, blobs)

    def test_non_gzip_blob_fails_whole_bundle(self):
        blobs = [("a", gzip.compress(b"{}")), ("b", b'{"id": "b"}')]
        with pytest.raises(ExportBuildError) as exc:
            build_bundle(ExportKind.SINGERS, blobs)
        assert exc.value.kind == "singers"


# =============================================================================
# EXPORT CACHE
# =============================================================================

@pytest.mark.asyncio
class TestExportCache:
    """Test blob maintenance and bundle freshness."""

    async def test_bundle_loads_lazily(self, service, seeded):
        export = ExportCache(service.gateway)
        assert not export.is_loaded(ExportKind.SINGERS)

        records = export.read_bundle(await export.get_bundle(ExportKind.SINGERS))

        assert export.is_loaded(ExportKind.SINGERS)
        assert {r["name"] for r in records.values()} == {"Asha", "Ravi", "Meera"}

    async def test_bundle_is_cached(self, export_cache, seeded):
        first = await export_cache.get_bundle(ExportKind.CENTERS)
        second = await export_cache.get_bundle(ExportKind.CENTERS)
        assert first == second
        assert export_cache.bundle_hits == 1

    async def test_set_drops_bundle(self, export_cache, seeded):
        await export_cache.get_bundle(ExportKind.SINGERS)
        asha = seeded["singers"]["asha"]

        export_cache.set(ExportKind.SINGERS, asha.id, {"id": asha.id, "name": "Asha Devi"})
        records = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.SINGERS))

        assert records[asha.id]["name"] == "Asha Devi"
        assert export_cache.bundle_builds == 2

    async def test_delete_drops_bundle(self, export_cache, seeded):
        await export_cache.get_bundle(ExportKind.SINGERS)
        ravi = seeded["singers"]["ravi"]

        export_cache.delete(ExportKind.SINGERS, ravi.id)

        records = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.SINGERS))
        assert ravi.id not in records

    async def test_mark_stale_reloads_on_next_bundle(self, export_cache, seeded, gateway):
        await export_cache.get_bundle(ExportKind.SINGERS)
        ravi = seeded["singers"]["ravi"]
        await gateway.delete(EntityType.SINGERS, ravi.id)

        export_cache.mark_stale(ExportKind.SINGERS)
        records = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.SINGERS))

        assert ravi.id not in records
        assert export_cache.is_loaded(ExportKind.SINGERS)

    async def test_version_moves_on_every_mutation(self, export_cache, seeded):
        before = export_cache.version(ExportKind.PITCHES)
        export_cache.delete(ExportKind.PITCHES, seeded["pitches"]["asha_shiva"].id)
        assert export_cache.version(ExportKind.PITCHES) > before

    async def test_bundle_expires_after_ttl(self, gateway, seeded):
        export = ExportCache(gateway, bundle_ttl=timedelta(seconds=30))
        await export.get_bundle(ExportKind.CENTERS)
        export._bundles[ExportKind.CENTERS].created_at -= 31

        await export.get_bundle(ExportKind.CENTERS)

        assert export.bundle_builds == 2

    async def test_corrupt_blob_refuses_bundle(self, export_cache, seeded):
        await export_cache.load_from_db(ExportKind.SINGERS)
        export_cache._blobs[ExportKind.SINGERS]["broken"] = b"not gzip"
        export_cache._invalidate_bundle(ExportKind.SINGERS)

        with pytest.raises(ExportBuildError):
            await export_cache.get_bundle(ExportKind.SINGERS)

    async def test_write_during_load_is_kept(self, export_cache, seeded, gateway):
        asha = seeded["singers"]["asha"]
        original = gateway.query_all

        async def slow_query(entity):
            rows = await original(entity)
            # A concurrent write lands while the gateway read is in flight
            export_cache.delete(ExportKind.SINGERS, asha.id)
            return rows

        gateway.query_all = slow_query
        try:
            await export_cache.load_from_db(ExportKind.SINGERS)
        finally:
            del gateway.query_all

        assert asha.id not in export_cache.ids(ExportKind.SINGERS)


@pytest.mark.asyncio
class TestProjections:
    """Test the exported shape of each kind."""

    async def test_centers_keep_display_fields_only(self, export_cache, seeded):
        records = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.CENTERS))
        south = records[str(seeded["centers"]["south"].id)]
        assert south == {"id": seeded["centers"]["south"].id, "name": "South", "badgeTextColor": "#b91c1c"}

    async def test_session_items_reference_ids(self, service, seeded):
        session = await service.create_session({"name": "Thursday"})
        await service.add_session_item(session.id, {
            "song_id": seeded["songs"]["shiva"].id,
            "singer_id": seeded["singers"]["asha"].id,
            "pitch": "C",
        })

        export = ExportCache(service.gateway)
        records = export.read_bundle(await export.get_bundle(ExportKind.SESSIONS))

        item = records[session.id]["items"][0]
        assert item["songId"] == seeded["songs"]["shiva"].id
        assert "songName" not in item

    async def test_song_content_is_separate_and_lazy(self, export_cache, seeded):
        results = await export_cache.load_all_from_db()
        assert ExportKind.SONGS_CONTENT.value not in results

        songs = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.SONGS_LIST))
        assert all("lyrics" not in s for s in songs.values())

        content = export_cache.read_bundle(await export_cache.get_bundle(ExportKind.SONGS_CONTENT))
        shiva = seeded["songs"]["shiva"]
        assert content[shiva.id]["lyrics"] == "Om Namah Shivaya, Shivaya Namah Om"

    async def test_blobs_are_canonical_json(self, export_cache, seeded):
        await export_cache.load_from_db(ExportKind.PITCHES)
        pitch = seeded["pitches"]["asha_shiva"]

        blob = export_cache._blobs[ExportKind.PITCHES][pitch.id]

        data = json.loads(gzip.decompress(blob))
        assert data["pitch"] == "C"
        assert data["singerName"] == "Asha"


@pytest.mark.asyncio
class TestManifest:

    async def test_manifest_reports_counts(self, export_cache, seeded):
        await export_cache.get_bundle(ExportKind.SINGERS)

        manifest = export_cache.get_manifest()

        assert manifest["singers"]["loaded"] is True
        assert manifest["singers"]["count"] == 3
        assert manifest["singers"]["bundle_cached"] is True
        assert manifest["songs-content"]["loaded"] is False

    async def test_clear(self, export_cache, seeded):
        await export_cache.load_all_from_db()
        export_cache.clear()
        assert export_cache.ids(ExportKind.SINGERS) == []
        assert not export_cache.is_loaded(ExportKind.SINGERS)
