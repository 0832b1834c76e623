"""
Tests for record normalization and wire shapes.

Rows can arrive with upper- or lower-case keys, JSON or comma
separated id lists, and integer booleans; every normalizer must
produce the same canonical record.
"""

import json
from datetime import datetime

import yaml

from songstudio.models import (
    DEFAULT_BADGE_COLOR,
    Song,
    SongContent,
    dump_id_list,
    name_key,
    normalize_center,
    normalize_session,
    normalize_singer,
    normalize_song_summary,
    normalize_template,
    parse_id_list,
)


class TestIdLists:
    """Test center-id list parsing."""

    def test_parse_json(self):
        assert parse_id_list("[1, 2, 3]") == [1, 2, 3]

    def test_parse_comma_separated(self):
        assert parse_id_list("4, 5") == [4, 5]

    def test_parse_deduplicates(self):
        assert parse_id_list([1, "1", 2]) == [1, 2]

    def test_parse_empty(self):
        assert parse_id_list(None) == []
        assert parse_id_list("") == []

    def test_dump_empty_is_null(self):
        assert dump_id_list([]) is None
        assert json.loads(dump_id_list([3, 1])) == [3, 1]


class TestNameKey:

    def test_case_and_whitespace_insensitive(self):
        assert name_key("  Asha   Devi ") == name_key("asha devi")


class TestNormalizers:
    """Test per-entity normalization."""

    def test_singer_from_uppercase_row(self):
        singer = normalize_singer({
            "ID": "abc",
            "NAME": "Asha",
            "IS_ADMIN": 1,
            "CENTER_IDS": "[1,2]",
            "EDITOR_FOR": None,
            "PITCH_COUNT": 3,
        })
        assert singer.id == "abc"
        assert singer.is_admin is True
        assert singer.center_ids == [1, 2]
        assert singer.editor_for == []
        assert singer.pitch_count == 3

    def test_song_summary_has_no_content_fields(self):
        summary = normalize_song_summary({"id": "s1", "name": "Govinda Bolo", "golden_voice": 0})
        data = summary.to_dict()
        assert "lyrics" not in data
        assert "meaning" not in data
        assert "songTags" not in data
        assert data["goldenVoice"] is False

    def test_song_hydrate_merges_content(self):
        summary = normalize_song_summary({"id": "s1", "name": "Govinda Bolo"})
        song = Song.hydrate(summary, SongContent(lyrics="la", meaning="m", song_tags="t"))
        assert song.name == "Govinda Bolo"
        assert song.to_dict()["lyrics"] == "la"
        assert song.summary() == summary

    def test_center_default_badge_color(self):
        center = normalize_center({"id": 3, "name": "North", "badge_text_color": None})
        assert center.badge_text_color == DEFAULT_BADGE_COLOR

    def test_session_items_omitted_when_not_loaded(self):
        session = normalize_session({"id": "x", "name": "Thursday", "created_at": datetime(2024, 1, 1)})
        data = session.to_dict()
        assert "items" not in data
        assert data["createdAt"] == "2024-01-01T00:00:00"


class TestTemplates:
    """Test template definition parsing."""

    def test_multi_slide_definition(self):
        template = normalize_template({
            "id": "t1",
            "name": "Default",
            "template_json": json.dumps({
                "aspectRatio": "4:3",
                "slides": [{"background": {"type": "color", "value": "#000"}}, {}],
                "referenceSlideIndex": 1,
            }),
            "is_default": 1,
        })
        assert template.aspect_ratio == "4:3"
        assert len(template.slides) == 2
        assert template.reference_slide_index == 1
        assert template.is_default is True

    def test_legacy_single_slide_layout(self):
        template = normalize_template({
            "id": "t1",
            "name": "Legacy",
            "template_json": json.dumps({"background": {"type": "color", "value": "#fff"}}),
        })
        assert template.slides == [{"background": {"type": "color", "value": "#fff"}}]
        assert template.aspect_ratio == "16:9"

    def test_unparseable_json_yields_empty_template(self):
        template = normalize_template({"id": "t1", "name": "Broken", "template_json": "{not json"})
        assert template.slides == []

    def test_yaml_is_derived_from_definition(self):
        template = normalize_template({
            "id": "t1",
            "name": "Default",
            "template_json": json.dumps({"slides": [{"text": "Om"}]}),
        })
        parsed = yaml.safe_load(template.to_dict()["yaml"])
        assert parsed["name"] == "Default"
        assert parsed["slides"] == [{"text": "Om"}]
