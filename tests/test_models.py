"""Unit tests for note_collector.models — tag codec and record aliases."""

from __future__ import annotations

import json

import pytest

from note_collector.models import (
    DEFAULT_THEME_COLOR,
    DEFAULT_THEME_ID,
    Note,
    NotesDocument,
    Theme,
    ThemeSummary,
    decode_source,
    decode_tags,
    default_theme,
    encode_tags,
    missing_default_theme,
)

# ---------------------------------------------------------------------------
# Tag codec
# ---------------------------------------------------------------------------


class TestDecodeTags:
    def test_list_passes_through(self):
        assert decode_tags(["a", "b", "c"]) == ["a", "b", "c"]

    def test_json_array_string(self):
        assert decode_tags('["x", "y"]') == ["x", "y"]

    def test_legacy_comma_separated(self):
        """Comma-separated values are split and trimmed."""
        assert decode_tags("work, ideas ,,todo") == ["work", "ideas", "todo"]

    def test_empty_values(self):
        assert decode_tags(None) == []
        assert decode_tags("") == []
        assert decode_tags("   ") == []
        assert decode_tags([]) == []

    def test_json_scalar_becomes_single_tag(self):
        assert decode_tags('"solo"') == ["solo"]

    def test_json_scalars_keep_stored_text(self):
        """Numbers, booleans and null are tags, not values to reformat."""
        assert decode_tags("true") == ["true"]
        assert decode_tags("null") == ["null"]
        assert decode_tags("1e3") == ["1e3"]
        assert decode_tags(" 42 ") == ["42"]

    def test_blank_items_dropped(self):
        assert decode_tags(["a", "", None, "  ", "b"]) == ["a", "b"]

    def test_unsupported_type(self):
        assert decode_tags(42) == []

    def test_encode_is_json_array(self):
        encoded = encode_tags(["a", "笔记"])
        assert json.loads(encoded) == ["a", "笔记"]
        assert decode_tags(encoded) == ["a", "笔记"]


class TestDecodeSource:
    def test_dict(self):
        assert decode_source({"type": "web", "url": "https://example.com"}) == {
            "type": "web",
            "url": "https://example.com",
        }

    def test_json_string(self):
        assert decode_source('{"type": "clipboard"}') == {"type": "clipboard"}

    def test_plain_string(self):
        assert decode_source("screenshot") == {"type": "screenshot"}

    def test_empty(self):
        assert decode_source(None) is None
        assert decode_source("") is None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestNoteModel:
    def test_create_note_defaults(self) -> None:
        note = Note(title="Hello", content="World")
        assert note.id
        assert note.theme == DEFAULT_THEME_ID
        assert note.tags == []
        assert note.source is None
        assert note.created_at
        assert note.updated_at

    def test_theme_id_alias(self) -> None:
        note = Note.model_validate({"title": "T", "content": "C", "theme_id": "work"})
        assert note.theme == "work"

    def test_empty_theme_defaults(self) -> None:
        note = Note.model_validate({"title": "T", "content": "C", "theme": ""})
        assert note.theme == DEFAULT_THEME_ID

    def test_string_tags_decoded(self) -> None:
        note = Note.model_validate({"title": "T", "content": "C", "tags": "a,b"})
        assert note.tags == ["a", "b"]

    def test_legacy_snake_case_timestamps(self) -> None:
        note = Note.model_validate(
            {"title": "T", "content": "C", "created_at": "2024-01-01T00:00:00+00:00"}
        )
        assert note.created_at == "2024-01-01T00:00:00+00:00"

    def test_dump_uses_camel_case(self) -> None:
        dumped = Note(title="T", content="C").model_dump(by_alias=True)
        assert "createdAt" in dumped
        assert "updatedAt" in dumped
        assert "created_at" not in dumped

    def test_missing_title_rejected(self) -> None:
        with pytest.raises(Exception):
            Note.model_validate({"content": "body"})


class TestThemeModel:
    def test_defaults(self) -> None:
        theme = Theme(name="Work")
        assert theme.color == DEFAULT_THEME_COLOR
        assert theme.description == ""

    def test_null_fields_normalized(self) -> None:
        theme = Theme.model_validate(
            {"id": "t1", "name": "X", "description": None, "color": None}
        )
        assert theme.description == ""
        assert theme.color == DEFAULT_THEME_COLOR

    def test_stored_note_count_ignored(self) -> None:
        """Legacy files carry note_count; it is never read back."""
        theme = Theme.model_validate({"id": "t1", "name": "X", "note_count": 7})
        assert "note_count" not in theme.model_dump()

    def test_missing_default_theme(self) -> None:
        assert missing_default_theme([default_theme()]) is None
        seeded = missing_default_theme([Theme(id="w", name="Work")])
        assert seeded.id == DEFAULT_THEME_ID
        assert seeded.name == "Default"

    def test_missing_default_theme_renamed_on_clash(self) -> None:
        seeded = missing_default_theme([Theme(id="mine", name="Default")])
        assert seeded.name == "Default (default)"

    def test_summary_serializes_note_count(self) -> None:
        summary = ThemeSummary(**default_theme().model_dump(), note_count=3)
        assert summary.model_dump(by_alias=True)["noteCount"] == 3


class TestNotesDocument:
    def test_serialization_roundtrip(self) -> None:
        note = Note(title="T", content="C", tags=["x"])
        raw = NotesDocument(notes=[note]).model_dump_json(by_alias=True)
        restored = NotesDocument.model_validate_json(raw)
        assert restored.notes[0].tags == ["x"]
        assert json.loads(raw)["notes"][0]["createdAt"] == note.created_at
