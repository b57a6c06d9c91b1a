"""Tests for the JSON-file fallback backend."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from note_collector.backends.json_files import JsonFileBackend
from note_collector.exceptions import StorageIOError, ValidationError
from note_collector.models import DEFAULT_THEME_ID, AIPreset, Note, Theme


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture()
def backend(data_dir: Path) -> JsonFileBackend:
    """Return a JsonFileBackend whose files are already seeded."""
    store = JsonFileBackend(data_dir)
    store.ensure_data_directory()
    return store


def _write(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


class TestEnsureDataDirectory:
    def test_seeds_missing_files(self, data_dir: Path) -> None:
        JsonFileBackend(data_dir).ensure_data_directory()

        notes = json.loads((data_dir / "notes.json").read_text())
        themes = json.loads((data_dir / "themes.json").read_text())
        presets = json.loads((data_dir / "ai_presets.json").read_text())
        assert notes == {"notes": []}
        assert [t["id"] for t in themes["themes"]] == [DEFAULT_THEME_ID]
        assert presets == {"presets": []}

    def test_existing_files_kept(self, data_dir: Path) -> None:
        note = {"id": "n1", "title": "Keep", "content": "me"}
        _write(data_dir / "notes.json", {"notes": [note]})
        _write(data_dir / "themes.json", {"themes": [{"id": "work", "name": "Work"}]})

        JsonFileBackend(data_dir).ensure_data_directory()

        notes = json.loads((data_dir / "notes.json").read_text())
        themes = json.loads((data_dir / "themes.json").read_text())
        assert notes == {"notes": [note]}
        assert [t["id"] for t in themes["themes"]] == [DEFAULT_THEME_ID, "work"]
        assert themes["themes"][1]["name"] == "Work"

    @pytest.mark.asyncio
    async def test_default_theme_added_to_empty_file(self, data_dir: Path) -> None:
        _write(data_dir / "themes.json", {"themes": []})
        store = JsonFileBackend(data_dir)
        await store.initialize()

        assert (await store.get_theme(DEFAULT_THEME_ID)).name == "Default"
        raw = json.loads((data_dir / "themes.json").read_text())
        assert [t["id"] for t in raw["themes"]] == [DEFAULT_THEME_ID]

    @pytest.mark.asyncio
    async def test_default_theme_renamed_when_name_taken(self, data_dir: Path) -> None:
        mine = {"id": "mine", "name": "Default"}
        _write(data_dir / "themes.json", {"themes": [mine]})
        store = JsonFileBackend(data_dir)
        await store.initialize()

        themes = {t.id: t.name for t in await store.get_all_themes()}
        assert themes == {"mine": "Default", DEFAULT_THEME_ID: "Default (default)"}

    @pytest.mark.asyncio
    async def test_unreadable_themes_file_left_alone(self, data_dir: Path) -> None:
        data_dir.mkdir(parents=True)
        (data_dir / "themes.json").write_text("{broken", encoding="utf-8")
        store = JsonFileBackend(data_dir)

        with pytest.raises(StorageIOError):
            store.ensure_data_directory()
        assert (data_dir / "themes.json").read_text() == "{broken"
        assert await store.get_theme(DEFAULT_THEME_ID) is not None

    def test_idempotent(self, data_dir: Path) -> None:
        store = JsonFileBackend(data_dir)
        store.ensure_data_directory()
        first = (data_dir / "themes.json").read_text()
        store.ensure_data_directory()
        assert (data_dir / "themes.json").read_text() == first

    def test_unusable_directory_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StorageIOError):
            JsonFileBackend(blocker).ensure_data_directory()


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


class TestNotes:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, backend: JsonFileBackend) -> None:
        note = Note(title="Title", content="Content", tags=["a", "b", "c"])
        await backend.insert_note(note)

        loaded = await backend.get_note(note.id)
        assert loaded is not None
        assert loaded.title == "Title"
        assert loaded.tags == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_file_uses_camel_case(
        self, backend: JsonFileBackend, data_dir: Path
    ) -> None:
        await backend.insert_note(Note(title="T", content="C"))
        raw = json.loads((data_dir / "notes.json").read_text())
        assert "createdAt" in raw["notes"][0]
        assert raw["notes"][0]["theme"] == DEFAULT_THEME_ID

    @pytest.mark.asyncio
    async def test_newest_first_with_filters(self, backend: JsonFileBackend) -> None:
        for title, theme, created in [
            ("old", "default", "2024-01-01T00:00:00"),
            ("new", "work", "2024-06-01T00:00:00"),
            ("mid", "default", "2024-03-01T00:00:00"),
        ]:
            note = Note(title=title, content="c", theme=theme, created_at=created)
            await backend.insert_note(note)

        assert [n.title for n in await backend.get_all_notes()] == ["new", "mid", "old"]
        assert [n.title for n in await backend.get_all_notes(theme="work")] == ["new"]
        assert [n.title for n in await backend.get_all_notes(limit=2)] == ["new", "mid"]

    @pytest.mark.asyncio
    async def test_legacy_tag_formats_decoded(self, data_dir: Path) -> None:
        _write(
            data_dir / "notes.json",
            {
                "notes": [
                    {"id": "n1", "title": "A", "content": "a", "tags": "x, y"},
                    {"id": "n2", "title": "B", "content": "b", "tags": '["p", "q"]'},
                ]
            },
        )
        store = JsonFileBackend(data_dir)
        assert (await store.get_note("n1")).tags == ["x", "y"]
        assert (await store.get_note("n2")).tags == ["p", "q"]

    @pytest.mark.asyncio
    async def test_update(self, backend: JsonFileBackend) -> None:
        note = Note(title="T", content="C")
        await backend.insert_note(note)

        changed = note.model_copy(update={"title": "Changed"})
        assert await backend.update_note(changed) is True
        assert (await backend.get_note(note.id)).title == "Changed"
        assert await backend.update_note(Note(title="ghost", content="x")) is False

    @pytest.mark.asyncio
    async def test_delete(self, backend: JsonFileBackend) -> None:
        note = Note(title="T", content="C")
        await backend.insert_note(note)

        assert await backend.delete_note(note.id) is True
        assert await backend.get_note(note.id) is None
        assert await backend.delete_note(note.id) is False

    @pytest.mark.asyncio
    async def test_malformed_records_survive_rewrite(self, data_dir: Path) -> None:
        """Records that fail validation are kept when the file is rewritten."""
        broken = {"id": "broken", "content": "no title"}
        _write(data_dir / "notes.json", {"notes": [broken]})
        store = JsonFileBackend(data_dir)

        assert await store.get_all_notes() == []
        await store.insert_note(Note(title="T", content="C"))

        raw = json.loads((data_dir / "notes.json").read_text())
        assert broken in raw["notes"]
        assert len(raw["notes"]) == 2


class TestReadFailures:
    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, data_dir: Path) -> None:
        data_dir.mkdir(parents=True)
        (data_dir / "notes.json").write_text("{not json", encoding="utf-8")
        store = JsonFileBackend(data_dir)

        assert await store.get_all_notes() == []
        assert await store.get_note("anything") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_blocks_writes(self, data_dir: Path) -> None:
        """A file that cannot be read is never overwritten."""
        data_dir.mkdir(parents=True)
        (data_dir / "notes.json").write_text("{not json", encoding="utf-8")
        store = JsonFileBackend(data_dir)

        with pytest.raises(StorageIOError):
            await store.insert_note(Note(title="T", content="C"))
        assert (data_dir / "notes.json").read_text() == "{not json"


# ---------------------------------------------------------------------------
# Themes
# ---------------------------------------------------------------------------


class TestThemes:
    @pytest.mark.asyncio
    async def test_upsert_inserts_then_replaces(self, backend: JsonFileBackend) -> None:
        await backend.upsert_theme(Theme(id="work", name="Work"))
        await backend.upsert_theme(Theme(id="work", name="Office"))

        themes = await backend.get_all_themes()
        assert [t.id for t in themes] == [DEFAULT_THEME_ID, "work"]
        assert (await backend.get_theme("work")).name == "Office"

    @pytest.mark.asyncio
    async def test_update_unknown(self, backend: JsonFileBackend) -> None:
        assert await backend.update_theme(Theme(id="ghost", name="Ghost")) is False

    @pytest.mark.asyncio
    async def test_insert_rejects_taken_name(self, backend: JsonFileBackend) -> None:
        work = Theme(name="Work")
        await backend.insert_theme(work)

        with pytest.raises(ValidationError):
            await backend.insert_theme(Theme(name="Work"))
        themes = await backend.get_all_themes()
        assert [t.id for t in themes] == [DEFAULT_THEME_ID, work.id]

    @pytest.mark.asyncio
    async def test_update_rejects_taken_name(self, backend: JsonFileBackend) -> None:
        work = Theme(name="Work")
        await backend.insert_theme(work)

        with pytest.raises(ValidationError):
            await backend.update_theme(work.model_copy(update={"name": "Default"}))
        assert (await backend.get_theme(work.id)).name == "Work"

    @pytest.mark.asyncio
    async def test_delete_reassigns_notes(self, backend: JsonFileBackend) -> None:
        await backend.upsert_theme(Theme(id="work", name="Work"))
        for i in range(3):
            await backend.insert_note(Note(title=f"n{i}", content="c", theme="work"))
        await backend.insert_note(Note(title="other", content="c"))

        moved = await backend.delete_theme("work", reassign_to=DEFAULT_THEME_ID)

        assert moved == 3
        assert await backend.get_theme("work") is None
        notes = await backend.get_all_notes()
        assert len(notes) == 4
        assert {n.theme for n in notes} == {DEFAULT_THEME_ID}

    @pytest.mark.asyncio
    async def test_count_notes_by_theme(self, backend: JsonFileBackend) -> None:
        await backend.upsert_theme(Theme(id="empty", name="Empty"))
        await backend.insert_note(Note(title="a", content="c"))
        await backend.insert_note(Note(title="b", content="c", theme="vanished"))

        counts = await backend.count_notes_by_theme()
        assert counts == {DEFAULT_THEME_ID: 1, "empty": 0, "vanished": 1}
        assert await backend.count_themes() == 2


# ---------------------------------------------------------------------------
# Presets, stats, backup
# ---------------------------------------------------------------------------


class TestPresets:
    @pytest.mark.asyncio
    async def test_single_default(self, backend: JsonFileBackend) -> None:
        first = AIPreset(name="Summarize", prompt="Summarize this")
        second = AIPreset(name="Translate", prompt="Translate this")
        await backend.insert_preset(first)
        await backend.insert_preset(second)

        await backend.set_default_preset(first.id)
        await backend.set_default_preset(second.id)
        assert (await backend.get_default_preset()).id == second.id

        await backend.set_default_preset(None)
        assert await backend.get_default_preset() is None

    @pytest.mark.asyncio
    async def test_delete(self, backend: JsonFileBackend) -> None:
        preset = AIPreset(name="P", prompt="p")
        await backend.insert_preset(preset)
        assert await backend.delete_preset(preset.id) is True
        assert await backend.get_all_presets() == []


class TestStatsAndBackup:
    @pytest.mark.asyncio
    async def test_stats(self, backend: JsonFileBackend) -> None:
        await backend.upsert_theme(Theme(id="work", name="Work"))
        for i in range(7):
            await backend.insert_note(Note(title=f"n{i}", content="c"))

        stats = await backend.get_stats(recent_limit=5)
        assert stats.total_notes == 7
        assert stats.total_themes == 2
        assert stats.notes_by_theme[DEFAULT_THEME_ID].count == 7
        assert stats.notes_by_theme["work"].count == 0
        assert len(stats.recent_notes) == 5

    @pytest.mark.asyncio
    async def test_backup_copies_and_prunes(
        self, backend: JsonFileBackend, tmp_path: Path
    ) -> None:
        dest = tmp_path / "backups"
        for _ in range(3):
            written = await backend.backup(dest, keep=2)
            assert len(written) == 3

        assert len(list(dest.glob("notes-*.json"))) == 2
        assert len(list(dest.glob("themes-*.json"))) == 2
        assert len(list(dest.glob("ai_presets-*.json"))) == 2
