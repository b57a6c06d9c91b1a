"""JSON file-based fallback backend.

Keeps notes, themes and AI presets in three flat documents that are read
and rewritten in full on every operation. Used when SQLite is unavailable,
and as the reader for the one-time migration into SQLite.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from note_collector.backends.base import PersistenceBackend, backup_stamp, prune_backups
from note_collector.exceptions import StorageIOError, ValidationError
from note_collector.models import (
    AIPreset,
    Note,
    NotesDocument,
    PresetsDocument,
    Stats,
    Theme,
    ThemeCount,
    ThemesDocument,
    default_theme,
    missing_default_theme,
    utc_now,
)

logger = logging.getLogger(__name__)

NOTES_FILENAME = "notes.json"
THEMES_FILENAME = "themes.json"
PRESETS_FILENAME = "ai_presets.json"

RecordT = TypeVar("RecordT", bound=BaseModel)


def _reject_duplicate_name(themes: list[Theme], theme: Theme) -> None:
    if any(t.name == theme.name and t.id != theme.id for t in themes):
        raise ValidationError(f"Theme name '{theme.name}' already exists", field="name")


class _Loaded(list):
    """Parsed records plus the raw items that failed validation.

    Rejected items are written back untouched so a rewrite never drops data
    this version cannot parse.
    """

    def __init__(self, records: list, rejected: list[Any]) -> None:
        super().__init__(records)
        self.rejected = rejected


class JsonFileBackend(PersistenceBackend):
    """Manages persistence using local JSON files."""

    name = "json"

    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)
        self._notes_path = self._dir / NOTES_FILENAME
        self._themes_path = self._dir / THEMES_FILENAME
        self._presets_path = self._dir / PRESETS_FILENAME

    @property
    def data_dir(self) -> Path:
        return self._dir

    async def initialize(self) -> None:
        self.ensure_data_directory()

    def ensure_data_directory(self) -> None:
        """Create the data directory and seed whichever files are missing.

        Existing files are kept as they are, except that a themes.json
        without the default theme gets one added. An unreadable themes.json
        raises ``StorageIOError`` and is left alone.
        """
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._seed(self._notes_path, NotesDocument())
            self._seed(self._themes_path, ThemesDocument(themes=[default_theme()]))
            self._seed(self._presets_path, PresetsDocument())
        except OSError as exc:
            raise StorageIOError(
                f"Cannot prepare data directory: {exc}", str(self._dir)
            ) from exc
        self._repair_default_theme()

    def _repair_default_theme(self) -> None:
        """Add the default theme to an existing themes.json that lacks it."""
        themes = self._themes(strict=True)
        seeded = missing_default_theme(themes)
        if seeded is None:
            return
        themes.insert(0, seeded)
        self._persist(self._themes_path, "themes", themes)
        logger.warning("%s had no default theme, added it", self._themes_path)

    @staticmethod
    def _seed(path: Path, document: BaseModel) -> None:
        try:
            with path.open("x", encoding="utf-8") as fh:
                fh.write(document.model_dump_json(indent=2, by_alias=True))
            logger.info("Created %s", path)
        except FileExistsError:
            pass

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _load(
        self, path: Path, key: str, model: type[RecordT], strict: bool = False
    ) -> _Loaded:
        """Read one document.

        Non-strict reads log and return an empty result on I/O or parse
        errors. Strict reads (the first half of a read-modify-write) raise
        ``StorageIOError`` instead, so a file that could not be read is never
        overwritten. A missing file is empty either way.
        """
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return _Loaded([], [])
        except (OSError, ValueError) as exc:
            if strict:
                raise StorageIOError(
                    f"Failed to read {path.name}: {exc}", str(path)
                ) from exc
            logger.error("Failed to read %s: %s, returning empty result", path, exc)
            return _Loaded([], [])

        items = raw.get(key, []) if isinstance(raw, dict) else []
        if not isinstance(items, list):
            items = []

        records: list[RecordT] = []
        rejected: list[Any] = []
        for item in items:
            try:
                records.append(model.model_validate(item))
            except ModelValidationError as exc:
                logger.warning(
                    "Skipping malformed %s record in %s: %s",
                    model.__name__,
                    path.name,
                    exc,
                )
                rejected.append(item)
        return _Loaded(records, rejected)

    def _persist(self, path: Path, key: str, records: _Loaded | list) -> None:
        """Write the full document back to disk."""
        rejected = getattr(records, "rejected", [])
        payload = {
            key: [r.model_dump(mode="json", by_alias=True) for r in records]
            + list(rejected)
        }
        try:
            path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise StorageIOError(
                f"Failed to write {path.name}: {exc}", str(path)
            ) from exc

    def _notes(self, strict: bool = False) -> _Loaded:
        return self._load(self._notes_path, "notes", Note, strict)

    def _themes(self, strict: bool = False) -> _Loaded:
        return self._load(self._themes_path, "themes", Theme, strict)

    def _presets(self, strict: bool = False) -> _Loaded:
        return self._load(self._presets_path, "presets", AIPreset, strict)

    def _theme_view(self) -> list[Theme]:
        """Themes as readers see them, the default always among them."""
        themes = list(self._themes())
        seeded = missing_default_theme(themes)
        return [seeded] + themes if seeded else themes

    # ------------------------------------------------------------------
    # Themes
    # ------------------------------------------------------------------

    async def get_all_themes(self) -> list[Theme]:
        return self._theme_view()

    async def get_theme(self, theme_id: str) -> Optional[Theme]:
        return next((t for t in self._theme_view() if t.id == theme_id), None)

    async def insert_theme(self, theme: Theme) -> None:
        themes = self._themes(strict=True)
        _reject_duplicate_name(themes, theme)
        themes.append(theme)
        self._persist(self._themes_path, "themes", themes)

    async def upsert_theme(self, theme: Theme) -> None:
        themes = self._themes(strict=True)
        for i, existing in enumerate(themes):
            if existing.id == theme.id:
                themes[i] = theme
                break
        else:
            themes.append(theme)
        self._persist(self._themes_path, "themes", themes)

    async def update_theme(self, theme: Theme) -> bool:
        themes = self._themes(strict=True)
        _reject_duplicate_name(themes, theme)
        for i, existing in enumerate(themes):
            if existing.id == theme.id:
                themes[i] = theme
                self._persist(self._themes_path, "themes", themes)
                return True
        return False

    async def delete_theme(self, theme_id: str, reassign_to: str) -> int:
        # notes.json is rewritten first; a crash before themes.json is written
        # leaves the theme in place with no notes, which is still consistent.
        notes = self._notes(strict=True)
        moved = 0
        now = utc_now()
        for i, note in enumerate(notes):
            if note.theme == theme_id:
                notes[i] = note.model_copy(
                    update={"theme": reassign_to, "updated_at": now}
                )
                moved += 1
        if moved:
            self._persist(self._notes_path, "notes", notes)

        themes = self._themes(strict=True)
        remaining = _Loaded([t for t in themes if t.id != theme_id], themes.rejected)
        self._persist(self._themes_path, "themes", remaining)
        return moved

    async def count_themes(self) -> int:
        return len(self._theme_view())

    async def count_notes_by_theme(self) -> dict[str, int]:
        counts = {t.id: 0 for t in self._theme_view()}
        for note in self._notes():
            counts[note.theme] = counts.get(note.theme, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def get_all_notes(
        self, theme: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Note]:
        notes = list(self._notes())
        if theme:
            notes = [n for n in notes if n.theme == theme]
        notes.sort(key=lambda n: n.created_at, reverse=True)
        if limit:
            notes = notes[:limit]
        return notes

    async def get_note(self, note_id: str) -> Optional[Note]:
        return next((n for n in self._notes() if n.id == note_id), None)

    async def insert_note(self, note: Note) -> None:
        notes = self._notes(strict=True)
        notes.append(note)
        self._persist(self._notes_path, "notes", notes)
        logger.info("Saved note %s to %s", note.id, self._notes_path.name)

    async def update_note(self, note: Note) -> bool:
        notes = self._notes(strict=True)
        for i, existing in enumerate(notes):
            if existing.id == note.id:
                notes[i] = note
                self._persist(self._notes_path, "notes", notes)
                return True
        return False

    async def delete_note(self, note_id: str) -> bool:
        notes = self._notes(strict=True)
        remaining = _Loaded([n for n in notes if n.id != note_id], notes.rejected)
        if len(remaining) == len(notes):
            return False
        self._persist(self._notes_path, "notes", remaining)
        return True

    # ------------------------------------------------------------------
    # AI presets
    # ------------------------------------------------------------------

    async def get_all_presets(self) -> list[AIPreset]:
        return sorted(self._presets(), key=lambda p: p.created_at)

    async def get_preset(self, preset_id: str) -> Optional[AIPreset]:
        return next((p for p in self._presets() if p.id == preset_id), None)

    async def get_default_preset(self) -> Optional[AIPreset]:
        return next((p for p in self._presets() if p.is_default), None)

    async def insert_preset(self, preset: AIPreset) -> None:
        presets = self._presets(strict=True)
        presets.append(preset)
        self._persist(self._presets_path, "presets", presets)

    async def update_preset(self, preset: AIPreset) -> bool:
        presets = self._presets(strict=True)
        for i, existing in enumerate(presets):
            if existing.id == preset.id:
                presets[i] = preset
                self._persist(self._presets_path, "presets", presets)
                return True
        return False

    async def delete_preset(self, preset_id: str) -> bool:
        presets = self._presets(strict=True)
        remaining = _Loaded([p for p in presets if p.id != preset_id], presets.rejected)
        if len(remaining) == len(presets):
            return False
        self._persist(self._presets_path, "presets", remaining)
        return True

    async def set_default_preset(self, preset_id: Optional[str]) -> None:
        presets = self._presets(strict=True)
        for i, preset in enumerate(presets):
            presets[i] = preset.model_copy(
                update={"is_default": preset.id == preset_id}
            )
        self._persist(self._presets_path, "presets", presets)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self, recent_limit: int = 5) -> Stats:
        themes = self._theme_view()
        notes = await self.get_all_notes()
        by_theme = {t.id: ThemeCount(name=t.name) for t in themes}
        for note in notes:
            if note.theme in by_theme:
                by_theme[note.theme].count += 1
        return Stats(
            total_notes=len(notes),
            total_themes=len(themes),
            notes_by_theme=by_theme,
            recent_notes=notes[:recent_limit],
        )

    async def backup(self, dest_dir: Path, keep: int = 10) -> list[Path]:
        stamp = backup_stamp()
        written: list[Path] = []
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            for path in (self._notes_path, self._themes_path, self._presets_path):
                if not path.exists():
                    continue
                target = dest_dir / f"{path.stem}-{stamp}{path.suffix}"
                shutil.copy2(path, target)
                written.append(target)
                prune_backups(dest_dir, f"{path.stem}-*{path.suffix}", keep)
        except OSError as exc:
            raise StorageIOError(f"Backup failed: {exc}", str(dest_dir)) from exc
        logger.info("Backed up %d data files to %s", len(written), dest_dir)
        return written
