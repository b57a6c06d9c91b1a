"""Persistence facade: one CRUD surface over whichever backend is available.

The backend is chosen once, on first use. SQLite is tried first (including
the JSON migration); if it raises ``InitializationError`` the JSON files
serve every request for the rest of the process. Theme/note invariants,
search and pagination live here so both backends behave identically.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from pathlib import Path
from typing import Any, Optional, Union

from note_collector.backends.base import PersistenceBackend
from note_collector.backends.json_files import JsonFileBackend
from note_collector.backends.sqlite import SqliteBackend
from note_collector.config import Settings
from note_collector.exceptions import (
    ConstraintError,
    InitializationError,
    NotFoundError,
    StorageIOError,
    ValidationError,
)
from note_collector.metrics import ACTIVE_BACKEND, STORAGE_OPERATIONS
from note_collector.models import (
    DEFAULT_THEME_ID,
    AIPreset,
    Note,
    NotePage,
    Stats,
    Theme,
    ThemeStats,
    ThemeSummary,
    decode_tags,
    utc_now,
)

logger = logging.getLogger(__name__)

ALL_THEMES = "all"


class BackendState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY_RELATIONAL = "ready_relational"
    READY_JSON = "ready_json"


def _require_text(value: Optional[str], field: str) -> str:
    """Trimmed value, or ValidationError when missing/blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


def _parse_tag_filter(tags: Union[str, list[str], None]) -> list[str]:
    if not tags:
        return []
    items = tags.split(",") if isinstance(tags, str) else tags
    return [t.strip().lower() for t in items if t and t.strip()]


def _matches_search(note: Note, term: str) -> bool:
    return (
        term in note.title.lower()
        or term in note.content.lower()
        or any(term in tag.lower() for tag in note.tags)
    )


def _matches_tags(note: Note, wanted: list[str]) -> bool:
    """Any filter tag contained in any of the note's tags."""
    return any(w in tag.lower() for w in wanted for tag in note.tags)


class NoteCollector:
    """Facade over the relational and JSON-file backends."""

    def __init__(
        self,
        settings: Settings,
        relational: Optional[PersistenceBackend] = None,
        fallback: Optional[PersistenceBackend] = None,
    ) -> None:
        self.settings = settings
        self._relational = relational or SqliteBackend(
            settings.data_dir,
            fallback_dir=settings.fallback_data_dir,
            db_filename=settings.database_filename,
            json_dir=settings.data_dir,
        )
        self._fallback = fallback or JsonFileBackend(settings.data_dir)
        self._backend: Optional[PersistenceBackend] = None
        self._state = BackendState.UNINITIALIZED
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def backend_name(self) -> Optional[str]:
        """Name of the selected backend, or None before initialization."""
        return self._backend.name if self._backend else None

    @property
    def degraded(self) -> bool:
        return self._backend.degraded if self._backend else False

    async def initialize(self) -> None:
        """Select the backend. Concurrent callers share one attempt."""
        if self._backend is not None:
            return
        async with self._init_lock:
            if self._backend is not None:
                return
            self._state = BackendState.INITIALIZING
            try:
                await self._relational.initialize()
            except Exception as e:
                logger.warning(
                    "Database initialization failed, falling back to JSON files: %s", e
                )
                try:
                    await self._fallback.initialize()
                except StorageIOError as io_err:
                    logger.error("JSON data directory unavailable: %s", io_err)
                self._select(self._fallback, BackendState.READY_JSON)
            else:
                self._select(self._relational, BackendState.READY_RELATIONAL)

    def _select(self, backend: PersistenceBackend, state: BackendState) -> None:
        self._backend = backend
        self._state = state
        for candidate in (self._relational, self._fallback):
            active = 1 if candidate is backend else 0
            ACTIVE_BACKEND.labels(backend=candidate.name).set(active)
        logger.info("Using %s backend for notes and themes", backend.name)

    async def _active(self) -> PersistenceBackend:
        await self.initialize()
        if self._backend is None:
            raise InitializationError("No storage backend selected")
        return self._backend

    def _record(self, operation: str, status: str) -> None:
        STORAGE_OPERATIONS.labels(
            backend=self.backend_name or "none", operation=operation, status=status
        ).inc()

    async def close(self) -> None:
        await self._relational.close()
        await self._fallback.close()

    # ------------------------------------------------------------------
    # Themes
    # ------------------------------------------------------------------

    async def list_themes(self) -> list[ThemeSummary]:
        """All themes with their note counts.

        Notes that reference a missing theme are counted toward the default.
        """
        try:
            backend = await self._active()
            themes = await backend.get_all_themes()
            counts = await backend.count_notes_by_theme()
        except Exception as e:
            logger.error("Failed to get all themes: %s", e)
            self._record("list_themes", "error")
            return []

        known = {t.id for t in themes}
        orphaned = sum(n for theme_id, n in counts.items() if theme_id not in known)
        summaries = []
        for theme in themes:
            count = counts.get(theme.id, 0)
            if theme.id == DEFAULT_THEME_ID:
                count += orphaned
            summaries.append(ThemeSummary(**theme.model_dump(), note_count=count))
        self._record("list_themes", "success")
        return summaries

    async def get_theme(self, theme_id: str) -> Optional[ThemeSummary]:
        """Theme with note count, or None when it does not exist."""
        for theme in await self.list_themes():
            if theme.id == theme_id:
                return theme
        return None

    async def _ensure_unique_name(
        self, backend: PersistenceBackend, name: str, exclude_id: Optional[str] = None
    ) -> None:
        for theme in await backend.get_all_themes():
            if theme.name == name and theme.id != exclude_id:
                raise ValidationError(
                    f"Theme name '{name}' already exists", field="name"
                )

    async def create_theme(
        self,
        name: Optional[str],
        description: Optional[str] = "",
        color: Optional[str] = None,
    ) -> ThemeSummary:
        """Create a theme with a fresh id. Names must be unique."""
        name = _require_text(name, "name")
        backend = await self._active()
        try:
            await self._ensure_unique_name(backend, name)
            theme = Theme(
                name=name,
                description=description or "",
                color=color or self.settings.default_theme_color,
            )
            await backend.insert_theme(theme)
        except Exception:
            self._record("create_theme", "error")
            raise
        self._record("create_theme", "success")
        logger.info("Created theme %s (%s)", theme.id, theme.name)
        return ThemeSummary(**theme.model_dump(), note_count=0)

    async def update_theme(
        self,
        theme_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> ThemeSummary:
        """Change only the supplied fields; ``updatedAt`` always moves."""
        backend = await self._active()
        try:
            theme = await backend.get_theme(theme_id)
            if theme is None:
                raise NotFoundError("theme", theme_id)
            changes: dict[str, Any] = {"updated_at": utc_now()}
            if name is not None:
                changes["name"] = _require_text(name, "name")
                await self._ensure_unique_name(
                    backend, changes["name"], exclude_id=theme_id
                )
            if description is not None:
                changes["description"] = description
            if color is not None:
                changes["color"] = color or self.settings.default_theme_color
            updated = theme.model_copy(update=changes)
            if not await backend.update_theme(updated):
                raise NotFoundError("theme", theme_id)
        except Exception:
            self._record("update_theme", "error")
            raise
        self._record("update_theme", "success")
        return await self.get_theme(theme_id) or ThemeSummary(**updated.model_dump())

    async def delete_theme(self, theme_id: str) -> int:
        """Delete a theme and move its notes to the default theme.

        Returns the number of notes moved. The default theme itself cannot
        be deleted.
        """
        if theme_id == DEFAULT_THEME_ID:
            raise ConstraintError(
                "The default theme cannot be deleted", details={"id": theme_id}
            )
        backend = await self._active()
        try:
            if await backend.get_theme(theme_id) is None:
                raise NotFoundError("theme", theme_id)
            moved = await backend.delete_theme(theme_id, reassign_to=DEFAULT_THEME_ID)
        except Exception:
            self._record("delete_theme", "error")
            raise
        self._record("delete_theme", "success")
        logger.info("Deleted theme %s, moved %d notes to default", theme_id, moved)
        return moved

    async def get_theme_stats(self) -> ThemeStats:
        themes = await self.list_themes()
        used = sorted(
            (t for t in themes if t.note_count > 0),
            key=lambda t: t.note_count,
            reverse=True,
        )
        return ThemeStats(total=len(themes), with_notes=len(used), most_used=used[:5])

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def _theme_ids(self, backend: PersistenceBackend) -> set[str]:
        return {t.id for t in await backend.get_all_themes()}

    @staticmethod
    def _heal(note: Note, theme_ids: set[str]) -> Note:
        """Show notes on a missing theme under the default theme."""
        if note.theme in theme_ids:
            return note
        return note.model_copy(update={"theme": DEFAULT_THEME_ID})

    async def _all_notes(self) -> list[Note]:
        backend = await self._active()
        theme_ids = await self._theme_ids(backend)
        return [self._heal(n, theme_ids) for n in await backend.get_all_notes()]

    async def list_notes(
        self,
        theme: Optional[str] = None,
        search: Optional[str] = None,
        tags: Union[str, list[str], None] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> NotePage:
        """Filter, sort (newest first) and paginate notes."""
        page = max(int(page or 1), 1)
        limit = max(int(limit or self.settings.default_page_size), 1)
        try:
            notes = await self._all_notes()
        except Exception as e:
            logger.error("Failed to get notes: %s", e)
            self._record("list_notes", "error")
            return NotePage(page=page, limit=limit)

        if theme and theme != ALL_THEMES:
            notes = [n for n in notes if n.theme == theme]
        if search:
            term = search.lower()
            notes = [n for n in notes if _matches_search(n, term)]
        wanted = _parse_tag_filter(tags)
        if wanted:
            notes = [n for n in notes if _matches_tags(n, wanted)]

        notes.sort(key=lambda n: n.created_at, reverse=True)
        offset = (page - 1) * limit
        self._record("list_notes", "success")
        return NotePage(
            notes=notes[offset : offset + limit],
            total=len(notes),
            page=page,
            limit=limit,
            total_pages=math.ceil(len(notes) / limit),
        )

    async def search_notes(self, query: Optional[str]) -> list[Note]:
        """Unpaginated substring search over title, content and tags."""
        try:
            notes = await self._all_notes()
        except Exception as e:
            logger.error("Failed to search notes: %s", e)
            return []
        if not query:
            return notes
        term = query.lower()
        return [n for n in notes if _matches_search(n, term)]

    async def get_note(self, note_id: str) -> Optional[Note]:
        try:
            backend = await self._active()
            note = await backend.get_note(note_id)
            if note is None:
                return None
            return self._heal(note, await self._theme_ids(backend))
        except Exception as e:
            logger.error("Failed to get note %s: %s", note_id, e)
            return None

    async def create_note(
        self,
        title: Optional[str],
        content: Optional[str],
        theme: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: Optional[dict[str, Any]] = None,
    ) -> Note:
        """Create a note. Unknown or missing themes resolve to the default."""
        title = _require_text(title, "title")
        content = _require_text(content, "content")
        backend = await self._active()
        try:
            theme_ids = await self._theme_ids(backend)
            note = Note(
                title=title,
                content=content,
                theme=theme if theme in theme_ids else DEFAULT_THEME_ID,
                tags=tags or [],
                source=source,
            )
            await backend.insert_note(note)
        except Exception:
            self._record("create_note", "error")
            raise
        self._record("create_note", "success")
        return note

    async def update_note(
        self,
        note_id: str,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
        theme: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: Optional[dict[str, Any]] = None,
    ) -> Note:
        """Change only the supplied fields.

        A stale theme reference is corrected to the default here even when
        the caller does not touch ``theme``.
        """
        backend = await self._active()
        try:
            note = await backend.get_note(note_id)
            if note is None:
                raise NotFoundError("note", note_id)
            changes: dict[str, Any] = {"updated_at": utc_now()}
            if title is not None:
                changes["title"] = _require_text(title, "title")
            if content is not None:
                changes["content"] = _require_text(content, "content")
            if tags is not None:
                changes["tags"] = decode_tags(tags)
            if source is not None:
                changes["source"] = source
            theme_ids = await self._theme_ids(backend)
            wanted_theme = theme if theme is not None else note.theme
            if wanted_theme not in theme_ids:
                wanted_theme = DEFAULT_THEME_ID
            changes["theme"] = wanted_theme
            updated = note.model_copy(update=changes)
            if not await backend.update_note(updated):
                raise NotFoundError("note", note_id)
        except Exception:
            self._record("update_note", "error")
            raise
        self._record("update_note", "success")
        return updated

    async def delete_note(self, note_id: str) -> Note:
        """Delete a note and return it."""
        backend = await self._active()
        try:
            note = await backend.get_note(note_id)
            if note is None or not await backend.delete_note(note_id):
                raise NotFoundError("note", note_id)
        except Exception:
            self._record("delete_note", "error")
            raise
        self._record("delete_note", "success")
        logger.info("Deleted note %s", note_id)
        return note

    # ------------------------------------------------------------------
    # AI presets
    # ------------------------------------------------------------------

    async def list_presets(self) -> list[AIPreset]:
        try:
            return await (await self._active()).get_all_presets()
        except Exception as e:
            logger.error("Failed to get AI presets: %s", e)
            return []

    async def get_preset(self, preset_id: str) -> Optional[AIPreset]:
        try:
            return await (await self._active()).get_preset(preset_id)
        except Exception as e:
            logger.error("Failed to get AI preset %s: %s", preset_id, e)
            return None

    async def get_default_preset(self) -> Optional[AIPreset]:
        try:
            return await (await self._active()).get_default_preset()
        except Exception as e:
            logger.error("Failed to get default AI preset: %s", e)
            return None

    async def create_preset(
        self, name: Optional[str], prompt: Optional[str], is_default: bool = False
    ) -> AIPreset:
        preset = AIPreset(
            name=_require_text(name, "name"),
            prompt=_require_text(prompt, "prompt"),
            is_default=bool(is_default),
        )
        backend = await self._active()
        await backend.insert_preset(preset)
        if preset.is_default:
            await backend.set_default_preset(preset.id)
        self._record("create_preset", "success")
        return preset

    async def update_preset(
        self,
        preset_id: str,
        *,
        name: Optional[str] = None,
        prompt: Optional[str] = None,
        is_default: Optional[bool] = None,
    ) -> AIPreset:
        backend = await self._active()
        preset = await backend.get_preset(preset_id)
        if preset is None:
            raise NotFoundError("preset", preset_id)
        changes: dict[str, Any] = {"updated_at": utc_now()}
        if name is not None:
            changes["name"] = _require_text(name, "name")
        if prompt is not None:
            changes["prompt"] = _require_text(prompt, "prompt")
        if is_default is not None:
            changes["is_default"] = bool(is_default)
        updated = preset.model_copy(update=changes)
        if not await backend.update_preset(updated):
            raise NotFoundError("preset", preset_id)
        if is_default:
            await backend.set_default_preset(preset_id)
        self._record("update_preset", "success")
        return updated

    async def delete_preset(self, preset_id: str) -> None:
        if not await (await self._active()).delete_preset(preset_id):
            raise NotFoundError("preset", preset_id)
        self._record("delete_preset", "success")

    async def set_default_preset(self, preset_id: Optional[str]) -> None:
        """Make one preset the default, or clear the default with None."""
        backend = await self._active()
        if preset_id is not None and await backend.get_preset(preset_id) is None:
            raise NotFoundError("preset", preset_id)
        await backend.set_default_preset(preset_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self) -> Stats:
        """Totals plus recent notes, stale themes shown as the default."""
        try:
            backend = await self._active()
            stats = await backend.get_stats(self.settings.recent_notes_limit)
            theme_ids = await self._theme_ids(backend)
        except Exception as e:
            logger.error("Failed to get notes stats: %s", e)
            return Stats()
        stats.recent_notes = [self._heal(n, theme_ids) for n in stats.recent_notes]
        return stats

    async def backup(self, dest_dir: Optional[Path] = None) -> list[Path]:
        """Snapshot the active store into the backup directory."""
        backend = await self._active()
        return await backend.backup(
            dest_dir or self.settings.backup_dir, keep=self.settings.backup_retention
        )
