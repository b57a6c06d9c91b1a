"""SQLite storage for themes, notes and AI presets.

Uses SQLAlchemy async engine with the aiosqlite driver. Unlike the JSON
backend, a failure during ``initialize()`` is fatal for this backend: it
raises ``InitializationError`` and the facade switches to JSON files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from note_collector.backends.base import PersistenceBackend, backup_stamp, prune_backups
from note_collector.exceptions import InitializationError, ValidationError
from note_collector.migration import migrate_from_json
from note_collector.models import (
    AIPreset,
    Note,
    Stats,
    Theme,
    ThemeCount,
    encode_tags,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_FILENAME = "notes.db"

_CREATE_TABLE_STMTS = [
    """CREATE TABLE IF NOT EXISTS themes (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        color TEXT DEFAULT '#007bff',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        theme_id TEXT,
        tags TEXT,
        source TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS ai_presets (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        prompt TEXT NOT NULL,
        is_default INTEGER DEFAULT 0,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )""",
    "CREATE INDEX IF NOT EXISTS idx_notes_theme ON notes(theme_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_themes_name ON themes(name)",
]

_NOTE_COLUMNS = "id, title, content, theme_id, tags, source, created_at, updated_at"


def _note_params(note: Note) -> dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "theme_id": note.theme,
        "tags": encode_tags(note.tags),
        "source": (
            json.dumps(note.source, ensure_ascii=False)
            if note.source is not None
            else None
        ),
        "created_at": note.created_at,
        "updated_at": note.updated_at,
    }


def _duplicate_name(theme: Theme) -> ValidationError:
    return ValidationError(f"Theme name '{theme.name}' already exists", field="name")


def _theme_params(theme: Theme) -> dict[str, Any]:
    return theme.model_dump(
        include={"id", "name", "description", "color", "created_at", "updated_at"}
    )


def _preset_params(preset: AIPreset) -> dict[str, Any]:
    params = preset.model_dump(
        include={"id", "name", "prompt", "created_at", "updated_at"}
    )
    params["is_default"] = 1 if preset.is_default else 0
    return params


class SqliteBackend(PersistenceBackend):
    """Async SQLite client for notes, themes and presets."""

    name = "sqlite"

    def __init__(
        self,
        data_dir: Path,
        fallback_dir: Optional[Path] = None,
        db_filename: str = DEFAULT_DB_FILENAME,
        json_dir: Optional[Path] = None,
    ) -> None:
        self._primary_dir = Path(data_dir)
        self._fallback_dir = Path(fallback_dir) if fallback_dir else None
        self._db_filename = db_filename
        self._json_dir = Path(json_dir) if json_dir else self._primary_dir
        self._dir: Optional[Path] = None
        self._engine: Optional[AsyncEngine] = None
        self._degraded = False
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def degraded(self) -> bool:
        """True when running from the temporary fallback directory."""
        return self._degraded

    @property
    def data_dir(self) -> Optional[Path]:
        """Directory actually in use, once initialized."""
        return self._dir

    @property
    def db_path(self) -> Optional[Path]:
        return self._dir / self._db_filename if self._dir else None

    async def initialize(self) -> None:
        """Prepare the data directory, open the database, create tables, migrate.

        ``initialized`` only becomes true once every step, migration
        included, has succeeded. Raises ``InitializationError`` otherwise.
        """
        if self._initialized:
            return

        try:
            self._dir = self._prepare_directory()
            if self._engine is None:
                self._engine = create_async_engine(
                    f"sqlite+aiosqlite:///{self.db_path}"
                )
            async with self._engine.begin() as conn:
                for stmt in _CREATE_TABLE_STMTS:
                    await conn.execute(text(stmt))
                await self._ensure_source_column(conn)
            await migrate_from_json(self, self._json_dir)
        except InitializationError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise InitializationError(f"SQLite initialization failed: {e}") from e

        self._initialized = True
        logger.info("SQLite database ready at %s", self.db_path)

    def _prepare_directory(self) -> Path:
        """Return the first candidate directory that can be created and written."""
        candidates = [self._primary_dir]
        if self._fallback_dir is not None:
            candidates.append(self._fallback_dir)

        for candidate in candidates:
            try:
                candidate.mkdir(parents=True, exist_ok=True)
                (candidate / "images").mkdir(exist_ok=True)
                marker = candidate / "test.tmp"
                marker.write_text("test", encoding="utf-8")
                marker.unlink()
            except OSError as e:
                logger.error("Data directory %s is not usable: %s", candidate, e)
                continue
            if candidate != self._primary_dir:
                self._degraded = True
                logger.warning("Using temporary data directory %s", candidate)
            return candidate

        raise InitializationError(
            "Data directory permission denied",
            details={"tried": [str(c) for c in candidates]},
        )

    @staticmethod
    async def _ensure_source_column(conn) -> None:
        """Databases created before ``source`` was stored lack the column."""
        result = await conn.execute(text("PRAGMA table_info(notes)"))
        columns = {row[1] for row in result.fetchall()}
        if "source" not in columns:
            await conn.execute(text("ALTER TABLE notes ADD COLUMN source TEXT"))
            logger.info("Added notes.source column")

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
        self._initialized = False

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise InitializationError("SQLite backend is not initialized")
        return self._engine

    async def _fetch_all(
        self, sql: str, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        async with self._require_engine().connect() as conn:
            result = await conn.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result.fetchall()]

    async def _fetch_one(
        self, sql: str, params: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        rows = await self._fetch_all(sql, params)
        return rows[0] if rows else None

    async def _execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        """Run one write statement in its own transaction; return affected rows."""
        async with self._require_engine().begin() as conn:
            result = await conn.execute(text(sql), params or {})
            return result.rowcount

    # ------------------------------------------------------------------
    # Themes
    # ------------------------------------------------------------------

    async def get_all_themes(self) -> list[Theme]:
        rows = await self._fetch_all("SELECT * FROM themes ORDER BY created_at ASC")
        return [Theme.model_validate(row) for row in rows]

    async def get_theme(self, theme_id: str) -> Optional[Theme]:
        row = await self._fetch_one(
            "SELECT * FROM themes WHERE id = :id", {"id": theme_id}
        )
        return Theme.model_validate(row) if row else None

    async def upsert_theme(self, theme: Theme) -> None:
        await self._execute(
            "INSERT OR REPLACE INTO themes "
            "(id, name, description, color, created_at, updated_at) "
            "VALUES (:id, :name, :description, :color, :created_at, :updated_at)",
            _theme_params(theme),
        )

    async def insert_theme(self, theme: Theme) -> None:
        try:
            await self._execute(
                "INSERT INTO themes "
                "(id, name, description, color, created_at, updated_at) "
                "VALUES (:id, :name, :description, :color, :created_at, :updated_at)",
                _theme_params(theme),
            )
        except IntegrityError as e:
            if "themes.name" not in str(e.orig):
                raise
            raise _duplicate_name(theme) from e

    async def update_theme(self, theme: Theme) -> bool:
        try:
            changes = await self._execute(
                "UPDATE themes "
                "SET name = :name, description = :description, color = :color, "
                "updated_at = :updated_at "
                "WHERE id = :id",
                _theme_params(theme),
            )
        except IntegrityError as e:
            if "themes.name" not in str(e.orig):
                raise
            raise _duplicate_name(theme) from e
        return changes > 0

    async def delete_theme(self, theme_id: str, reassign_to: str) -> int:
        async with self._require_engine().begin() as conn:
            moved = await conn.execute(
                text(
                    "UPDATE notes SET theme_id = :target, updated_at = :now "
                    "WHERE theme_id = :id"
                ),
                {"target": reassign_to, "now": utc_now(), "id": theme_id},
            )
            await conn.execute(
                text("DELETE FROM themes WHERE id = :id"), {"id": theme_id}
            )
            return moved.rowcount

    async def count_themes(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) AS count FROM themes")
        return row["count"] if row else 0

    async def count_notes_by_theme(self) -> dict[str, int]:
        """Counts per theme id; notes pointing at missing themes keep their own key."""
        rows = await self._fetch_all(
            "SELECT t.id AS theme_id, COUNT(n.id) AS note_count "
            "FROM themes t LEFT JOIN notes n ON t.id = n.theme_id "
            "GROUP BY t.id "
            "UNION ALL "
            "SELECT n.theme_id, COUNT(*) "
            "FROM notes n LEFT JOIN themes t ON t.id = n.theme_id "
            "WHERE t.id IS NULL "
            "GROUP BY n.theme_id"
        )
        return {row["theme_id"]: row["note_count"] for row in rows}

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def get_all_notes(
        self, theme: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Note]:
        sql = f"SELECT {_NOTE_COLUMNS} FROM notes"
        params: dict[str, Any] = {}
        if theme:
            sql += " WHERE theme_id = :theme"
            params["theme"] = theme
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT :limit"
            params["limit"] = limit
        rows = await self._fetch_all(sql, params)
        return [Note.model_validate(row) for row in rows]

    async def get_note(self, note_id: str) -> Optional[Note]:
        row = await self._fetch_one(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = :id", {"id": note_id}
        )
        return Note.model_validate(row) if row else None

    async def insert_note(self, note: Note) -> None:
        await self._execute(
            f"INSERT INTO notes ({_NOTE_COLUMNS}) "
            "VALUES (:id, :title, :content, :theme_id, :tags, :source, "
            ":created_at, :updated_at)",
            _note_params(note),
        )
        logger.info("Saved note %s", note.id)

    async def update_note(self, note: Note) -> bool:
        changes = await self._execute(
            "UPDATE notes "
            "SET title = :title, content = :content, theme_id = :theme_id, "
            "tags = :tags, source = :source, updated_at = :updated_at "
            "WHERE id = :id",
            _note_params(note),
        )
        return changes > 0

    async def delete_note(self, note_id: str) -> bool:
        changes = await self._execute(
            "DELETE FROM notes WHERE id = :id", {"id": note_id}
        )
        return changes > 0

    # ------------------------------------------------------------------
    # AI presets
    # ------------------------------------------------------------------

    async def get_all_presets(self) -> list[AIPreset]:
        rows = await self._fetch_all("SELECT * FROM ai_presets ORDER BY created_at ASC")
        return [AIPreset.model_validate(row) for row in rows]

    async def get_preset(self, preset_id: str) -> Optional[AIPreset]:
        row = await self._fetch_one(
            "SELECT * FROM ai_presets WHERE id = :id", {"id": preset_id}
        )
        return AIPreset.model_validate(row) if row else None

    async def get_default_preset(self) -> Optional[AIPreset]:
        row = await self._fetch_one(
            "SELECT * FROM ai_presets WHERE is_default = 1 LIMIT 1"
        )
        return AIPreset.model_validate(row) if row else None

    async def insert_preset(self, preset: AIPreset) -> None:
        await self._execute(
            "INSERT INTO ai_presets "
            "(id, name, prompt, is_default, created_at, updated_at) "
            "VALUES (:id, :name, :prompt, :is_default, :created_at, :updated_at)",
            _preset_params(preset),
        )

    async def update_preset(self, preset: AIPreset) -> bool:
        changes = await self._execute(
            "UPDATE ai_presets "
            "SET name = :name, prompt = :prompt, is_default = :is_default, "
            "updated_at = :updated_at "
            "WHERE id = :id",
            _preset_params(preset),
        )
        return changes > 0

    async def delete_preset(self, preset_id: str) -> bool:
        changes = await self._execute(
            "DELETE FROM ai_presets WHERE id = :id", {"id": preset_id}
        )
        return changes > 0

    async def set_default_preset(self, preset_id: Optional[str]) -> None:
        async with self._require_engine().begin() as conn:
            await conn.execute(text("UPDATE ai_presets SET is_default = 0"))
            if preset_id:
                await conn.execute(
                    text("UPDATE ai_presets SET is_default = 1 WHERE id = :id"),
                    {"id": preset_id},
                )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self, recent_limit: int = 5) -> Stats:
        """Totals, per-theme counts (zero-count themes included), recent notes."""
        notes_row = await self._fetch_one("SELECT COUNT(*) AS count FROM notes")
        by_theme = await self._fetch_all(
            "SELECT t.id, t.name, COUNT(n.id) AS note_count "
            "FROM themes t LEFT JOIN notes n ON t.id = n.theme_id "
            "GROUP BY t.id, t.name"
        )
        return Stats(
            total_notes=notes_row["count"] if notes_row else 0,
            total_themes=await self.count_themes(),
            notes_by_theme={
                row["id"]: ThemeCount(name=row["name"], count=row["note_count"])
                for row in by_theme
            },
            recent_notes=await self.get_all_notes(limit=recent_limit),
        )

    async def backup(self, dest_dir: Path, keep: int = 10) -> list[Path]:
        """Snapshot the database with ``VACUUM INTO``."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(self._db_filename).stem
        target = dest_dir / f"{stem}-{backup_stamp()}.db"
        async with self._require_engine().connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.execute(text("VACUUM INTO :path"), {"path": str(target)})
        prune_backups(dest_dir, f"{stem}-*.db", keep)
        logger.info("Backed up database to %s", target)
        return [target]
