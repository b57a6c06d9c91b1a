"""Storage interface implemented by the SQLite and JSON-file backends.

Backends persist whole records. Partial updates, name uniqueness, default
theme protection and pagination live in the facade so both backends share
them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from note_collector.models import AIPreset, Note, Stats, Theme


class PersistenceBackend(ABC):
    """One physical store for themes, notes and AI presets."""

    name: str = "abstract"

    @property
    def degraded(self) -> bool:
        """Whether the backend runs from a fallback location."""
        return False

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare storage. Safe to call more than once."""

    async def close(self) -> None:
        """Release any open resources."""

    # ------------------------------------------------------------------
    # Themes
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_all_themes(self) -> list[Theme]:
        """All themes, oldest first."""

    @abstractmethod
    async def get_theme(self, theme_id: str) -> Optional[Theme]: ...

    @abstractmethod
    async def insert_theme(self, theme: Theme) -> None:
        """Add a new theme.

        Raises ``ValidationError`` when another theme already has the name;
        the check and the write are a single step.
        """

    @abstractmethod
    async def upsert_theme(self, theme: Theme) -> None:
        """Insert, or replace the theme with the same id. Seeding only."""

    @abstractmethod
    async def update_theme(self, theme: Theme) -> bool:
        """Overwrite an existing theme. False when the id is unknown.

        Raises ``ValidationError`` when the new name belongs to another theme.
        """

    @abstractmethod
    async def delete_theme(self, theme_id: str, reassign_to: str) -> int:
        """Move the theme's notes to ``reassign_to``, then delete it.

        Returns the number of notes moved.
        """

    @abstractmethod
    async def count_themes(self) -> int: ...

    @abstractmethod
    async def count_notes_by_theme(self) -> dict[str, int]:
        """Note count per theme id, including themes with zero notes."""

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_all_notes(
        self, theme: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Note]:
        """Notes newest first, optionally restricted to one theme."""

    @abstractmethod
    async def get_note(self, note_id: str) -> Optional[Note]: ...

    @abstractmethod
    async def insert_note(self, note: Note) -> None: ...

    @abstractmethod
    async def update_note(self, note: Note) -> bool:
        """Overwrite an existing note. False when the id is unknown."""

    @abstractmethod
    async def delete_note(self, note_id: str) -> bool: ...

    # ------------------------------------------------------------------
    # AI presets
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_all_presets(self) -> list[AIPreset]: ...

    @abstractmethod
    async def get_preset(self, preset_id: str) -> Optional[AIPreset]: ...

    @abstractmethod
    async def get_default_preset(self) -> Optional[AIPreset]: ...

    @abstractmethod
    async def insert_preset(self, preset: AIPreset) -> None: ...

    @abstractmethod
    async def update_preset(self, preset: AIPreset) -> bool: ...

    @abstractmethod
    async def delete_preset(self, preset_id: str) -> bool: ...

    @abstractmethod
    async def set_default_preset(self, preset_id: Optional[str]) -> None:
        """Make ``preset_id`` the only default, or clear the default when None."""

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_stats(self, recent_limit: int = 5) -> Stats: ...

    @abstractmethod
    async def backup(self, dest_dir: Path, keep: int = 10) -> list[Path]:
        """Write a timestamped copy of the store into ``dest_dir``.

        Only the newest ``keep`` copies of each file are retained.
        """


def backup_stamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")


def prune_backups(dest_dir: Path, pattern: str, keep: int) -> None:
    """Delete all but the newest ``keep`` files matching ``pattern``.

    Backup names embed ``backup_stamp()`` so lexical order is age order.
    """
    backups = sorted(dest_dir.glob(pattern), reverse=True)
    for stale in backups[keep:]:
        stale.unlink(missing_ok=True)
