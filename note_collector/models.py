"""Pydantic models shared by both persistence backends and the HTTP layer.

Records serialize with camelCase keys (``createdAt``, ``noteCount``) and
accept the snake_case spellings found in older data files and SQLite rows.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_THEME_ID = "default"
DEFAULT_THEME_NAME = "Default"
DEFAULT_THEME_DESCRIPTION = "Default theme"
DEFAULT_THEME_COLOR = "#007bff"


def utc_now() -> str:
    """Current time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid4())


def decode_tags(raw: Any) -> list[str]:
    """Normalize a stored tag value into a list of strings.

    Accepts a real list, a JSON-encoded array string, or the legacy
    comma-separated form (``"a, b,c"``). A JSON scalar such as ``"true"``
    stays one tag with its stored text. Anything else decodes to ``[]``.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return [tag.strip() for tag in text.split(",") if tag.strip()]
        if isinstance(parsed, str):
            return [parsed] if parsed.strip() else []
        if not isinstance(parsed, list):
            return [text]
        raw = parsed
    if isinstance(raw, (list, tuple)):
        return [str(tag) for tag in raw if tag is not None and str(tag).strip()]
    return []


def encode_tags(tags: list[str]) -> str:
    """Serialize tags for a TEXT column."""
    return json.dumps(list(tags), ensure_ascii=False)


def decode_source(raw: Any) -> Optional[dict[str, Any]]:
    """Provenance is opaque; only JSON strings are unpacked."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": raw}
        return parsed if isinstance(parsed, dict) else {"type": raw}
    return None


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Themes
# ---------------------------------------------------------------------------


class Theme(_Record):
    """A category notes belong to."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    color: str = DEFAULT_THEME_COLOR
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @field_validator("description", mode="before")
    @classmethod
    def _description_or_empty(cls, value: Any) -> Any:
        return value or ""

    @field_validator("color", mode="before")
    @classmethod
    def _color_or_default(cls, value: Any) -> Any:
        return value or DEFAULT_THEME_COLOR


class ThemeSummary(Theme):
    """A theme plus its derived note count. Never persisted."""

    note_count: int = 0


def default_theme() -> Theme:
    """The reserved theme every store must contain."""
    return Theme(
        id=DEFAULT_THEME_ID,
        name=DEFAULT_THEME_NAME,
        description=DEFAULT_THEME_DESCRIPTION,
        color=DEFAULT_THEME_COLOR,
    )


def missing_default_theme(themes: list[Theme]) -> Optional[Theme]:
    """The default theme to add when ``themes`` lacks one, else None.

    Theme names are unique, so the seed is renamed when another theme
    already uses "Default".
    """
    if any(t.id == DEFAULT_THEME_ID for t in themes):
        return None
    seeded = default_theme()
    if any(t.name == seeded.name for t in themes):
        seeded.name = f"{seeded.name} ({DEFAULT_THEME_ID})"
    return seeded


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


class Note(_Record):
    """A single note with metadata."""

    id: str = Field(default_factory=new_id)
    title: str
    content: str
    theme: str = Field(
        default=DEFAULT_THEME_ID,
        validation_alias=AliasChoices("theme", "theme_id", "themeId"),
    )
    tags: list[str] = Field(default_factory=list)
    source: Optional[dict[str, Any]] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @field_validator("theme", mode="before")
    @classmethod
    def _theme_or_default(cls, value: Any) -> Any:
        return value or DEFAULT_THEME_ID

    @field_validator("tags", mode="before")
    @classmethod
    def _canonical_tags(cls, value: Any) -> list[str]:
        return decode_tags(value)

    @field_validator("source", mode="before")
    @classmethod
    def _opaque_source(cls, value: Any) -> Optional[dict[str, Any]]:
        return decode_source(value)


class NotePage(_Record):
    """One page of a filtered note listing."""

    notes: list[Note] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0


# ---------------------------------------------------------------------------
# AI presets
# ---------------------------------------------------------------------------


class AIPreset(_Record):
    """A saved prompt template; at most one is the default."""

    id: str = Field(default_factory=new_id)
    name: str
    prompt: str
    is_default: bool = False
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class ThemeCount(_Record):
    name: str
    count: int = 0


class Stats(_Record):
    """Totals across the store plus the most recent notes."""

    total_notes: int = 0
    total_themes: int = 0
    notes_by_theme: dict[str, ThemeCount] = Field(default_factory=dict)
    recent_notes: list[Note] = Field(default_factory=list)


class ThemeStats(_Record):
    total: int = 0
    with_notes: int = 0
    most_used: list[ThemeSummary] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# JSON documents (one per data file)
# ---------------------------------------------------------------------------


class NotesDocument(_Record):
    """Container for all notes, used for JSON serialization."""

    notes: list[Note] = Field(default_factory=list)


class ThemesDocument(_Record):
    themes: list[Theme] = Field(default_factory=list)


class PresetsDocument(_Record):
    presets: list[AIPreset] = Field(default_factory=list)
