"""One-time import of legacy JSON data into the relational store.

Runs as the last step of ``SqliteBackend.initialize()``. The only guard is
the relational theme count: once any theme exists the import never runs
again, so edits made to the JSON files afterwards are not picked up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from note_collector.backends.base import PersistenceBackend
from note_collector.backends.json_files import JsonFileBackend
from note_collector.metrics import MIGRATED_RECORDS
from note_collector.models import DEFAULT_THEME_ID, missing_default_theme

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """What a migration run did."""

    skipped: bool
    themes: int = 0
    notes: int = 0


async def migrate_from_json(
    target: PersistenceBackend, json_dir: Path
) -> MigrationReport:
    """Copy ``themes.json`` and ``notes.json`` from ``json_dir`` into ``target``.

    Themes keep their original ids, and the source always reads with a
    default theme among them. Each note's theme comes from ``theme`` or
    ``theme_id``; references to themes that were not imported become
    ``"default"``. Whatever goes wrong while importing, the target ends up
    with the default theme; the import error itself is logged and swallowed.
    """
    if await target.count_themes() > 0:
        logger.info("Relational store already has themes, skipping migration")
        return MigrationReport(skipped=True)

    source = JsonFileBackend(json_dir)
    report = MigrationReport(skipped=False)
    try:
        themes = await source.get_all_themes()
        for theme in themes:
            await target.upsert_theme(theme)
        report.themes = len(themes)
        theme_ids = {t.id for t in themes}
        if themes:
            logger.info("Migrated %d themes from %s", len(themes), json_dir)

        notes = await source.get_all_notes()
        for note in notes:
            if note.theme not in theme_ids:
                note = note.model_copy(update={"theme": DEFAULT_THEME_ID})
            await target.insert_note(note)
            report.notes += 1
        if notes:
            logger.info("Migrated %d notes from %s", len(notes), json_dir)
    except Exception as exc:
        logger.error("Data migration failed after %d notes: %s", report.notes, exc)
        seeded = missing_default_theme(await target.get_all_themes())
        if seeded is not None:
            await target.upsert_theme(seeded)
            logger.info("Created fallback default theme")

    MIGRATED_RECORDS.labels(entity="theme").inc(report.themes)
    MIGRATED_RECORDS.labels(entity="note").inc(report.notes)
    return report
