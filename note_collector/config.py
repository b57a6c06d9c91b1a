"""Note collector configuration loaded from environment variables."""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Storage
    data_dir: Path = Path("data")
    fallback_data_dir: Path = Path(tempfile.gettempdir()) / "smart-note-data"
    database_filename: str = "notes.db"

    # Defaults
    default_theme_color: str = "#007bff"
    default_page_size: int = 20
    recent_notes_limit: int = 5
    backup_retention: int = 10

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def backup_dir(self) -> Path:
        """Directory holding timestamped data backups."""
        return self.data_dir / "backups"


settings = Settings()
