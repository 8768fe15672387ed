"""Configuration module for the Notis storage and sync engine."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notis_sync import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the notes
_USER_ENV = Path.home() / ".notis" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

WATCH_MODES = ("auto", "events", "polling")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotisConfig(BaseModel):
    """Configuration for the storage, index and sync services."""

    # Base directory: relative paths below are resolved against it
    base_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTIS_BASE_DIR", str(Path.home() / ".notis"))
        )
    )
    # Markdown notes root
    notes_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTIS_NOTES_DIR", "Notes"))
    )
    # Trash lives next to the notes root so scans never see it
    trash_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTIS_TRASH_DIR", ".Trash"))
    )
    # Index database
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTIS_DATABASE_PATH", "notes_index.db")
        )
    )
    # When True the index lives in memory and is rebuilt by the first full sync
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTIS_IN_MEMORY_DB", "false")
    )
    backup_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTIS_BACKUP_DIR", "Backups"))
    )
    max_backups: int = Field(
        default_factory=lambda: int(os.getenv("NOTIS_MAX_BACKUPS", "10"))
    )
    # Monitoring: "auto" picks native events where watchdog supports them
    watch_mode: str = Field(
        default_factory=lambda: os.getenv("NOTIS_WATCH_MODE", "auto")
    )
    poll_interval: float = Field(
        default_factory=lambda: float(os.getenv("NOTIS_POLL_INTERVAL", "30"))
    )
    debounce_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTIS_DEBOUNCE_SECONDS", "1.0"))
    )
    excerpt_length: int = Field(
        default_factory=lambda: int(os.getenv("NOTIS_EXCERPT_LENGTH", "200"))
    )
    # Keep the losing side of a sync conflict as a hidden sidecar file
    preserve_conflicts: bool = Field(
        default_factory=lambda: _env_flag("NOTIS_PRESERVE_CONFLICTS", "true")
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_monitoring(self) -> "NotisConfig":
        """Normalize the watch mode and reject busy-loop intervals.

        Runs after defaults are filled, so values read from the environment
        are checked too.
        """
        mode = self.watch_mode.strip().lower()
        if mode not in WATCH_MODES:
            raise ValueError(
                f"watch_mode must be one of {', '.join(WATCH_MODES)}, "
                f"got '{self.watch_mode}'"
            )
        self.watch_mode = mode
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.debounce_seconds < 0:
            raise ValueError("debounce_seconds must be >= 0")
        if self.excerpt_length < 1:
            raise ValueError("excerpt_length must be >= 1")
        if self.poll_interval < 5:
            logger.warning(
                "poll_interval=%.1fs is very short; each poll scans the whole "
                "notes tree.",
                self.poll_interval,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_notes_dir(self) -> Path:
        return self.get_absolute_path(self.notes_dir)

    def get_trash_dir(self) -> Path:
        return self.get_absolute_path(self.trash_dir)

    def get_backup_dir(self) -> Path:
        return self.get_absolute_path(self.backup_dir)

    def get_db_path(self) -> Optional[Path]:
        """Absolute index database path, or None for an in-memory index."""
        if self.in_memory_db:
            return None
        return self.get_absolute_path(self.database_path)

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_db_path()
        if db_path is None:
            return "sqlite://"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotisConfig()
