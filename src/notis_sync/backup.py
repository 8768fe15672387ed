"""Backup utilities for the Notis sync engine.

Provides backups of:
- the legacy object graph (JSON export, taken before migration)
- the index database (SQLite online backup)
- the markdown notes tree (tar archive)
"""
import gzip
import json
import logging
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from notis_sync.config import config
from notis_sync.legacy.base import LegacyStore, sheet_to_dict

logger = logging.getLogger(__name__)

# Backup retention settings
DEFAULT_MAX_AGE_DAYS = 30  # Delete backups older than N days

LEGACY_PREFIX = "legacy_backup_"
INDEX_PREFIX = "notes_index_"
NOTES_PREFIX = "notes_"

_BACKUP_PATTERNS = {
    "legacy": f"{LEGACY_PREFIX}*.json",
    "index": f"{INDEX_PREFIX}*.db*",
    "notes": f"{NOTES_PREFIX}*.tar*",
}


class BackupManager:
    """Manages legacy, index and notes backups with rotation.

    Features:
    - JSON export of every legacy sheet, readable by JsonLegacyStore
    - SQLite online backup (safe during writes)
    - Gzip compression for space efficiency
    - Automatic rotation by count and age
    """

    def __init__(
        self,
        backup_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ):
        """Initialize the backup manager.

        Args:
            backup_dir: Directory for backups. Defaults to the configured one.
            max_backups: Maximum number of backups to keep per kind
            max_age_days: Delete backups older than this many days
        """
        self.backup_dir = Path(backup_dir) if backup_dir else config.get_backup_dir()
        self.max_backups = max_backups if max_backups is not None else config.max_backups
        self.max_age_days = max_age_days
        self._lock = Lock()

    def backup_legacy_store(
        self,
        store: LegacyStore,
        label: Optional[str] = None,
    ) -> Optional[Path]:
        """Export every sheet, trashed ones included, to a JSON file.

        Returns:
            Path to the backup file, or None if the backup failed.
        """
        with self._lock:
            try:
                sheets = store.fetch_sheets(include_trashed=True)
                payload = [sheet_to_dict(sheet) for sheet in sheets]
                backup_path = self._new_backup_path(LEGACY_PREFIX, label, ".json")
                tmp_path = backup_path.with_name(f".{backup_path.name}.tmp")
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                tmp_path.replace(backup_path)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Legacy store backup failed: {e}", exc_info=True)
                return None

            logger.info(f"Legacy backup created: {backup_path} ({len(payload)} sheets)")
            self._rotate_backups()
            return backup_path

    def backup_database(
        self,
        db_path: Optional[Path] = None,
        compress: bool = True,
        label: Optional[str] = None,
    ) -> Optional[Path]:
        """Create a backup of the index database.

        Uses SQLite's online backup API for a consistent snapshot, even if
        the database is being written to.

        Returns:
            Path to the backup file, or None if backup failed.
        """
        with self._lock:
            source = db_path or config.get_db_path()
            if source is None:
                logger.warning("Index database is in memory; nothing to back up")
                return None
            if not source.exists():
                logger.warning(f"Database not found: {source}")
                return None

            try:
                ext = ".db.gz" if compress else ".db"
                backup_path = self._new_backup_path(INDEX_PREFIX, label, ext)
                if compress:
                    temp_path = backup_path.with_suffix("")
                    self._sqlite_backup(source, temp_path)
                    self._gzip_file(temp_path, backup_path)
                    temp_path.unlink()
                else:
                    self._sqlite_backup(source, backup_path)
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Database backup failed: {e}", exc_info=True)
                return None

            size_mb = backup_path.stat().st_size / (1024 * 1024)
            logger.info(f"Database backup created: {backup_path} ({size_mb:.2f} MB)")
            self._rotate_backups()
            return backup_path

    def backup_notes(
        self,
        notes_dir: Optional[Path] = None,
        compress: bool = True,
        label: Optional[str] = None,
    ) -> Optional[Path]:
        """Archive the markdown notes tree.

        Returns:
            Path to the backup archive, or None if backup failed.
        """
        with self._lock:
            notes_dir = notes_dir or config.get_notes_dir()
            if not notes_dir.exists():
                logger.warning(f"Notes directory not found: {notes_dir}")
                return None

            try:
                ext = ".tar.gz" if compress else ".tar"
                backup_path = self._new_backup_path(NOTES_PREFIX, label, ext)
                archive_base = str(backup_path)[: -len(ext)]
                shutil.make_archive(
                    archive_base,
                    "gztar" if compress else "tar",
                    root_dir=notes_dir.parent,
                    base_dir=notes_dir.name,
                )
            except OSError as e:
                logger.error(f"Notes backup failed: {e}", exc_info=True)
                return None

            size_mb = backup_path.stat().st_size / (1024 * 1024)
            logger.info(f"Notes backup created: {backup_path} ({size_mb:.2f} MB)")
            self._rotate_backups()
            return backup_path

    def create_full_backup(
        self,
        notes_dir: Optional[Path] = None,
        db_path: Optional[Path] = None,
        legacy: Optional[LegacyStore] = None,
        label: Optional[str] = None,
    ) -> Dict[str, Optional[Path]]:
        """Back up notes and index, plus the legacy store when given."""
        result = {
            "index": self.backup_database(db_path, compress=True, label=label),
            "notes": self.backup_notes(notes_dir, compress=True, label=label),
        }
        if legacy is not None:
            result["legacy"] = self.backup_legacy_store(legacy, label=label)
        return result

    def list_backups(self) -> List[Dict[str, Any]]:
        """List all available backups, newest first."""
        backups = []
        if not self.backup_dir.exists():
            return backups

        for kind, pattern in _BACKUP_PATTERNS.items():
            for path in self.backup_dir.glob(pattern):
                stat = path.stat()
                backups.append({
                    "path": str(path),
                    "name": path.name,
                    "type": kind,
                    "size_bytes": stat.st_size,
                    "created_at": datetime.fromtimestamp(
                        stat.st_mtime, tz=timezone.utc
                    ).isoformat(),
                })

        backups.sort(key=lambda b: (b["created_at"], b["name"]), reverse=True)
        return backups

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _new_backup_path(self, prefix: str, label: Optional[str], ext: str) -> Path:
        """Timestamped name, with a counter if two backups share a second."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        label_part = f"_{label}" if label else ""
        candidate = self.backup_dir / f"{prefix}{timestamp}{label_part}{ext}"
        counter = 1
        while candidate.exists():
            candidate = self.backup_dir / f"{prefix}{timestamp}{label_part}_{counter}{ext}"
            counter += 1
        return candidate

    def _sqlite_backup(self, source: Path, dest: Path) -> None:
        """Perform SQLite online backup."""
        source_conn = sqlite3.connect(str(source))
        dest_conn = sqlite3.connect(str(dest))
        try:
            source_conn.backup(dest_conn)
        finally:
            dest_conn.close()
            source_conn.close()

    def _gzip_file(self, source: Path, dest: Path) -> None:
        """Compress a file with gzip."""
        with open(source, "rb") as f_in:
            with gzip.open(dest, "wb", compresslevel=6) as f_out:
                shutil.copyfileobj(f_in, f_out)

    def _rotate_backups(self) -> int:
        """Remove old backups based on count and age limits.

        Returns:
            Number of backups removed.
        """
        removed = 0
        now = datetime.now(timezone.utc)
        max_age_seconds = self.max_age_days * 24 * 60 * 60

        for pattern in _BACKUP_PATTERNS.values():
            backups = sorted(
                self.backup_dir.glob(pattern),
                key=lambda p: (p.stat().st_mtime, p.name),
                reverse=True,
            )
            # Remove by count (keep newest N)
            for backup in backups[self.max_backups:]:
                try:
                    backup.unlink()
                    removed += 1
                    logger.debug(f"Removed old backup (count limit): {backup}")
                except OSError as e:
                    logger.warning(f"Could not remove old backup {backup.name}: {e}")

            # Remove by age
            for backup in backups[:self.max_backups]:
                try:
                    age = now.timestamp() - backup.stat().st_mtime
                    if age > max_age_seconds:
                        backup.unlink()
                        removed += 1
                        logger.debug(f"Removed old backup (age limit): {backup}")
                except OSError as e:
                    logger.warning(f"Could not remove old backup {backup.name}: {e}")

        if removed > 0:
            logger.info(f"Rotated {removed} old backup(s)")

        return removed
