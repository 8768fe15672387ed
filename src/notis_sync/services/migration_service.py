"""One-way migration of legacy sheets into markdown files and the index."""
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from notis_sync.backup import BackupManager
from notis_sync.legacy.base import LegacySheet, LegacyStore
from notis_sync.legacy.convert import content_from_sheet, write_sheet
from notis_sync.models.schema import MigrationResult, MigrationStats
from notis_sync.observability import timed_operation, traced
from notis_sync.services.file_sync_service import FileSyncService
from notis_sync.storage.file_store import MarkdownFileStore
from notis_sync.storage.markdown_parser import normalize_body
from notis_sync.storage.notes_index import NotesIndex

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MigrationStats], None]


class SheetOutcome(str, Enum):
    """What happened (or would happen) to one sheet."""
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"


class MigrationService:
    """Copies every non-trashed legacy sheet into the file store.

    Migration is additive: a sheet whose id already has a file is skipped,
    never overwritten, so running it again is safe. The legacy store is
    only read; saving it is up to the caller.
    """

    def __init__(
        self,
        file_store: MarkdownFileStore,
        index: NotesIndex,
        sync_service: Optional[FileSyncService] = None,
        backup_manager: Optional[BackupManager] = None,
    ):
        self.file_store = file_store
        self.index = index
        self.sync_service = sync_service
        self.backup_manager = backup_manager or BackupManager()
        self._lock = threading.Lock()
        self._is_migrating = False

    @property
    def is_migrating(self) -> bool:
        with self._lock:
            return self._is_migrating

    @traced("migration_dry_run")
    def perform_dry_run(self, source: LegacyStore) -> MigrationStats:
        """Classify every sheet as a migration would, without writing anything."""
        sheets = source.fetch_sheets()
        existing = self._existing_uuids()
        skipped = sum(1 for sheet in sheets if sheet.id in existing)
        stats = MigrationStats(
            total_sheets=len(sheets),
            migrated_sheets=len(sheets) - skipped,
            skipped_sheets=skipped,
        )
        logger.info(
            f"Migration preview: {stats.total_sheets} sheets, "
            f"{stats.migrated_sheets} to migrate, {stats.skipped_sheets} to skip"
        )
        return stats

    def perform_migration(
        self,
        source: LegacyStore,
        create_backup: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MigrationResult:
        """Migrate every non-trashed sheet.

        Args:
            source: The legacy store to read from.
            create_backup: Export the whole store before the first write. If
                the export fails, nothing is written.
            on_progress: Called with a stats snapshot after each sheet.

        Returns:
            MigrationResult; ``success`` is True when no sheet failed.

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        with self._lock:
            if self._is_migrating:
                logger.warning("Migration already in progress")
                return MigrationResult(success=False, stats=MigrationStats())
            self._is_migrating = True

        try:
            with timed_operation("perform_migration") as op:
                result = self._migrate(source, create_backup, on_progress)
                op["migrated"] = result.stats.migrated_sheets
                op["failed"] = result.stats.failed_sheets
            return result
        finally:
            with self._lock:
                self._is_migrating = False

    def _migrate(
        self,
        source: LegacyStore,
        create_backup: bool,
        on_progress: Optional[ProgressCallback],
    ) -> MigrationResult:
        backup_path: Optional[Path] = None
        if create_backup:
            backup_path = self.backup_manager.backup_legacy_store(source, label="migration")
            if backup_path is None:
                message = "Backup failed; migration aborted before any write"
                logger.error(message)
                return MigrationResult(
                    success=False, stats=MigrationStats(errors=(message,))
                )

        sheets = source.fetch_sheets()
        existing = self._existing_uuids()
        total = len(sheets)
        migrated = skipped = failed = 0
        errors: List[str] = []
        logger.info(f"Migrating {total} sheets")

        for position, sheet in enumerate(sheets, start=1):
            outcome, error = self._migrate_sheet(sheet, existing)
            if outcome == SheetOutcome.MIGRATED:
                migrated += 1
                existing.add(sheet.id)
            elif outcome == SheetOutcome.SKIPPED:
                skipped += 1
            else:
                failed += 1
                errors.append(f"{sheet.display_title}: {error}")
                logger.warning(f"Failed to migrate '{sheet.display_title}': {error}")

            if on_progress is not None:
                on_progress(MigrationStats(
                    total_sheets=total,
                    migrated_sheets=migrated,
                    skipped_sheets=skipped,
                    failed_sheets=failed,
                    errors=tuple(errors),
                ))
            if position % 10 == 0:
                logger.debug(f"Migration progress: {position}/{total} sheets")

        stats = MigrationStats(
            total_sheets=total,
            migrated_sheets=migrated,
            skipped_sheets=skipped,
            failed_sheets=failed,
            errors=tuple(errors),
        )

        if self.sync_service is not None:
            self.sync_service.full_sync()

        logger.info(
            f"Migration finished: {migrated} migrated, {skipped} skipped, {failed} failed"
        )
        return MigrationResult(
            success=failed == 0, stats=stats, backup_path=backup_path
        )

    def _migrate_sheet(
        self, sheet: LegacySheet, existing: Set[str]
    ) -> Tuple[SheetOutcome, Optional[str]]:
        if sheet.id in existing:
            return SheetOutcome.SKIPPED, None

        result = write_sheet(self.file_store, sheet)
        if not result.success or result.metadata is None:
            return SheetOutcome.FAILED, result.error or "Failed to create markdown file"

        signature = self.file_store.file_signature(result.file_path)
        if not self.index.upsert_note(
            result.metadata, normalize_body(content_from_sheet(sheet)), signature
        ):
            return SheetOutcome.FAILED, "Failed to add to index"

        logger.debug(f"Migrated '{sheet.display_title}' to {result.metadata.path}")
        return SheetOutcome.MIGRATED, None

    def _existing_uuids(self) -> Set[str]:
        """Ids that already have a file in the store."""
        uuids: Set[str] = set()
        for file_path in self.file_store.scan_all_files():
            parsed = self.file_store.read_file(file_path)
            if parsed is not None:
                uuids.add(parsed[0].uuid)
        return uuids
