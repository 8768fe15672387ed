"""Composition root: builds the engine's services and drives their lifecycle."""
import logging
from concurrent.futures import Future
from typing import Optional

from notis_sync.backup import BackupManager
from notis_sync.config import NotisConfig, config
from notis_sync.legacy.base import LegacyStore
from notis_sync.models.schema import SyncStats
from notis_sync.observability import metrics
from notis_sync.services.file_sync_service import FileSyncService
from notis_sync.services.migration_service import MigrationService
from notis_sync.storage.file_store import MarkdownFileStore
from notis_sync.storage.markdown_parser import MarkdownParser
from notis_sync.storage.notes_index import NotesIndex

logger = logging.getLogger(__name__)


class NotisApp:
    """Owns one instance of every service, wired from a ``NotisConfig``.

    The application layer calls the lifecycle hooks:

    - ``on_launch``: full sync in the background, then monitoring.
    - ``on_background``: stop monitoring.
    - ``on_foreground``: quick sync in the background, then monitoring.
    - ``shutdown``: stop everything and close the index.
    """

    def __init__(
        self,
        settings: Optional[NotisConfig] = None,
        legacy: Optional[LegacyStore] = None,
    ):
        self.config = settings or config
        self.legacy = legacy

        self.file_store = MarkdownFileStore(
            notes_dir=self.config.get_notes_dir(),
            trash_dir=self.config.get_trash_dir(),
            parser=MarkdownParser(excerpt_length=self.config.excerpt_length),
        )
        self.index = NotesIndex(db_url=self.config.get_db_url())
        self.backup_manager = BackupManager(
            backup_dir=self.config.get_backup_dir(),
            max_backups=self.config.max_backups,
        )
        self.sync_service = FileSyncService(
            self.file_store,
            self.index,
            legacy=legacy,
            preserve_conflicts=self.config.preserve_conflicts,
            watch_mode=self.config.watch_mode,
            poll_interval=self.config.poll_interval,
            debounce_seconds=self.config.debounce_seconds,
        )
        self.migration_service = MigrationService(
            self.file_store,
            self.index,
            sync_service=self.sync_service,
            backup_manager=self.backup_manager,
        )

    def on_launch(self) -> "Future[SyncStats]":
        """Start the initial full sync and begin watching for changes.

        Once the sync completes, index metadata is pushed onto the legacy
        store (if one is attached). Saving that store stays with the caller.
        """
        logger.info(f"Notis sync engine {self.config.version} starting")
        future = self.sync_service.sync_in_background("full")
        if self.legacy is not None:
            future.add_done_callback(self._push_to_legacy)
        self.sync_service.start_monitoring()
        return future

    def on_background(self) -> None:
        self.sync_service.stop_monitoring()

    def on_foreground(self) -> "Future[SyncStats]":
        future = self.sync_service.sync_in_background("quick")
        self.sync_service.start_monitoring()
        return future

    def shutdown(self) -> None:
        """Stop monitoring, let in-flight passes finish and close the index."""
        self.sync_service.shutdown()
        self.index.close()
        if metrics.save_metrics():
            logger.info("Metrics saved to disk on shutdown")
        logger.info("Notis sync engine stopped")

    def _push_to_legacy(self, future: "Future[SyncStats]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Initial sync failed: {error}")
            return
        self.sync_service.sync_index_to_legacy(self.legacy)

    def __enter__(self) -> "NotisApp":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
