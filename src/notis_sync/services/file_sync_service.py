"""Keeps the notes index, the markdown files and the legacy store in step.

Files are the source of truth. The index is a cache rebuilt from them, and
the legacy store is reconciled with both: records without a file are
written out lazily, and edits on either side are resolved by modification
time.
"""
import dataclasses
import datetime
import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from notis_sync.config import config
from notis_sync.exceptions import SyncError
from notis_sync.legacy.base import LegacySheet, LegacyStore
from notis_sync.legacy.convert import content_from_sheet, write_sheet
from notis_sync.models.schema import (
    FileSignature,
    IndexedSignature,
    NoteMetadata,
    NoteStatus,
    SyncStats,
    ensure_timezone_aware,
    utc_now,
)
from notis_sync.observability import timed_operation, traced
from notis_sync.services.watchers import ChangeWatcher, create_watcher
from notis_sync.storage.file_store import MarkdownFileStore
from notis_sync.storage.markdown_parser import normalize_body
from notis_sync.storage.notes_index import NotesIndex

logger = logging.getLogger(__name__)

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

_STATS_FIELDS = tuple(f.name for f in dataclasses.fields(SyncStats))

# Index columns that are compared when deciding whether a row is stale
_EXCLUDED_FROM_COMPARE = {"extra"}


class SyncPhase(str, Enum):
    """Where a sync pass currently is."""
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    APPLYING = "applying"


@dataclasses.dataclass
class _ParsedFile:
    metadata: NoteMetadata
    body: str
    signature: Optional[FileSignature]


class FileSyncService:
    """Runs quick, full and deep sync passes and watches for changes.

    Only one pass runs at a time. A pass requested while another is running
    is refused with a warning and receives the stats of the last completed
    pass instead.
    """

    def __init__(
        self,
        file_store: MarkdownFileStore,
        index: NotesIndex,
        legacy: Optional[LegacyStore] = None,
        preserve_conflicts: Optional[bool] = None,
        watch_mode: Optional[str] = None,
        poll_interval: Optional[float] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.file_store = file_store
        self.index = index
        self.legacy = legacy
        self.preserve_conflicts = (
            config.preserve_conflicts if preserve_conflicts is None else preserve_conflicts
        )
        self.watch_mode = watch_mode or config.watch_mode
        self.poll_interval = poll_interval or config.poll_interval
        self.debounce_seconds = debounce_seconds or config.debounce_seconds

        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._monitor_lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._last_sync_date: Optional[datetime.datetime] = None
        self._last_sync_stats = SyncStats()
        self._watcher: Optional[ChangeWatcher] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        with self._state_lock:
            return self._phase

    @property
    def is_syncing(self) -> bool:
        return self.phase != SyncPhase.IDLE

    @property
    def last_sync_date(self) -> Optional[datetime.datetime]:
        """Start time of the last completed pass."""
        with self._state_lock:
            return self._last_sync_date

    @property
    def last_sync_stats(self) -> SyncStats:
        with self._state_lock:
            return self._last_sync_stats

    @property
    def is_monitoring(self) -> bool:
        with self._monitor_lock:
            return self._watcher is not None and self._watcher.is_running

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._state_lock:
            self._phase = phase

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def quick_sync(self) -> SyncStats:
        """Re-index only files whose mtime or size changed since indexing.

        Rows whose files are gone are removed; a moved file keeps its row,
        with the path updated.

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        return self._run_pass("quick_sync", self._quick_pass)

    def full_sync(self, legacy: Optional[LegacyStore] = None) -> SyncStats:
        """Re-parse every file and reconcile the index with the tree.

        Non-trashed legacy records without a file get one (lazy migration).

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        store = legacy if legacy is not None else self.legacy
        return self._run_pass(
            "full_sync", lambda counts: self._full_pass(counts, store, deep=False)
        )

    def deep_sync(self, legacy: Optional[LegacyStore] = None) -> SyncStats:
        """Full sync, then reconcile bodies with the legacy store.

        The later ``modified`` wins; the file wins ties. When both sides
        changed since the last completed pass, a conflict is counted and,
        with ``preserve_conflicts``, the losing version is kept as a hidden
        sidecar.

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        store = legacy if legacy is not None else self.legacy
        return self._run_pass(
            "deep_sync", lambda counts: self._full_pass(counts, store, deep=True)
        )

    def sync_in_background(self, mode: str = "quick") -> "Future[SyncStats]":
        """Run a pass on the single sync worker thread.

        Args:
            mode: ``quick``, ``full`` or ``deep``.
        """
        passes: Dict[str, Callable[[], SyncStats]] = {
            "quick": self.quick_sync,
            "full": self.full_sync,
            "deep": self.deep_sync,
        }
        if mode not in passes:
            raise SyncError(f"Unknown sync mode: {mode}", operation="sync_in_background")
        with self._monitor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="notis-sync"
                )
            return self._executor.submit(passes[mode])

    def _run_pass(self, name: str, body: Callable[[Counter], None]) -> SyncStats:
        if not self._pass_lock.acquire(blocking=False):
            logger.warning(f"{name} requested while a sync is running; skipped")
            return self.last_sync_stats

        started = utc_now()
        try:
            with timed_operation(name) as op:
                counts: Counter = Counter()
                body(counts)
                stats = SyncStats(**{f: counts[f] for f in _STATS_FIELDS})
                op["changes"] = stats.total_changes
                with self._state_lock:
                    self._last_sync_date = started
                    self._last_sync_stats = stats
        finally:
            self._set_phase(SyncPhase.IDLE)
            self._pass_lock.release()

        if stats.has_changes or stats.errors or stats.conflicts:
            logger.info(f"{name} finished: {stats.to_dict()}")
        else:
            logger.debug(f"{name} finished with no changes ({stats.files_scanned} files)")
        return stats

    def _quick_pass(self, counts: Counter) -> None:
        self._set_phase(SyncPhase.SCANNING)
        files = self.file_store.scan_all_files()
        indexed = self.index.get_signatures()
        by_path = {sig.path: sig for sig in indexed.values()}
        counts["files_scanned"] = len(files)

        self._set_phase(SyncPhase.DIFFING)
        seen: Set[str] = set()
        changed: List[Tuple[Path, FileSignature]] = []
        for file_path in files:
            signature = self.file_store.file_signature(file_path)
            if signature is None:
                continue
            row = by_path.get(self.file_store.relative_path(file_path))
            if row is not None and row.matches(signature):
                seen.add(row.uuid)
            else:
                changed.append((file_path, signature))

        self._set_phase(SyncPhase.APPLYING)
        for file_path, signature in changed:
            parsed = self.file_store.read_file(file_path)
            if parsed is None:
                continue
            metadata, body = parsed
            if not self._claim(metadata, seen, counts):
                continue
            self._index(metadata, body, signature, indexed.get(metadata.uuid), counts)

        self._remove_unseen(indexed, seen, counts)

    def _full_pass(
        self, counts: Counter, legacy: Optional[LegacyStore], deep: bool
    ) -> None:
        self._set_phase(SyncPhase.SCANNING)
        files = self.file_store.scan_all_files()
        indexed = self.index.get_signatures()
        indexed_notes = {n.uuid: n for n in self.index.get_all_notes()}
        sheets = legacy.fetch_sheets() if legacy is not None else []
        counts["files_scanned"] = len(files)

        self._set_phase(SyncPhase.DIFFING)
        seen: Set[str] = set()
        parsed_files: Dict[str, _ParsedFile] = {}
        for file_path in files:
            parsed = self.file_store.read_file(file_path)
            if parsed is None:
                continue
            metadata, body = parsed
            if not self._claim(metadata, seen, counts):
                continue
            parsed_files[metadata.uuid] = _ParsedFile(
                metadata, body, self.file_store.file_signature(file_path)
            )

        self._set_phase(SyncPhase.APPLYING)
        reindexed: Set[str] = set()
        for uuid, item in parsed_files.items():
            current = indexed_notes.get(uuid)
            if current is not None and _same_row(current, item.metadata):
                row = indexed.get(uuid)
                # Same content, new mtime: refresh the cached signature quietly
                if item.signature and row and not row.matches(item.signature):
                    self.index.upsert_note(item.metadata, item.body, item.signature)
                continue
            if self._index(item.metadata, item.body, item.signature, indexed.get(uuid), counts):
                reindexed.add(uuid)

        created: Set[str] = set()
        for sheet in sheets:
            if sheet.id in seen:
                continue
            if self._materialize_sheet(sheet, indexed.get(sheet.id), counts):
                seen.add(sheet.id)
                created.add(sheet.id)

        self._remove_unseen(indexed, seen, counts)

        if deep and legacy is not None:
            for sheet in sheets:
                item = parsed_files.get(sheet.id)
                if item is None or sheet.id in created:
                    continue
                self._reconcile_bodies(
                    legacy, sheet, item, counts, counted=sheet.id in reindexed
                )

    # ------------------------------------------------------------------
    # Pass steps
    # ------------------------------------------------------------------

    def _claim(self, metadata: NoteMetadata, seen: Set[str], counts: Counter) -> bool:
        """Mark a uuid as live; a second file with the same uuid is refused."""
        if metadata.uuid in seen:
            logger.warning(
                f"Duplicate note id {metadata.uuid} in {metadata.path}; ignoring this copy"
            )
            counts["errors"] += 1
            return False
        seen.add(metadata.uuid)
        return True

    def _index(
        self,
        metadata: NoteMetadata,
        body: str,
        signature: Optional[FileSignature],
        row: Optional[IndexedSignature],
        counts: Counter,
    ) -> bool:
        if not self.index.upsert_note(metadata, body, signature):
            counts["errors"] += 1
            return False
        if row is None:
            counts["index_entries_added"] += 1
        else:
            if row.path != metadata.path:
                logger.info(f"Note {metadata.uuid} moved: {row.path} -> {metadata.path}")
            counts["index_entries_updated"] += 1
        return True

    def _remove_unseen(
        self, indexed: Dict[str, IndexedSignature], seen: Set[str], counts: Counter
    ) -> None:
        for uuid, row in indexed.items():
            if uuid in seen:
                continue
            if self.index.remove_note(uuid):
                logger.debug(f"Removed index entry {uuid}: {row.path} is gone")
                counts["index_entries_deleted"] += 1

    def _materialize_sheet(
        self,
        sheet: LegacySheet,
        row: Optional[IndexedSignature],
        counts: Counter,
    ) -> bool:
        """Write a file for a legacy record that has none, then index it."""
        result = write_sheet(self.file_store, sheet)
        if not result.success or result.metadata is None:
            logger.warning(f"Could not write file for legacy record {sheet.id}: {result.error}")
            counts["errors"] += 1
            return False
        counts["files_added"] += 1
        signature = self.file_store.file_signature(result.file_path)
        body = normalize_body(content_from_sheet(sheet))
        self._index(result.metadata, body, signature, row, counts)
        return True

    def _reconcile_bodies(
        self,
        legacy: LegacyStore,
        sheet: LegacySheet,
        item: _ParsedFile,
        counts: Counter,
        counted: bool = False,
    ) -> None:
        """Resolve differing bodies for one record.

        ``counted`` means the row was already re-indexed earlier in this
        pass, so a second write to it is not counted again.
        """
        legacy_body = normalize_body(content_from_sheet(sheet))
        if normalize_body(item.body) == legacy_body:
            return

        file_modified = item.metadata.modified
        legacy_modified = _sheet_modified(sheet)
        last_sync = self.last_sync_date
        conflict = last_sync is None or (
            file_modified > last_sync and legacy_modified > last_sync
        )
        if conflict:
            counts["conflicts"] += 1

        if legacy_modified > file_modified:
            if conflict and self.preserve_conflicts:
                self.file_store.write_conflict_copy(item.metadata, item.body)
            written = self.file_store.update_file(
                item.metadata.model_copy(update={"modified": legacy_modified}),
                legacy_body,
                touch=False,
            )
            if written is None:
                counts["errors"] += 1
                return
            counts["files_updated"] += 1
            signature = self.file_store.file_signature(
                self.file_store.absolute_path(written.path)
            )
            if not self.index.upsert_note(written, legacy_body, signature):
                counts["errors"] += 1
            elif not counted:
                counts["index_entries_updated"] += 1
            return

        if conflict and self.preserve_conflicts:
            self.file_store.write_conflict_copy(item.metadata, legacy_body)
        # Annotations and side notes are already folded into the file body
        sheet.content = item.body
        sheet.annotations = []
        sheet.notes = []
        sheet.modified_at = file_modified
        try:
            legacy.update_sheet(sheet)
        except (KeyError, ValueError) as e:
            logger.error(f"Failed to update legacy record {sheet.id}: {e}")
            counts["errors"] += 1
            return
        counts["legacy_records_updated"] += 1

    # ------------------------------------------------------------------
    # Legacy write-back
    # ------------------------------------------------------------------

    @traced("sync_index_to_legacy")
    def sync_index_to_legacy(self, legacy: Optional[LegacyStore] = None) -> int:
        """Push index metadata onto legacy records.

        Title, a newer ``modified``, the favorite flag and the folder are
        copied onto the matching record. Notes without a record are
        imported as new records. The store is not saved.

        Returns:
            Number of records added or changed.
        """
        store = legacy if legacy is not None else self.legacy
        if store is None:
            return 0

        updated = 0
        for note in self.index.get_all_notes():
            try:
                sheet = store.get_sheet(note.uuid)
                if sheet is None:
                    store.add_sheet(self._sheet_from_note(store, note))
                    logger.info(f"Imported external note '{note.title}' into the legacy store")
                    updated += 1
                elif self._apply_note_to_sheet(store, note, sheet):
                    store.update_sheet(sheet)
                    updated += 1
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to sync note {note.uuid} to the legacy store: {e}")

        if updated:
            logger.info(f"Synced {updated} note(s) to the legacy store")
        return updated

    def _sheet_from_note(self, store: LegacyStore, note: NoteMetadata) -> LegacySheet:
        return LegacySheet(
            id=note.uuid,
            title=note.title,
            content=self.index.get_body(note.uuid) or "",
            group=store.find_or_create_group(note.folder_path),
            created_at=note.created,
            modified_at=note.modified,
            is_favorite=note.status == NoteStatus.FAVORITE,
            word_count=note.word_count,
            tags=list(note.tags),
        )

    @staticmethod
    def _apply_note_to_sheet(
        store: LegacyStore, note: NoteMetadata, sheet: LegacySheet
    ) -> bool:
        changed = False
        if sheet.title != note.title:
            sheet.title = note.title
            changed = True
        if note.modified > _sheet_modified(sheet):
            sheet.modified_at = note.modified
            changed = True
        if sheet.is_favorite != note.is_favorite:
            sheet.is_favorite = note.is_favorite
            changed = True
        if sheet.folder_path() != note.folder_path:
            sheet.group = store.find_or_create_group(note.folder_path)
            changed = True
        return changed

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def start_monitoring(self) -> None:
        """Watch the notes tree and quick-sync on changes. Idempotent."""
        with self._monitor_lock:
            if self._watcher is not None and self._watcher.is_running:
                return
            self._watcher = create_watcher(
                self.file_store.get_notes_directory(),
                self._on_change,
                mode=self.watch_mode,
                poll_interval=self.poll_interval,
                debounce_seconds=self.debounce_seconds,
            )
            self._watcher.start()

    def stop_monitoring(self) -> None:
        """Stop watching. A pass already running is allowed to finish."""
        with self._monitor_lock:
            watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.stop()

    def shutdown(self) -> None:
        """Stop monitoring and wait for the background worker to drain."""
        self.stop_monitoring()
        with self._monitor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _on_change(self) -> None:
        self.quick_sync()


def _same_row(current: NoteMetadata, parsed: NoteMetadata) -> bool:
    return current.model_dump(exclude=_EXCLUDED_FROM_COMPARE) == parsed.model_dump(
        exclude=_EXCLUDED_FROM_COMPARE
    )


def _sheet_modified(sheet: LegacySheet) -> datetime.datetime:
    value = sheet.modified_at or sheet.created_at
    return ensure_timezone_aware(value) if value is not None else _EPOCH
