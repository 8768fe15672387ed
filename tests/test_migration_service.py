"""Tests for migrating legacy sheets into markdown files."""
import json
from unittest.mock import patch

import pytest

from notis_sync.legacy.base import LegacyNote
from notis_sync.legacy.memory_store import InMemoryLegacyStore
from notis_sync.models.schema import CreateFileResult, NoteMetadata, NoteStatus
from notis_sync.services.migration_service import MigrationService


@pytest.fixture
def source(make_sheet):
    """A legacy store with ten live sheets and one trashed sheet."""
    store = InMemoryLegacyStore()
    for i in range(10):
        store.add_sheet(make_sheet(f"Sheet {i}", f"content of sheet {i}"))
    store.add_sheet(make_sheet("Binned", "trash", is_in_trash=True))
    return store


@pytest.fixture
def two_existing(source, file_store):
    """Files already present for two of the sheets."""
    sheets = source.fetch_sheets()[:2]
    for sheet in sheets:
        file_store.create_file(
            sheet.display_title, "already here", metadata=NoteMetadata(uuid=sheet.id)
        )
    return {s.id for s in sheets}


class TestDryRun:
    """Tests for perform_dry_run."""

    def test_counts_without_writing(self, migration_service, source, two_existing, file_store):
        before = sorted(file_store.scan_all_files())

        stats = migration_service.perform_dry_run(source)

        assert stats.total_sheets == 10
        assert stats.migrated_sheets == 8
        assert stats.skipped_sheets == 2
        assert stats.failed_sheets == 0
        assert sorted(file_store.scan_all_files()) == before

    def test_empty_source(self, migration_service):
        stats = migration_service.perform_dry_run(InMemoryLegacyStore())
        assert stats.total_sheets == 0
        assert stats.progress == 1.0


class TestPerformMigration:
    """Tests for perform_migration."""

    def test_migrates_missing_sheets(
        self, migration_service, source, two_existing, file_store, notes_index, backup_manager
    ):
        result = migration_service.perform_migration(source)

        assert result.success
        assert result.stats.migrated_sheets == 8
        assert result.stats.skipped_sheets == 2
        assert result.stats.progress == 1.0
        assert len(file_store.scan_all_files()) == 10
        assert notes_index.get_total_count() == 10
        assert result.backup_path is not None and result.backup_path.exists()
        assert [b["path"] for b in backup_manager.list_backups()] == [str(result.backup_path)]

    def test_existing_files_are_not_overwritten(
        self, migration_service, source, two_existing, file_store, notes_index
    ):
        migration_service.perform_migration(source)
        for uuid in two_existing:
            assert notes_index.get_body(uuid) == "already here"

    def test_unusable_sheet_id_fails_only_that_sheet(
        self, migration_service, make_sheet, file_store, notes_index
    ):
        store = InMemoryLegacyStore([
            make_sheet("First", "one"),
            make_sheet("Broken", "two", id="bad/id"),
            make_sheet("Third", "three"),
        ])

        result = migration_service.perform_migration(store)

        assert not result.success
        assert result.stats.migrated_sheets == 2
        assert result.stats.failed_sheets == 1
        assert result.stats.errors[0].startswith("Broken:")
        assert len(file_store.scan_all_files()) == 2
        assert notes_index.get_total_count() == 2

    def test_second_run_skips_everything(self, migration_service, source, file_store):
        migration_service.perform_migration(source)
        files = sorted(file_store.scan_all_files())

        result = migration_service.perform_migration(source, create_backup=False)

        assert result.success
        assert result.stats.migrated_sheets == 0
        assert result.stats.skipped_sheets == 10
        assert sorted(file_store.scan_all_files()) == files

    def test_backup_includes_trashed_sheets(self, migration_service, source):
        result = migration_service.perform_migration(source)
        exported = json.loads(result.backup_path.read_text(encoding="utf-8"))
        assert len(exported) == 11
        assert any(item["isInTrash"] for item in exported)

    def test_trashed_sheets_are_not_migrated(self, migration_service, source, notes_index):
        migration_service.perform_migration(source)
        assert notes_index.search("Binned") == []
        assert notes_index.get_total_count() == 10

    def test_backup_failure_aborts(self, migration_service, source, file_store, backup_manager):
        with patch.object(backup_manager, "backup_legacy_store", return_value=None):
            result = migration_service.perform_migration(source)

        assert not result.success
        assert result.stats.migrated_sheets == 0
        assert "Backup failed" in result.stats.errors[0]
        assert file_store.scan_all_files() == []

    def test_without_backup(self, migration_service, source, backup_manager):
        result = migration_service.perform_migration(source, create_backup=False)
        assert result.success
        assert result.backup_path is None
        assert backup_manager.list_backups() == []

    def test_sheet_fields_carry_over(
        self, migration_service, make_sheet, work_group, file_store, notes_index
    ):
        store = InMemoryLegacyStore()
        sheet = make_sheet(
            "Starred", "main text", group=work_group, is_favorite=True,
            tags=["alpha", "beta"], notes=[LegacyNote(content="side note")],
        )
        store.add_sheet(sheet)

        migration_service.perform_migration(store, create_backup=False)

        note = notes_index.get_note(sheet.id)
        assert note.path == "Work/Projects/Starred.md"
        assert note.status == NoteStatus.FAVORITE
        assert note.tags == ["alpha", "beta"]
        assert note.created == sheet.created_at
        _, body = file_store.read_file_by_path(note.path)
        assert body.startswith("main text")
        assert "- side note" in body

    def test_plain_sheets_become_drafts(self, migration_service, make_sheet, notes_index):
        store = InMemoryLegacyStore([make_sheet("Plain", "x")])
        migration_service.perform_migration(store, create_backup=False)
        assert notes_index.get_all_notes()[0].status == NoteStatus.DRAFT

    def test_empty_content_is_migrated(self, migration_service, make_sheet, file_store):
        store = InMemoryLegacyStore([make_sheet("Blank", "")])
        result = migration_service.perform_migration(store, create_backup=False)
        assert result.stats.migrated_sheets == 1
        assert len(file_store.scan_all_files()) == 1

    def test_failed_sheet_is_recorded(self, migration_service, source, file_store):
        from notis_sync.legacy import convert

        target = source.fetch_sheets()[0]
        real_write = convert.write_sheet

        def flaky_write(store, sheet):
            if sheet.id == target.id:
                return CreateFileResult(success=False, error="disk full")
            return real_write(store, sheet)

        with patch("notis_sync.services.migration_service.write_sheet", side_effect=flaky_write):
            result = migration_service.perform_migration(source, create_backup=False)

        assert not result.success
        assert result.stats.failed_sheets == 1
        assert result.stats.migrated_sheets == 9
        assert "disk full" in result.stats.errors[0]
        assert len(file_store.scan_all_files()) == 9

    def test_progress_callback(self, migration_service, source):
        snapshots = []
        migration_service.perform_migration(
            source, create_backup=False, on_progress=snapshots.append
        )
        assert [s.processed_sheets for s in snapshots] == list(range(1, 11))
        assert snapshots[-1].progress == 1.0

    def test_concurrent_migration_is_refused(self, migration_service, source, file_store):
        migration_service._is_migrating = True
        result = migration_service.perform_migration(source)
        assert not result.success
        assert file_store.scan_all_files() == []

    def test_flag_cleared_after_run(self, migration_service, source):
        migration_service.perform_migration(source, create_backup=False)
        assert not migration_service.is_migrating

    def test_runs_full_sync_afterwards(self, migration_service, source, sync_service):
        migration_service.perform_migration(source, create_backup=False)
        assert sync_service.last_sync_date is not None

    def test_without_sync_service(self, file_store, notes_index, backup_manager, source):
        service = MigrationService(file_store, notes_index, backup_manager=backup_manager)
        result = service.perform_migration(source, create_backup=False)
        assert result.success
        assert notes_index.get_total_count() == 10
