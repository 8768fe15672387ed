"""Tests for backup creation, listing and rotation."""
import gzip
import json
import os
import sqlite3
import tarfile
import time

import pytest

from notis_sync.backup import BackupManager
from notis_sync.legacy.json_store import JsonLegacyStore
from notis_sync.legacy.memory_store import InMemoryLegacyStore
from notis_sync.storage.notes_index import NotesIndex


@pytest.fixture
def legacy_with_sheets(make_sheet, work_group):
    return InMemoryLegacyStore([
        make_sheet("Kept", "body one", group=work_group, tags=["a"]),
        make_sheet("Trashed", "body two", is_in_trash=True),
    ])


class TestLegacyBackup:
    """Tests for backup_legacy_store."""

    def test_exports_all_sheets(self, backup_manager, legacy_with_sheets):
        path = backup_manager.backup_legacy_store(legacy_with_sheets)

        assert path.name.startswith("legacy_backup_")
        assert path.suffix == ".json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert {item["title"] for item in data} == {"Kept", "Trashed"}
        kept = next(item for item in data if item["title"] == "Kept")
        assert kept["groupPath"] == "Work/Projects"
        assert kept["tags"] == ["a"]

    def test_backup_opens_as_store(self, backup_manager, legacy_with_sheets):
        path = backup_manager.backup_legacy_store(legacy_with_sheets, label="migration")
        assert "_migration" in path.name

        restored = JsonLegacyStore(path)
        assert len(restored) == 2
        sheet = restored.fetch_sheets()[0]
        assert sheet.title == "Kept"
        assert sheet.folder_path() == "Work/Projects"

    def test_same_second_backups_do_not_collide(self, backup_manager, legacy_with_sheets):
        first = backup_manager.backup_legacy_store(legacy_with_sheets)
        second = backup_manager.backup_legacy_store(legacy_with_sheets)
        assert first != second
        assert first.exists() and second.exists()

    def test_failure_returns_none(self, tmp_path, legacy_with_sheets):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        manager = BackupManager(backup_dir=blocker / "Backups")
        assert manager.backup_legacy_store(legacy_with_sheets) is None

    def test_no_temp_file_left(self, backup_manager, legacy_with_sheets):
        backup_manager.backup_legacy_store(legacy_with_sheets)
        assert not [p for p in backup_manager.backup_dir.iterdir() if p.name.startswith(".")]


class TestDatabaseBackup:
    """Tests for backup_database."""

    def test_compressed_backup_is_valid_sqlite(self, backup_manager, tmp_path):
        db_path = tmp_path / "index.db"
        index = NotesIndex(db_url=f"sqlite:///{db_path}")
        index.close()

        backup = backup_manager.backup_database(db_path)

        assert backup.name.endswith(".db.gz")
        restored = tmp_path / "restored.db"
        with gzip.open(backup, "rb") as src:
            restored.write_bytes(src.read())
        conn = sqlite3.connect(str(restored))
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        finally:
            conn.close()
        assert "notes" in tables

    def test_uncompressed_backup(self, backup_manager, tmp_path):
        db_path = tmp_path / "index.db"
        sqlite3.connect(str(db_path)).close()
        backup = backup_manager.backup_database(db_path, compress=False)
        assert backup.suffix == ".db"

    def test_missing_database(self, backup_manager, tmp_path):
        assert backup_manager.backup_database(tmp_path / "missing.db") is None

    def test_in_memory_database(self, backup_manager, test_config):
        assert backup_manager.backup_database() is None


class TestNotesBackup:
    """Tests for backup_notes."""

    def test_archives_notes_tree(self, backup_manager, file_store):
        file_store.create_file("Archived", "x", folder_path="Sub")

        backup = backup_manager.backup_notes(file_store.notes_dir)

        assert backup.name.endswith(".tar.gz")
        with tarfile.open(backup) as tar:
            names = tar.getnames()
        assert "Notes/Sub/Archived.md" in names

    def test_missing_notes_dir(self, backup_manager, tmp_path):
        assert backup_manager.backup_notes(tmp_path / "nowhere") is None

    def test_full_backup(self, backup_manager, file_store, tmp_path, legacy_with_sheets):
        file_store.create_file("Any", "x")
        db_path = tmp_path / "index.db"
        sqlite3.connect(str(db_path)).close()

        result = backup_manager.create_full_backup(
            notes_dir=file_store.notes_dir, db_path=db_path, legacy=legacy_with_sheets
        )

        assert set(result) == {"index", "notes", "legacy"}
        assert all(path is not None for path in result.values())


class TestListingAndRotation:
    """Tests for list_backups and rotation."""

    def test_empty_listing(self, tmp_path):
        assert BackupManager(backup_dir=tmp_path / "none").list_backups() == []

    def test_list_types(self, backup_manager, legacy_with_sheets, file_store):
        file_store.create_file("Any", "x")
        backup_manager.backup_legacy_store(legacy_with_sheets)
        backup_manager.backup_notes(file_store.notes_dir)

        kinds = sorted(b["type"] for b in backup_manager.list_backups())
        assert kinds == ["legacy", "notes"]

    def test_rotation_by_count(self, tmp_path, legacy_with_sheets):
        manager = BackupManager(backup_dir=tmp_path / "B", max_backups=2)
        for _ in range(4):
            manager.backup_legacy_store(legacy_with_sheets)
        assert len(manager.list_backups()) == 2

    def test_rotation_by_age(self, tmp_path, legacy_with_sheets):
        manager = BackupManager(backup_dir=tmp_path / "B", max_backups=10, max_age_days=1)
        old = manager.backup_legacy_store(legacy_with_sheets)
        two_days_ago = time.time() - 2 * 24 * 3600
        os.utime(old, (two_days_ago, two_days_ago))

        fresh = manager.backup_legacy_store(legacy_with_sheets)

        assert not old.exists()
        assert fresh.exists()

    def test_rotation_is_per_kind(self, tmp_path, legacy_with_sheets, file_store):
        file_store.create_file("Any", "x")
        manager = BackupManager(backup_dir=tmp_path / "B", max_backups=1)
        manager.backup_notes(file_store.notes_dir)
        manager.backup_legacy_store(legacy_with_sheets)
        assert sorted(b["type"] for b in manager.list_backups()) == ["legacy", "notes"]
