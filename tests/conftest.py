"""Common test fixtures for the Notis sync engine."""

import datetime
import tempfile
from pathlib import Path

import pytest

from notis_sync.backup import BackupManager
from notis_sync.config import config
from notis_sync.legacy.base import LegacyGroup, LegacySheet
from notis_sync.legacy.memory_store import InMemoryLegacyStore
from notis_sync.observability import metrics
from notis_sync.services.file_sync_service import FileSyncService
from notis_sync.services.migration_service import MigrationService
from notis_sync.storage.file_store import MarkdownFileStore
from notis_sync.storage.markdown_parser import MarkdownParser
from notis_sync.storage.notes_index import NotesIndex

UTC = datetime.timezone.utc


def utc(year, month, day, hour=0, minute=0):
    """Shorthand for an aware UTC datetime."""
    return datetime.datetime(year, month, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def temp_dirs():
    """Create a temporary base directory with a notes root inside it."""
    with tempfile.TemporaryDirectory() as base_dir:
        base = Path(base_dir)
        yield base / "Notes", base


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Point the global config at temp paths (auto-restored even on crash)."""
    notes_dir, base_dir = temp_dirs
    monkeypatch.setattr(config, "base_dir", base_dir)
    monkeypatch.setattr(config, "notes_dir", notes_dir)
    monkeypatch.setattr(config, "in_memory_db", True)
    monkeypatch.setattr(config, "watch_mode", "polling")
    yield config


@pytest.fixture
def file_store(temp_dirs):
    """A file store rooted in a temporary directory."""
    notes_dir, base_dir = temp_dirs
    return MarkdownFileStore(
        notes_dir=notes_dir,
        trash_dir=base_dir / ".Trash",
        parser=MarkdownParser(excerpt_length=200),
    )


@pytest.fixture
def notes_index():
    """An in-memory index."""
    index = NotesIndex(db_url="sqlite://")
    yield index
    index.close()


@pytest.fixture
def legacy_store():
    """An empty in-memory legacy store."""
    return InMemoryLegacyStore()


@pytest.fixture
def sync_service(file_store, notes_index, legacy_store):
    """A sync service over the temp file store, in-memory index and legacy store."""
    service = FileSyncService(
        file_store,
        notes_index,
        legacy=legacy_store,
        preserve_conflicts=True,
        watch_mode="polling",
        poll_interval=30,
        debounce_seconds=0.05,
    )
    yield service
    service.shutdown()


@pytest.fixture
def backup_manager(temp_dirs):
    _, base_dir = temp_dirs
    return BackupManager(backup_dir=base_dir / "Backups", max_backups=5)


@pytest.fixture
def migration_service(file_store, notes_index, sync_service, backup_manager):
    return MigrationService(
        file_store,
        notes_index,
        sync_service=sync_service,
        backup_manager=backup_manager,
    )


@pytest.fixture
def make_sheet():
    """Factory for legacy sheets with sensible defaults."""
    counter = {"n": 0}

    def _make(title=None, content="Some content", **kwargs):
        counter["n"] += 1
        n = counter["n"]
        kwargs.setdefault("id", f"SHEET-{n:04d}")
        kwargs.setdefault("created_at", utc(2024, 1, 1, 9) + datetime.timedelta(minutes=n))
        kwargs.setdefault("modified_at", kwargs["created_at"])
        return LegacySheet(title=title or f"Sheet {n}", content=content, **kwargs)

    return _make


@pytest.fixture
def work_group():
    """A two-level group chain: Work/Projects."""
    return LegacyGroup(name="Projects", parent=LegacyGroup(name="Work"))


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Each test starts with empty operation metrics."""
    metrics.reset()
    yield
    metrics.reset()
