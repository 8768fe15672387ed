"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from notis_sync.config import NotisConfig
from notis_sync.services.watchers import PollingWatcher, create_watcher


class TestEnvLoading:
    """Config reads NOTIS_* variables at construction time."""

    def test_user_env_path_is_correct(self):
        """_USER_ENV points to ~/.notis/.env."""
        from notis_sync.config import _USER_ENV

        assert _USER_ENV == Path.home() / ".notis" / ".env"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NOTIS_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("NOTIS_NOTES_DIR", "MyNotes")
        monkeypatch.setenv("NOTIS_WATCH_MODE", "POLLING")
        monkeypatch.setenv("NOTIS_POLL_INTERVAL", "12.5")
        monkeypatch.setenv("NOTIS_PRESERVE_CONFLICTS", "no")

        cfg = NotisConfig()

        assert cfg.get_notes_dir() == tmp_path / "MyNotes"
        assert cfg.watch_mode == "polling"
        assert cfg.poll_interval == 12.5
        assert cfg.preserve_conflicts is False

    def test_user_env_file_is_picked_up(self, tmp_path, monkeypatch):
        """Values from a dotenv file reach the config."""
        from dotenv import load_dotenv

        env_file = tmp_path / ".env"
        env_file.write_text("NOTIS_EXCERPT_LENGTH=42\n")
        monkeypatch.delenv("NOTIS_EXCERPT_LENGTH", raising=False)
        load_dotenv(env_file)
        try:
            assert NotisConfig().excerpt_length == 42
        finally:
            monkeypatch.delenv("NOTIS_EXCERPT_LENGTH", raising=False)


class TestPaths:
    """Relative paths resolve against base_dir."""

    def test_relative_and_absolute(self, tmp_path):
        cfg = NotisConfig(base_dir=tmp_path, notes_dir=Path("Notes"),
                          trash_dir=Path("/elsewhere/.Trash"))
        assert cfg.get_notes_dir() == tmp_path / "Notes"
        assert cfg.get_trash_dir() == Path("/elsewhere/.Trash")
        assert cfg.get_backup_dir() == tmp_path / "Backups"

    def test_file_database_url(self, tmp_path):
        cfg = NotisConfig(base_dir=tmp_path, in_memory_db=False,
                          database_path=Path("db/index.db"))
        assert cfg.get_db_path() == tmp_path / "db" / "index.db"
        assert cfg.get_db_url() == f"sqlite:///{tmp_path / 'db' / 'index.db'}"
        assert (tmp_path / "db").is_dir()

    def test_in_memory_database_url(self, tmp_path):
        cfg = NotisConfig(base_dir=tmp_path, in_memory_db=True)
        assert cfg.get_db_path() is None
        assert cfg.get_db_url() == "sqlite://"


class TestValidation:
    """Invalid settings are rejected."""

    def test_unknown_watch_mode(self):
        with pytest.raises(ValidationError):
            NotisConfig(watch_mode="psychic")

    @pytest.mark.parametrize(
        "field,value",
        [("poll_interval", 0), ("debounce_seconds", -1), ("excerpt_length", 0)],
    )
    def test_bad_intervals(self, field, value):
        with pytest.raises(ValidationError):
            NotisConfig(**{field: value})

    def test_short_poll_interval_warns(self, caplog):
        with caplog.at_level("WARNING", logger="notis_sync.config"):
            NotisConfig(poll_interval=1)
        assert "very short" in caplog.text

    def test_env_watch_mode_is_validated(self, monkeypatch):
        monkeypatch.setenv("NOTIS_WATCH_MODE", "bogus")
        with pytest.raises(ValidationError):
            NotisConfig()

    def test_env_watch_mode_is_normalized_for_watchers(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NOTIS_WATCH_MODE", " Polling ")
        cfg = NotisConfig()
        assert cfg.watch_mode == "polling"
        watcher = create_watcher(tmp_path, lambda: None, mode=cfg.watch_mode)
        assert isinstance(watcher, PollingWatcher)
