"""Tests for the SQLite notes index."""
import datetime
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from notis_sync.exceptions import ErrorCode, IndexStoreError
from notis_sync.models.schema import FileSignature, NoteMetadata, NoteSortField, NoteStatus
from notis_sync.storage.notes_index import NotesIndex

UTC = datetime.timezone.utc


def make_note(uuid, title="Note", path=None, tags=None, body="", minutes=0, **kwargs):
    """Metadata with derived fields computed from ``body``."""
    stamp = datetime.datetime(2024, 1, 1, tzinfo=UTC) + datetime.timedelta(minutes=minutes)
    note = NoteMetadata(
        uuid=uuid,
        title=title,
        path=path or f"{uuid}.md",
        tags=tags or [],
        created=stamp,
        modified=stamp,
        **kwargs,
    )
    return note.with_body(body)


class TestUpsert:
    """Tests for inserting and updating rows."""

    def test_insert_and_get(self, notes_index):
        note = make_note("A", "Alpha", tags=["x", "Y"], body="alpha body")
        assert notes_index.upsert_note(note, "alpha body", FileSignature(1.5, 42))

        stored = notes_index.get_note("A")
        assert stored == note
        assert notes_index.get_body("A") == "alpha body"
        assert notes_index.get_total_count() == 1
        sig = notes_index.get_signatures()["A"]
        assert (sig.mtime, sig.size, sig.path) == (1.5, 42, "A.md")

    def test_upsert_is_idempotent(self, notes_index):
        note = make_note("A", "Alpha", tags=["t"], body="b")
        notes_index.upsert_note(note, "b")
        notes_index.upsert_note(note, "b")
        assert notes_index.get_total_count() == 1
        assert notes_index.get_all_tags() == ["t"]
        assert notes_index.search("Alpha")[0].uuid == "A"
        assert len(notes_index.search("Alpha")) == 1

    def test_update_replaces_fields_and_tags(self, notes_index):
        notes_index.upsert_note(make_note("A", "Old", tags=["one", "two"]), "old words")
        notes_index.upsert_note(make_note("A", "New", tags=["three"]), "new words")

        stored = notes_index.get_note("A")
        assert stored.title == "New"
        assert stored.tags == ["three"]
        assert notes_index.get_all_tags() == ["three"]
        assert notes_index.search("old") == []
        assert [n.uuid for n in notes_index.search("new")] == ["A"]

    def test_move_updates_path_in_place(self, notes_index):
        notes_index.upsert_note(make_note("A", path="Inbox/A.md"), "")
        notes_index.upsert_note(make_note("A", path="Archive/A.md"), "")
        assert notes_index.get_total_count() == 1
        assert notes_index.get_note("A").path == "Archive/A.md"
        assert notes_index.get_note_by_path("Inbox/A.md") is None

    def test_path_claimed_by_new_uuid_evicts_old_row(self, notes_index):
        notes_index.upsert_note(make_note("OLD", path="Same.md"), "")
        notes_index.upsert_note(make_note("NEW", path="Same.md"), "")
        assert notes_index.get_note("OLD") is None
        assert notes_index.get_note_by_path("Same.md").uuid == "NEW"
        assert notes_index.get_total_count() == 1

    def test_remove_note(self, notes_index):
        notes_index.upsert_note(make_note("A", "Removable", tags=["gone"]), "text")
        assert notes_index.remove_note("A")
        assert notes_index.get_note("A") is None
        assert notes_index.get_all_tags() == []
        assert notes_index.search("Removable") == []
        assert not notes_index.remove_note("A")

    def test_clear(self, notes_index):
        for i in range(3):
            notes_index.upsert_note(make_note(f"N{i}"), "")
        assert notes_index.clear() == 3
        assert notes_index.get_total_count() == 0

    def test_database_error_returns_false(self, notes_index):
        with patch.object(
            NotesIndex, "_sync_note_to_db",
            side_effect=OperationalError("stmt", {}, Exception("locked")),
        ):
            assert notes_index.upsert_note(make_note("A"), "") is False
        assert notes_index.get_total_count() == 0


class TestQueries:
    """Tests for listing queries."""

    @pytest.fixture
    def populated(self, notes_index):
        notes_index.upsert_note(make_note("A", "Apple", "Fruit/Apple.md", ["Food"], minutes=1), "")
        notes_index.upsert_note(make_note("B", "Banana", "Fruit/Tropical/Banana.md", ["food", "yellow"], minutes=3), "")
        notes_index.upsert_note(make_note("C", "Carrot", "Carrot.md", [], minutes=2, progress=0.9), "")
        return notes_index

    def test_recently_modified(self, populated):
        assert [n.uuid for n in populated.get_recently_modified()] == ["B", "C", "A"]
        assert [n.uuid for n in populated.get_recently_modified(limit=1)] == ["B"]

    def test_get_all_notes_sorting(self, populated):
        by_title = populated.get_all_notes(sort_by=NoteSortField.TITLE, ascending=True)
        assert [n.uuid for n in by_title] == ["A", "B", "C"]
        by_progress = populated.get_all_notes(sort_by="progress")
        assert by_progress[0].uuid == "C"

    def test_tags_collapse_case_variants(self, populated):
        assert populated.get_all_tags() == ["Food", "yellow"]

    def test_notes_by_tag_is_case_insensitive(self, populated):
        assert {n.uuid for n in populated.get_notes_by_tag("FOOD")} == {"A", "B"}

    def test_folders(self, populated):
        assert populated.get_all_folders() == ["Fruit", "Fruit/Tropical"]
        assert [n.uuid for n in populated.get_notes_in_folder("Fruit")] == ["A"]
        assert [n.uuid for n in populated.get_notes_in_folder("Fruit", recursive=True)] == ["A", "B"]
        assert [n.uuid for n in populated.get_notes_in_folder("")] == ["C"]


class TestSearch:
    """Tests for full-text search."""

    @pytest.fixture
    def searchable(self, notes_index):
        notes_index.upsert_note(make_note("A", "Python tips"), "Use list comprehensions wisely")
        notes_index.upsert_note(make_note("B", "Shopping"), "Buy python books and coffee")
        notes_index.upsert_note(make_note("C", "Coffee", tags=["beverage"]), "Brewing methods")
        return notes_index

    def test_phrase_search(self, searchable):
        assert {n.uuid for n in searchable.search("python")} == {"A", "B"}

    def test_search_by_tag_text(self, searchable):
        assert [n.uuid for n in searchable.search("beverage")] == ["C"]

    def test_fts_operators_pass_through(self, searchable):
        assert [n.uuid for n in searchable.search("python AND coffee")] == ["B"]
        assert {n.uuid for n in searchable.search("brew*")} == {"C"}

    def test_limit(self, searchable):
        assert len(searchable.search("python", limit=1)) == 1

    def test_empty_query(self, searchable):
        assert searchable.search("   ") == []

    def test_special_characters_do_not_raise(self, searchable):
        assert searchable.search('unbalanced "quote') == []
        assert searchable.search("(*)") == []

    def test_fallback_when_fts_unavailable(self, searchable):
        searchable.fts_available = False
        assert {n.uuid for n in searchable.search("python")} == {"A", "B"}
        assert searchable.search("100%") == []

    def test_rebuild_fts_restores_search(self, searchable):
        with searchable.engine.begin() as conn:
            conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('delete-all')"))
        assert searchable.search("python") == []
        assert searchable.rebuild_fts() == 3
        assert {n.uuid for n in searchable.search("python")} == {"A", "B"}


class TestHealth:
    """Tests for check_health."""

    def test_healthy_index(self, notes_index):
        notes_index.upsert_note(make_note("A"), "body")
        health = notes_index.check_health()
        assert health["healthy"]
        assert health["sqlite_ok"] and health["fts_ok"]
        assert health["note_count"] == 1
        assert health["issues"] == []


class TestFileBackedIndex:
    """The index persists in a database file."""

    def test_reopen_sees_rows(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'index.db'}"
        first = NotesIndex(db_url=url)
        first.upsert_note(make_note("P", "Persistent", status=NoteStatus.FAVORITE), "kept")
        first.close()

        second = NotesIndex(db_url=url)
        try:
            note = second.get_note("P")
            assert note.status == NoteStatus.FAVORITE
            assert [n.uuid for n in second.search("kept")] == ["P"]
        finally:
            second.close()


class TestWithoutFts5:
    """A SQLite build without FTS5 still indexes and searches."""

    @pytest.fixture
    def plain_index(self):
        error = OperationalError("CREATE VIRTUAL TABLE", {}, Exception("no such module: fts5"))
        with patch("notis_sync.models.db_models.init_fts5", side_effect=error):
            index = NotesIndex(db_url="sqlite://")
        yield index
        index.close()

    def test_fts_reported_missing(self, plain_index):
        assert plain_index.fts_available is False
        assert not plain_index.check_health()["fts_ok"]

    def test_upsert_and_like_search(self, plain_index):
        assert plain_index.upsert_note(make_note("A", "Python tips"), "use generators")
        assert plain_index.upsert_note(make_note("B", "Coffee"), "pour over")
        assert [n.uuid for n in plain_index.search("generators")] == ["A"]
        assert [n.uuid for n in plain_index.search("Coffee")] == ["B"]


class TestIndexErrors:
    """Database failures surface as IndexStoreError."""

    def test_unopenable_database(self):
        with patch(
            "notis_sync.storage.notes_index.init_db",
            side_effect=SQLAlchemyError("unable to open database file"),
        ):
            with pytest.raises(IndexStoreError) as exc_info:
                NotesIndex(db_url="sqlite:///nowhere/index.db")
        assert exc_info.value.code == ErrorCode.DATABASE_CORRUPTED

    def test_clear_failure(self, notes_index):
        factory = MagicMock()
        session = factory.return_value.__enter__.return_value
        session.scalar.side_effect = SQLAlchemyError("database is locked")
        notes_index.session_factory = factory

        with pytest.raises(IndexStoreError) as exc_info:
            notes_index.clear()
        assert exc_info.value.code == ErrorCode.INDEX_WRITE_FAILED
        session.rollback.assert_called_once()
