"""SQLite index over the markdown file store.

The index is a rebuildable cache: every row can be derived from a file, and
a full sync from an empty database reproduces it exactly. Full-text search
uses FTS5 with bm25 ranking and degrades to a LIKE scan if FTS5 fails.
"""
import logging
import re
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from notis_sync.config import config
from notis_sync.exceptions import ErrorCode, IndexStoreError, SearchError
from notis_sync.models.db_models import (
    DBNote,
    DBNoteTag,
    from_db_datetime,
    get_session_factory,
    has_fts5,
    init_db,
    rebuild_fts_index,
    to_db_datetime,
)
from notis_sync.models.schema import (
    FileSignature,
    IndexedSignature,
    NoteMetadata,
    NoteSortField,
)
from notis_sync.observability import traced
from notis_sync.utils import escape_like_pattern

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    NoteSortField.TITLE: DBNote.title,
    NoteSortField.MODIFIED: DBNote.modified,
    NoteSortField.CREATED: DBNote.created,
    NoteSortField.PROGRESS: DBNote.progress,
}


class NotesIndex:
    """Queryable cache over the file store.

    Args:
        db_url: SQLAlchemy URL of the index database. Defaults to the
            configured database (or memory when ``in_memory_db`` is set).
        engine: Pre-configured engine; takes precedence over ``db_url``.
    """

    def __init__(self, db_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            try:
                engine = init_db(db_url or config.get_db_url())
            except SQLAlchemyError as e:
                raise IndexStoreError(
                    "Cannot open the notes index",
                    operation="init",
                    code=ErrorCode.DATABASE_CORRUPTED,
                    original_error=e,
                ) from e
        self.engine = engine
        self.session_factory = get_session_factory(self.engine)
        # SQLite has a single writer; serialize ours so no write waits on a lock
        self._write_lock = threading.RLock()
        self.fts_available: bool = has_fts5(self.engine)
        if not self.fts_available:
            logger.warning("Notes index has no FTS5 table; search falls back to LIKE")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_note(
        self,
        metadata: NoteMetadata,
        body: str = "",
        signature: Optional[FileSignature] = None,
    ) -> bool:
        """Insert or update the row for ``metadata.uuid``.

        The metadata row, tag rows and FTS row change in one transaction.
        A stale row holding the same path under another uuid is evicted in
        that transaction too, so a path is never claimed twice.

        Returns:
            True on success, False if the database write failed.
        """
        with self._write_lock:
            with self.session_factory() as session:
                try:
                    self._sync_note_to_db(session, metadata, body, signature)
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.error(f"Failed to index note {metadata.uuid}: {e}")
                    return False
        return True

    def remove_note(self, uuid: str) -> bool:
        """Delete a row (tags and FTS entry follow). False if it was absent."""
        with self._write_lock:
            with self.session_factory() as session:
                try:
                    db_note = session.get(DBNote, uuid)
                    if db_note is None:
                        return False
                    session.delete(db_note)
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.error(f"Failed to remove note {uuid} from index: {e}")
                    return False
        return True

    def clear(self) -> int:
        """Remove every row. Returns the number of notes removed.

        Raises:
            IndexStoreError: If the rows could not be deleted.
        """
        with self._write_lock:
            with self.session_factory() as session:
                try:
                    count = session.scalar(select(func.count(DBNote.uuid))) or 0
                    session.execute(text("DELETE FROM note_tags"))
                    session.execute(text("DELETE FROM notes"))
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    raise IndexStoreError(
                        "Failed to clear the notes index",
                        operation="clear",
                        original_error=e,
                    ) from e
        logger.info(f"Cleared {count} notes from the index")
        return count

    def _sync_note_to_db(
        self,
        session: Session,
        metadata: NoteMetadata,
        body: str,
        signature: Optional[FileSignature],
    ) -> None:
        """Single write path for a note row. The caller commits."""
        squatter = session.scalar(
            select(DBNote).where(
                DBNote.path == metadata.path, DBNote.uuid != metadata.uuid
            )
        )
        if squatter is not None:
            logger.info(
                f"Evicting index row {squatter.uuid}: path {metadata.path} "
                f"now belongs to {metadata.uuid}"
            )
            session.delete(squatter)
            session.flush()

        db_note = session.get(DBNote, metadata.uuid)
        if db_note is None:
            db_note = DBNote(uuid=metadata.uuid)
            session.add(db_note)

        db_note.path = metadata.path
        db_note.title = metadata.title
        db_note.body = body
        db_note.tags_text = " ".join(metadata.tags)
        db_note.created = to_db_datetime(metadata.created)
        db_note.modified = to_db_datetime(metadata.modified)
        db_note.status = metadata.status.value
        db_note.progress = metadata.progress
        db_note.word_count = metadata.word_count
        db_note.char_count = metadata.char_count
        db_note.content_hash = metadata.content_hash
        db_note.excerpt = metadata.excerpt
        db_note.folder_path = metadata.folder_path
        db_note.filename = metadata.filename
        db_note.file_mtime = signature.mtime if signature else None
        db_note.file_size = signature.size if signature else None

        # Tags: clear + rebuild only when they changed
        if [t.name for t in db_note.tags] != list(metadata.tags):
            db_note.tags.clear()
            session.flush()
            for position, tag in enumerate(metadata.tags):
                db_note.tags.append(
                    DBNoteTag(name=tag, name_key=tag.lower(), position=position)
                )
        session.flush()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_note(self, uuid: str) -> Optional[NoteMetadata]:
        with self.session_factory() as session:
            db_note = session.get(DBNote, uuid)
            return self._db_note_to_model(db_note) if db_note else None

    def get_note_by_path(self, path: str) -> Optional[NoteMetadata]:
        with self.session_factory() as session:
            db_note = session.scalar(select(DBNote).where(DBNote.path == path))
            return self._db_note_to_model(db_note) if db_note else None

    def get_body(self, uuid: str) -> Optional[str]:
        """Indexed copy of a note's body."""
        with self.session_factory() as session:
            return session.scalar(select(DBNote.body).where(DBNote.uuid == uuid))

    def get_total_count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBNote.uuid))) or 0

    def get_all_notes(
        self,
        sort_by: NoteSortField = NoteSortField.MODIFIED,
        ascending: bool = False,
    ) -> List[NoteMetadata]:
        """Every indexed note, sorted by one of the NoteSortField columns."""
        column = _SORT_COLUMNS[NoteSortField(sort_by)]
        order = column.asc() if ascending else column.desc()
        query = select(DBNote).options(selectinload(DBNote.tags)).order_by(
            order, DBNote.uuid
        )
        return self._fetch(query)

    def get_recently_modified(self, limit: int = 20) -> List[NoteMetadata]:
        if limit <= 0:
            return []
        query = (
            select(DBNote)
            .options(selectinload(DBNote.tags))
            .order_by(DBNote.modified.desc(), DBNote.uuid)
            .limit(limit)
        )
        return self._fetch(query)

    def get_notes_by_tag(self, tag: str) -> List[NoteMetadata]:
        """Notes carrying ``tag``, matched case-insensitively."""
        key = tag.strip().lower()
        if not key:
            return []
        query = (
            select(DBNote)
            .join(DBNoteTag, DBNoteTag.note_uuid == DBNote.uuid)
            .where(DBNoteTag.name_key == key)
            .options(selectinload(DBNote.tags))
            .order_by(DBNote.modified.desc(), DBNote.uuid)
        )
        return self._fetch(query)

    def get_notes_in_folder(
        self, folder_path: str, recursive: bool = False
    ) -> List[NoteMetadata]:
        """Notes directly in ``folder_path`` ("" is the root), or below it."""
        folder = folder_path.strip("/")
        query = select(DBNote).options(selectinload(DBNote.tags))
        if recursive and folder:
            prefix = escape_like_pattern(folder) + "/%"
            query = query.where(
                (DBNote.folder_path == folder)
                | DBNote.folder_path.like(prefix, escape="\\")
            )
        elif not recursive:
            query = query.where(DBNote.folder_path == folder)
        query = query.order_by(DBNote.title, DBNote.uuid)
        return self._fetch(query)

    def get_all_tags(self) -> List[str]:
        """Distinct tags over live rows; case variants collapse to one spelling."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNoteTag.name, DBNoteTag.name_key).order_by(
                    DBNoteTag.name_key, DBNoteTag.name
                )
            ).all()
        tags: Dict[str, str] = {}
        for name, key in rows:
            tags.setdefault(key, name)
        return list(tags.values())

    def get_all_folders(self) -> List[str]:
        """Distinct non-root folders holding at least one indexed note."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote.folder_path)
                .where(DBNote.folder_path != "")
                .distinct()
                .order_by(DBNote.folder_path)
            ).all()
        return [row[0] for row in rows]

    def get_signatures(self) -> Dict[str, IndexedSignature]:
        """What sync needs to diff the index against the file tree, by uuid."""
        with self.session_factory() as session:
            rows = session.execute(
                select(
                    DBNote.uuid,
                    DBNote.path,
                    DBNote.file_mtime,
                    DBNote.file_size,
                    DBNote.content_hash,
                    DBNote.modified,
                )
            ).all()
        return {
            row.uuid: IndexedSignature(
                uuid=row.uuid,
                path=row.path,
                mtime=row.file_mtime,
                size=row.file_size,
                content_hash=row.content_hash,
                modified=from_db_datetime(row.modified),
            )
            for row in rows
        }

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    @traced("search")
    def search(self, query: str, limit: int = 50) -> List[NoteMetadata]:
        """Full-text search over title, body and tags, best match first.

        Plain queries are matched as a phrase; queries using FTS5 syntax
        (AND/OR/NOT/NEAR, quotes, prefix ``*``, column filters) pass through.

        Raises:
            SearchError: If both FTS5 and the fallback search fail.
        """
        query = query.strip()
        if not query or limit <= 0:
            return []

        if not self.fts_available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(query, limit)

        if self._should_escape(query):
            safe_query = self._escape_query(query)
        else:
            safe_query = query

        sql = text("""
            SELECT notes.uuid
            FROM notes_fts
            JOIN notes ON notes.rowid = notes_fts.rowid
            WHERE notes_fts MATCH :query
            ORDER BY bm25(notes_fts)
            LIMIT :limit
        """)

        try:
            with self.session_factory() as session:
                uuids = [
                    row[0]
                    for row in session.execute(
                        sql, {"query": safe_query, "limit": limit}
                    ).fetchall()
                ]
        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            logger.warning(
                f"FTS5 query failed for '{query}': {e}. Using fallback search."
            )
            return self._fallback_text_search(query, limit)
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            error_msg = str(e).lower()
            if "malformed" in error_msg or "corrupt" in error_msg:
                logger.error(f"FTS5 corruption detected: {e}. Attempting rebuild...")
                if self._attempt_recovery():
                    return self.search(query, limit)
                logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                self.fts_available = False
            else:
                logger.error(f"FTS5 database error: {e}. Using fallback search.")
            return self._fallback_text_search(query, limit)

        return self._fetch_ordered(uuids)

    def rebuild_fts(self) -> int:
        """Rebuild the FTS5 table from the notes table."""
        with self._write_lock:
            count = rebuild_fts_index(self.engine)
        self.fts_available = True
        logger.info(f"FTS5 index rebuilt with {count} notes")
        return count

    @staticmethod
    def _should_escape(query: str) -> bool:
        """Auto-detect whether a query needs FTS5 escaping."""
        fts5_keywords = {"AND", "OR", "NOT", "NEAR"}
        words = query.split()
        if any(word in fts5_keywords for word in words):
            return False
        if query.count('"') >= 2:
            return False
        if re.search(r"\b\w+\*", query):
            return False
        if re.search(r"\b(title|body|tags_text):", query):
            return False
        return True

    @staticmethod
    def _escape_query(query: str) -> str:
        """Escape query for FTS5 literal matching (quoted phrase)."""
        result = query.replace('"', '""')
        result = re.sub(r"[*^]", "", result)
        return f'"{result}"'

    def _fallback_text_search(self, query: str, limit: int) -> List[NoteMetadata]:
        """LIKE-based fallback when FTS5 is unavailable."""
        # Drop FTS5 quoting so the literal text is matched
        literal = query.replace('"', "").strip() or query
        term = f"%{escape_like_pattern(literal)}%"
        try:
            with self.session_factory() as session:
                rows = session.execute(
                    text("""
                        SELECT uuid,
                               CASE WHEN title LIKE :term ESCAPE '\\' THEN 0 ELSE 1 END
                                   AS title_rank
                        FROM notes
                        WHERE title LIKE :term ESCAPE '\\'
                           OR body LIKE :term ESCAPE '\\'
                           OR tags_text LIKE :term ESCAPE '\\'
                        ORDER BY title_rank, modified DESC
                        LIMIT :limit
                    """),
                    {"term": term, "limit": limit},
                ).fetchall()
        except SQLAlchemyError as e:
            raise SearchError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e
        logger.debug(f"Fallback search returned {len(rows)} results for '{query}'")
        return self._fetch_ordered([row[0] for row in rows])

    def _attempt_recovery(self) -> bool:
        try:
            self.rebuild_fts()
            return True
        except SQLAlchemyError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def check_health(self) -> Dict[str, Any]:
        """Check SQLite and FTS5 integrity.

        Returns:
            Dict with keys ``healthy``, ``sqlite_ok``, ``fts_ok``,
            ``note_count`` and ``issues``.
        """
        issues: List[str] = []
        sqlite_ok = False
        fts_ok = False
        note_count = 0
        try:
            with self.session_factory() as session:
                result = session.execute(text("PRAGMA integrity_check")).fetchone()
                sqlite_ok = result[0] == "ok"
                if not sqlite_ok:
                    issues.append(f"SQLite integrity check failed: {result[0]}")
                note_count = session.scalar(select(func.count(DBNote.uuid))) or 0
                try:
                    session.execute(
                        text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                    )
                    fts_ok = True
                except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                    issues.append(f"FTS5 integrity check failed: {e}")
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            issues.append(f"Database access error: {e}")

        return {
            "healthy": sqlite_ok and fts_ok,
            "sqlite_ok": sqlite_ok,
            "fts_ok": fts_ok,
            "note_count": note_count,
            "issues": issues,
        }

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _fetch(self, query: Any) -> List[NoteMetadata]:
        with self.session_factory() as session:
            db_notes = session.execute(query).unique().scalars().all()
            return [self._db_note_to_model(db_note) for db_note in db_notes]

    def _fetch_ordered(self, uuids: List[str]) -> List[NoteMetadata]:
        """Load rows for ``uuids`` preserving the given order."""
        if not uuids:
            return []
        with self.session_factory() as session:
            db_notes = session.execute(
                select(DBNote)
                .where(DBNote.uuid.in_(uuids))
                .options(selectinload(DBNote.tags))
            ).scalars().all()
            by_uuid = {n.uuid: self._db_note_to_model(n) for n in db_notes}
        return [by_uuid[u] for u in uuids if u in by_uuid]

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> NoteMetadata:
        """Convert a DBNote row to NoteMetadata without touching the file."""
        return NoteMetadata(
            uuid=db_note.uuid,
            title=db_note.title,
            path=db_note.path,
            tags=[tag.name for tag in db_note.tags],
            excerpt=db_note.excerpt or "",
            word_count=db_note.word_count or 0,
            char_count=db_note.char_count or 0,
            content_hash=db_note.content_hash or "",
            created=from_db_datetime(db_note.created),
            modified=from_db_datetime(db_note.modified),
            status=db_note.status,
            progress=db_note.progress,
        )
