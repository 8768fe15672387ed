"""SQLAlchemy database models for the notes index."""
import datetime
import logging
from typing import Optional

from sqlalchemy import (Column, DateTime, Float, ForeignKey, Integer, String,
                        Text, create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notis_sync.models.schema import NoteStatus

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNote(Base):
    """Index row for a note.

    ``body`` and ``tags_text`` exist only to feed the FTS table; ``file_mtime``
    and ``file_size`` are the file signature observed when the row was written.
    """
    __tablename__ = "notes"
    uuid = Column(String(64), primary_key=True)
    path = Column(String(1024), unique=True, nullable=False)
    title = Column(String(512), nullable=False, index=True)
    body = Column(Text, nullable=False, default="")
    tags_text = Column(Text, nullable=False, default="")
    created = Column(DateTime, nullable=False)
    modified = Column(DateTime, nullable=False, index=True)
    status = Column(String(32), default=NoteStatus.NORMAL.value, nullable=False, index=True)
    progress = Column(Float, default=0.0, nullable=False)
    word_count = Column(Integer, default=0, nullable=False)
    char_count = Column(Integer, default=0, nullable=False)
    content_hash = Column(String(64), default="", nullable=False)
    excerpt = Column(Text, default="", nullable=False)
    folder_path = Column(String(1024), default="", nullable=False, index=True)
    filename = Column(String(512), default="", nullable=False)
    file_mtime = Column(Float, nullable=True)
    file_size = Column(Integer, nullable=True)

    tags = relationship(
        "DBNoteTag",
        back_populates="note",
        cascade="all, delete-orphan",
        order_by="DBNoteTag.position",
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(uuid='{self.uuid}', path='{self.path}')>"


class DBNoteTag(Base):
    """One tag of one note, in frontmatter order."""
    __tablename__ = "note_tags"
    note_uuid = Column(
        String(64), ForeignKey("notes.uuid", ondelete="CASCADE"), primary_key=True
    )
    name = Column(String(255), primary_key=True)
    # Lowercased copy for case-insensitive lookups
    name_key = Column(String(255), nullable=False, index=True)
    position = Column(Integer, default=0, nullable=False)

    note = relationship("DBNote", back_populates="tags")

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<NoteTag(note='{self.note_uuid}', name='{self.name}')>"


def init_db(db_url: str) -> Engine:
    """Create the index engine and schema.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - foreign keys so tag rows follow their note

    An in-memory URL gets a single shared connection so every session sees
    the same database. A SQLite build without FTS5 still gets the plain
    tables; callers check ``has_fts5`` and search with LIKE instead.
    """
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA cache_size=-16000")  # 16MB cache
        cursor.close()

    Base.metadata.create_all(engine)
    try:
        init_fts5(engine)
    except OperationalError as e:
        logger.warning(f"FTS5 unavailable, full-text search disabled: {e}")
    return engine


def init_fts5(engine: Engine) -> None:
    """Initialize the FTS5 table over title, body and tags.

    ``notes_fts`` is an external content table backed by ``notes``; the
    triggers below keep it in step inside the writing transaction.
    """
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                uuid UNINDEXED,
                title,
                body,
                tags_text,
                content='notes',
                content_rowid='rowid'
            )
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, uuid, title, body, tags_text)
                VALUES (NEW.rowid, NEW.uuid, NEW.title, NEW.body, NEW.tags_text);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, uuid, title, body, tags_text)
                VALUES ('delete', OLD.rowid, OLD.uuid, OLD.title, OLD.body, OLD.tags_text);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, uuid, title, body, tags_text)
                VALUES ('delete', OLD.rowid, OLD.uuid, OLD.title, OLD.body, OLD.tags_text);
                INSERT INTO notes_fts(rowid, uuid, title, body, tags_text)
                VALUES (NEW.rowid, NEW.uuid, NEW.title, NEW.body, NEW.tags_text);
            END
        """))

        conn.commit()


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild the FTS5 index from the notes table.

    Returns:
        Number of notes indexed.
    """
    with engine.connect() as conn:
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
        conn.commit()
        count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar()
    return count or 0


def has_fts5(engine: Engine) -> bool:
    """Whether the FTS table exists in this database."""
    with engine.connect() as conn:
        row = conn.execute(text(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name = 'notes_fts'"
        )).first()
    return row is not None


def to_db_datetime(value: datetime.datetime) -> datetime.datetime:
    """Normalize to naive UTC, the form SQLite DateTime columns store."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def from_db_datetime(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=datetime.timezone.utc)


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
