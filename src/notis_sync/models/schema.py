"""Data models for the Notis storage and sync engine."""

import datetime
import logging
import uuid as uuid_module
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from notis_sync.utils import (
    DEFAULT_TITLE,
    content_hash,
    count_words,
    make_excerpt,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse a frontmatter or database timestamp.

    YAML hands back ``datetime`` objects for unquoted ISO timestamps and
    strings for quoted ones; both are accepted. Unparseable values give None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, datetime.date):
        return datetime.datetime(
            value.year, value.month, value.day, tzinfo=timezone.utc
        )
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_timezone_aware(datetime.datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"Unparseable timestamp '{value}', ignoring")
        return None


def generate_uuid() -> str:
    """Generate a new note uuid."""
    return str(uuid_module.uuid4()).upper()


class NoteStatus(str, Enum):
    """Workflow status of a note."""

    NORMAL = "normal"
    DRAFT = "draft"
    FAVORITE = "favorite"
    TRASHED = "trashed"


class NoteSortField(str, Enum):
    """Columns the index can sort note listings by."""

    TITLE = "title"
    MODIFIED = "modified"
    CREATED = "created"
    PROGRESS = "progress"


class NoteMetadata(BaseModel):
    """Canonical descriptor of a note, independent of where it is stored."""

    uuid: str = Field(default_factory=generate_uuid, description="Stable note id")
    title: str = Field(default=DEFAULT_TITLE, description="Display title")
    path: str = Field(
        default="",
        description="Location relative to the notes root (folder + filename)",
    )
    tags: List[str] = Field(default_factory=list, description="Case-preserved tags")
    excerpt: str = Field(default="", description="Preview of the body")
    word_count: int = Field(default=0)
    char_count: int = Field(default=0)
    content_hash: str = Field(default="", description="SHA-256 of the body")
    created: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    modified: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last modified (UTC)"
    )
    status: NoteStatus = Field(default=NoteStatus.NORMAL)
    progress: float = Field(default=0.0, description="Writing progress, 0.0-1.0")
    extra: Dict[str, Any] = Field(
        default_factory=dict, description="Unknown frontmatter keys, kept verbatim"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("uuid")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        """Validate that the uuid is usable as a key."""
        v = str(v).strip()
        if not v:
            raise ValueError("uuid cannot be empty")
        if "/" in v or "\\" in v:
            raise ValueError("uuid cannot contain path separators")
        return v

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> str:
        """Fall back to the default title when blank."""
        if v is None:
            return DEFAULT_TITLE
        v = str(v).strip()
        return v or DEFAULT_TITLE

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> List[str]:
        """Strip tags and collapse case-insensitive duplicates.

        The first spelling seen wins.
        """
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        tags: List[str] = []
        seen = set()
        for raw in v:
            if raw is None:
                continue
            tag = str(raw).strip()
            if not tag or tag.lower() in seen:
                continue
            seen.add(tag.lower())
            tags.append(tag)
        return tags

    @field_validator("created", "modified", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> datetime.datetime:
        parsed = parse_timestamp(v)
        return parsed if parsed is not None else utc_now()

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> NoteStatus:
        """Map unknown statuses to NORMAL instead of rejecting the note."""
        if isinstance(v, NoteStatus):
            return v
        if v is None or v == "":
            return NoteStatus.NORMAL
        try:
            return NoteStatus(str(v).strip().lower())
        except ValueError:
            logger.warning(f"Unknown note status '{v}', defaulting to normal")
            return NoteStatus.NORMAL

    @field_validator("progress", mode="before")
    @classmethod
    def validate_progress(cls, v: Any) -> float:
        """Clamp progress into 0.0-1.0."""
        if v is None or v == "":
            return 0.0
        try:
            value = float(v)
        except (TypeError, ValueError):
            logger.warning(f"Invalid progress value '{v}', defaulting to 0.0")
            return 0.0
        if value != value:  # NaN
            return 0.0
        return min(max(value, 0.0), 1.0)

    @property
    def folder_path(self) -> str:
        """Folder part of ``path``, empty for notes at the root."""
        parent = PurePosixPath(self.path).parent.as_posix()
        return "" if parent == "." else parent

    @property
    def filename(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def is_favorite(self) -> bool:
        return self.status == NoteStatus.FAVORITE

    def with_body(self, body: str, excerpt_length: int = 200) -> "NoteMetadata":
        """Return a copy whose derived fields describe ``body``."""
        return self.model_copy(
            update={
                "excerpt": make_excerpt(body, excerpt_length),
                "word_count": count_words(body),
                "char_count": len(body),
                "content_hash": content_hash(body),
            }
        )


@dataclass(frozen=True)
class FileSignature:
    """Cheap change detector for a file: modification time and size."""

    mtime: float
    size: int


@dataclass(frozen=True)
class IndexedSignature:
    """What the index remembers about a note's backing file."""

    uuid: str
    path: str
    mtime: Optional[float]
    size: Optional[int]
    content_hash: str
    modified: datetime.datetime

    def matches(self, signature: FileSignature) -> bool:
        return self.mtime == signature.mtime and self.size == signature.size


@dataclass
class CreateFileResult:
    """Outcome of a file store write.

    Attributes:
        success: False when the write failed on a filesystem error.
        metadata: Metadata of the written note, None on failure.
        file_path: Absolute path of the written file, None on failure.
        error: Description of the failure, if any.
    """

    success: bool
    metadata: Optional[NoteMetadata] = None
    file_path: Optional[Path] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SyncStats:
    """Aggregate counts of a sync pass.

    Attributes:
        files_scanned: Files enumerated in the notes tree.
        files_added: Files created from legacy records.
        files_updated: Files rewritten from legacy content.
        index_entries_added: Rows inserted into the index.
        index_entries_updated: Rows rewritten in the index.
        index_entries_deleted: Rows removed because the file is gone.
        legacy_records_updated: Legacy records changed by the pass.
        conflicts: Notes changed on both sides since the last sync.
        errors: Items that failed and were skipped.
    """

    files_scanned: int = 0
    files_added: int = 0
    files_updated: int = 0
    index_entries_added: int = 0
    index_entries_updated: int = 0
    index_entries_deleted: int = 0
    legacy_records_updated: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def total_changes(self) -> int:
        """Sum of the mutation counters (conflicts and errors excluded)."""
        return (
            self.files_added
            + self.files_updated
            + self.index_entries_added
            + self.index_entries_updated
            + self.index_entries_deleted
            + self.legacy_records_updated
        )

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "files_scanned": self.files_scanned,
            "files_added": self.files_added,
            "files_updated": self.files_updated,
            "index_entries_added": self.index_entries_added,
            "index_entries_updated": self.index_entries_updated,
            "index_entries_deleted": self.index_entries_deleted,
            "legacy_records_updated": self.legacy_records_updated,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "total_changes": self.total_changes,
        }


@dataclass(frozen=True)
class MigrationStats:
    """Progress snapshot of a migration run."""

    total_sheets: int = 0
    migrated_sheets: int = 0
    skipped_sheets: int = 0
    failed_sheets: int = 0
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def processed_sheets(self) -> int:
        return self.migrated_sheets + self.skipped_sheets + self.failed_sheets

    @property
    def progress(self) -> float:
        """Fraction of sheets processed; an empty source counts as done."""
        if self.total_sheets == 0:
            return 1.0
        return self.processed_sheets / self.total_sheets


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of a migration run.

    Attributes:
        success: True when no sheet failed.
        stats: Final counts.
        backup_path: Where the pre-migration backup was written, if any.
    """

    success: bool
    stats: MigrationStats
    backup_path: Optional[Path] = None
