"""Legacy object-graph records ("sheets") and the store interface.

The legacy store is consumed, not owned: the engine reads sheets, and during
sync may add or update them, but committing (``save``) is always left to the
caller.
"""
import datetime
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from notis_sync.models.schema import parse_timestamp
from notis_sync.utils import DEFAULT_TITLE, sanitize_filename


@dataclass
class LegacyGroup:
    """A folder in the legacy store; groups nest through ``parent``."""

    name: Optional[str]
    parent: Optional["LegacyGroup"] = None

    def chain(self) -> List["LegacyGroup"]:
        """Groups from the root down to this one."""
        groups: List[LegacyGroup] = []
        current: Optional[LegacyGroup] = self
        while current is not None:
            groups.insert(0, current)
            current = current.parent
        return groups

    def folder_path(self) -> str:
        """Filesystem folder for this group, e.g. ``"Work/Projects"``.

        Unnamed groups are skipped; names are sanitized like filenames.
        """
        names = [
            sanitize_filename(g.name.strip())
            for g in self.chain()
            if g.name and g.name.strip()
        ]
        return "/".join(names)


@dataclass
class LegacyAnnotation:
    """Margin annotation attached to a span of a sheet."""

    annotated_text: str = ""
    content: str = ""
    position: int = 0


@dataclass
class LegacyNote:
    """Short side note attached to a sheet."""

    content: str = ""
    sort_order: int = 0


@dataclass
class LegacySheet:
    """A note as stored by the legacy object graph.

    Relationship fields may be missing or hold unexpected values in old
    stores; read them through the ``get_*`` accessors, which always return a
    list.
    """

    id: str
    title: Optional[str] = None
    content: str = ""
    group: Optional[LegacyGroup] = None
    created_at: Optional[datetime.datetime] = None
    modified_at: Optional[datetime.datetime] = None
    is_favorite: bool = False
    is_in_trash: bool = False
    word_count: int = 0
    tags: Optional[List[str]] = None
    annotations: Optional[List[LegacyAnnotation]] = None
    notes: Optional[List[LegacyNote]] = None

    @property
    def display_title(self) -> str:
        title = (self.title or "").strip()
        return title or DEFAULT_TITLE

    def folder_path(self) -> str:
        return self.group.folder_path() if self.group else ""

    def get_tags(self) -> List[str]:
        if not isinstance(self.tags, (list, tuple)):
            return []
        return [str(t) for t in self.tags if isinstance(t, str) and t.strip()]

    def get_annotations(self) -> List[LegacyAnnotation]:
        if not isinstance(self.annotations, (list, tuple)):
            return []
        return sorted(
            (a for a in self.annotations if isinstance(a, LegacyAnnotation)),
            key=lambda a: a.position,
        )

    def get_notes(self) -> List[LegacyNote]:
        if not isinstance(self.notes, (list, tuple)):
            return []
        return sorted(
            (n for n in self.notes if isinstance(n, LegacyNote)),
            key=lambda n: n.sort_order,
        )


def sheet_to_dict(sheet: LegacySheet) -> Dict[str, Any]:
    """JSON-ready export of a sheet (also the migration backup format)."""
    return {
        "id": sheet.id,
        "title": sheet.title or "",
        "content": sheet.content or "",
        "createdAt": sheet.created_at.isoformat() if sheet.created_at else None,
        "modifiedAt": sheet.modified_at.isoformat() if sheet.modified_at else None,
        "groupName": sheet.group.name if sheet.group and sheet.group.name else "",
        "groupPath": sheet.folder_path(),
        "wordCount": sheet.word_count,
        "isFavorite": sheet.is_favorite,
        "isInTrash": sheet.is_in_trash,
        "tags": sheet.get_tags(),
        "annotations": [
            {
                "annotatedText": a.annotated_text,
                "content": a.content,
                "position": a.position,
            }
            for a in sheet.get_annotations()
        ],
        "notes": [
            {"content": n.content, "sortOrder": n.sort_order}
            for n in sheet.get_notes()
        ],
    }


def group_from_path(folder_path: str) -> Optional[LegacyGroup]:
    """Build a group chain from ``"Parent/Child"``; None for the root."""
    group: Optional[LegacyGroup] = None
    for name in folder_path.split("/"):
        if name.strip():
            group = LegacyGroup(name=name.strip(), parent=group)
    return group


def sheet_from_dict(data: Dict[str, Any]) -> LegacySheet:
    """Inverse of :func:`sheet_to_dict`; tolerant of older exports."""
    folder = data.get("groupPath") or data.get("groupName") or ""
    return LegacySheet(
        id=str(data["id"]),
        title=data.get("title"),
        content=data.get("content") or "",
        group=group_from_path(str(folder)),
        created_at=parse_timestamp(data.get("createdAt")),
        modified_at=parse_timestamp(data.get("modifiedAt")),
        is_favorite=bool(data.get("isFavorite", False)),
        is_in_trash=bool(data.get("isInTrash", False)),
        word_count=int(data.get("wordCount") or 0),
        tags=data.get("tags"),
        annotations=[
            LegacyAnnotation(
                annotated_text=a.get("annotatedText", ""),
                content=a.get("content", ""),
                position=int(a.get("position", 0)),
            )
            for a in data.get("annotations") or []
            if isinstance(a, dict)
        ],
        notes=[
            LegacyNote(content=n.get("content", ""), sort_order=int(n.get("sortOrder", 0)))
            for n in data.get("notes") or []
            if isinstance(n, dict)
        ],
    )


class LegacyStore(ABC):
    """Read/write access to the legacy object graph."""

    @abstractmethod
    def fetch_sheets(self, include_trashed: bool = False) -> List[LegacySheet]:
        """All sheets, most recently modified first."""

    @abstractmethod
    def get_sheet(self, sheet_id: str) -> Optional[LegacySheet]:
        """A sheet by id, or None."""

    @abstractmethod
    def add_sheet(self, sheet: LegacySheet) -> None:
        """Insert a new sheet (uncommitted until ``save``)."""

    @abstractmethod
    def update_sheet(self, sheet: LegacySheet) -> None:
        """Replace the stored sheet with the same id (uncommitted until ``save``)."""

    def find_or_create_group(self, folder_path: str) -> Optional[LegacyGroup]:
        """Group for a folder path; None for the notes root."""
        return group_from_path(folder_path)

    @abstractmethod
    def save(self) -> None:
        """Commit pending changes. Called by the application, never the engine."""
