"""Conversion between legacy sheets and file-store notes."""
from typing import TYPE_CHECKING, List

from notis_sync.legacy.base import LegacySheet
from notis_sync.models.schema import (
    CreateFileResult,
    NoteMetadata,
    NoteStatus,
    utc_now,
)

if TYPE_CHECKING:
    from notis_sync.storage.file_store import MarkdownFileStore


def metadata_from_sheet(sheet: LegacySheet) -> NoteMetadata:
    """Metadata for the file created from ``sheet``.

    The sheet id becomes the note uuid so the two stay linked. Favorites
    keep their status; everything else starts as a draft.
    """
    created = sheet.created_at or utc_now()
    return NoteMetadata(
        uuid=sheet.id,
        title=sheet.display_title,
        tags=sheet.get_tags(),
        created=created,
        modified=sheet.modified_at or created,
        status=NoteStatus.FAVORITE if sheet.is_favorite else NoteStatus.DRAFT,
    )


def content_from_sheet(sheet: LegacySheet) -> str:
    """Body for the file created from ``sheet``.

    Annotations and side notes have no home in a plain markdown file, so they
    are appended as ``## Annotations`` and ``## Notes`` sections.
    """
    parts: List[str] = [sheet.content or ""]

    annotations = sheet.get_annotations()
    if annotations:
        parts.append("\n\n---\n\n## Annotations\n\n")
        for annotation in annotations:
            if annotation.annotated_text:
                parts.append(f"### {annotation.annotated_text}\n\n")
            if annotation.content:
                parts.append(f"{annotation.content}\n\n")

    notes = [n for n in sheet.get_notes() if n.content]
    if notes:
        parts.append("\n\n---\n\n## Notes\n\n")
        for note in notes:
            parts.append(f"- {note.content}\n")

    return "".join(parts)


def write_sheet(file_store: "MarkdownFileStore", sheet: LegacySheet) -> CreateFileResult:
    """Create the markdown file for ``sheet`` in its group's folder.

    A sheet whose id cannot be a note uuid yields a failed result.
    """
    try:
        metadata = metadata_from_sheet(sheet)
    except ValueError as e:
        return CreateFileResult(success=False, error=f"Invalid legacy record {sheet.id!r}: {e}")
    return file_store.create_file(
        title=metadata.title,
        content=content_from_sheet(sheet),
        folder_path=sheet.folder_path(),
        tags=metadata.tags,
        metadata=metadata,
    )
