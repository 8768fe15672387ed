"""Storage layer for the Notis sync engine."""

from notis_sync.storage.file_store import MarkdownFileStore
from notis_sync.storage.markdown_parser import MarkdownParser
from notis_sync.storage.notes_index import NotesIndex

__all__ = [
    "MarkdownFileStore",
    "MarkdownParser",
    "NotesIndex",
]
