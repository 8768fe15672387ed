"""Markdown parsing and serialization for Notis notes.

Handles conversion between NoteMetadata + body and markdown files with
YAML frontmatter. Kept separate from the file store so the format is
independently testable.
"""
import datetime
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import frontmatter

from notis_sync.models.schema import NoteMetadata, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Frontmatter keys owned by NoteMetadata; everything else is kept in ``extra``
MANAGED_KEYS = (
    "uuid",
    "title",
    "tags",
    "created",
    "modified",
    "status",
    "progress",
    "word_count",
    "char_count",
    "content_hash",
)

# Written by older builds, never read back
LEGACY_KEYS = ("path", "excerpt")


class ParsedNote(NamedTuple):
    """A parsed note file.

    ``stored_hash`` is the ``content_hash`` found in the frontmatter, which
    differs from ``metadata.content_hash`` when the body was edited outside
    the app.
    """

    metadata: NoteMetadata
    body: str
    stored_hash: Optional[str]


def normalize_body(body: str) -> str:
    """The body as it reads back from disk (surrounding whitespace dropped)."""
    return body.strip()


def split_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split YAML frontmatter from body text.

    Returns ``(metadata, body)``; ``metadata`` is empty when there is no
    frontmatter block or the block is not a mapping.

    Raises:
        yaml.YAMLError: If the block is not valid YAML.
    """
    post = frontmatter.loads(content)
    return dict(post.metadata), post.content


class MarkdownParser:
    """Parses and serializes notes as markdown with YAML frontmatter."""

    def __init__(self, excerpt_length: int = 200):
        self.excerpt_length = excerpt_length

    def parse_note(
        self,
        content: str,
        path: str = "",
        fallback_time: Optional[datetime.datetime] = None,
    ) -> ParsedNote:
        """Parse a note from markdown content with YAML frontmatter.

        Args:
            content: Raw markdown string with ``---`` frontmatter delimiters.
            path: Location of the file relative to the notes root.
            fallback_time: Used for missing ``created``/``modified`` values,
                normally the file's mtime.

        Returns:
            The parsed note with derived fields computed from the body.

        Raises:
            ValueError: If the frontmatter has no uuid.
            yaml.YAMLError: If the frontmatter is not valid YAML.
        """
        metadata, raw_body = split_frontmatter(content)

        note_uuid = metadata.get("uuid")
        if note_uuid is None or not str(note_uuid).strip():
            raise ValueError("Note uuid missing from frontmatter")

        fallback = fallback_time or utc_now()
        created = parse_timestamp(metadata.get("created")) or fallback
        modified = parse_timestamp(metadata.get("modified")) or created

        stored_hash = metadata.get("content_hash")
        body = normalize_body(raw_body)

        note = NoteMetadata(
            uuid=str(note_uuid),
            title=metadata.get("title"),
            path=path,
            tags=self._parse_tags(metadata.get("tags")),
            created=created,
            modified=modified,
            status=metadata.get("status"),
            progress=metadata.get("progress"),
            extra={
                k: v
                for k, v in metadata.items()
                if k not in MANAGED_KEYS and k not in LEGACY_KEYS
            },
        ).with_body(body, self.excerpt_length)

        return ParsedNote(
            metadata=note,
            body=body,
            stored_hash=str(stored_hash) if stored_hash else None,
        )

    def render_to_markdown(self, metadata: NoteMetadata, body: str) -> str:
        """Convert metadata and body to markdown with frontmatter.

        The derived fields are recomputed from ``body`` so the file never
        carries a stale hash. ``path`` is not written; it is implied by the
        file's location.
        """
        body = normalize_body(body)
        metadata = metadata.with_body(body, self.excerpt_length)
        fields: Dict[str, Any] = {
            "uuid": metadata.uuid,
            "title": metadata.title,
            "tags": list(metadata.tags),
            "created": metadata.created.isoformat(),
            "modified": metadata.modified.isoformat(),
            "status": metadata.status.value,
            "progress": metadata.progress,
            "word_count": metadata.word_count,
            "char_count": metadata.char_count,
            "content_hash": metadata.content_hash,
        }
        for key, value in metadata.extra.items():
            if key not in fields:
                fields[key] = value

        post = frontmatter.Post(body)
        post.metadata.update(fields)
        return frontmatter.dumps(post, sort_keys=False) + "\n"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_tags(raw: Any) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            return [t.strip() for t in raw.split(",") if t.strip()]
        if isinstance(raw, (list, tuple, set)):
            return [str(t).strip() for t in raw if t is not None and str(t).strip()]
        logger.warning(f"Ignoring tags of unexpected type {type(raw).__name__}")
        return []
