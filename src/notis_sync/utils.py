"""Utility functions for the Notis storage layer."""
import hashlib
from typing import List

# Characters that are unsafe in filenames on at least one supported platform
_UNSAFE_FILENAME_CHARS = ':/\\?%*|"<>'

_FILENAME_TABLE = str.maketrans({c: "-" for c in _UNSAFE_FILENAME_CHARS})

DEFAULT_TITLE = "Untitled"


def sanitize_filename(title: str) -> str:
    """Turn a note title into a filename stem.

    Unsafe characters are replaced with hyphens, and leading or trailing
    whitespace and dots are trimmed so the result is never hidden and never
    ends in a dot.

    Examples:
        "Meeting: Q1/Q2" -> "Meeting- Q1-Q2"
        "  ..draft.  " -> "draft"
        "???" -> "---"
        "" -> "Untitled"

    Args:
        title: The note title.

    Returns:
        A non-empty filename stem without extension.
    """
    if not title:
        return DEFAULT_TITLE
    result = title.translate(_FILENAME_TABLE)
    # Newlines and tabs have no business in a filename
    result = " ".join(result.split())
    result = result.strip(" .")
    return result or DEFAULT_TITLE


def clean_folder_path(folder_path: str) -> str:
    """Normalize a relative folder path.

    Each segment is sanitized like a filename; empty, ``.`` and ``..``
    segments are dropped so the result always stays under the notes root.

    Args:
        folder_path: A ``/``-separated folder path, possibly empty.

    Returns:
        The normalized path, or an empty string for the root.
    """
    if not folder_path:
        return ""
    segments: List[str] = []
    for raw in folder_path.replace("\\", "/").split("/"):
        raw = raw.strip()
        if not raw or raw in (".", ".."):
            continue
        segment = sanitize_filename(raw)
        segments.append(segment)
    return "/".join(segments)


def count_words(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


def make_excerpt(body: str, length: int = 200) -> str:
    """Build a preview from the first ``length`` characters of the body."""
    stripped = body.strip()
    if len(stripped) <= length:
        return stripped
    return stripped[:length] + "..."


def content_hash(body: str) -> str:
    """SHA-256 hex digest of a note body."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
