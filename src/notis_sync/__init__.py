"""
Notis sync - file-based note storage, full-text index and sync engine.

Notes are stored as markdown files with YAML frontmatter, mirrored into a
SQLite FTS5 index, and reconciled against the legacy object-graph store
that predates file storage.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notis-sync")
except PackageNotFoundError:
    __version__ = "0.3.0"
