"""Adapter for the legacy object-graph note store."""

from notis_sync.legacy.base import (
    LegacyAnnotation,
    LegacyGroup,
    LegacyNote,
    LegacySheet,
    LegacyStore,
)
from notis_sync.legacy.json_store import JsonLegacyStore
from notis_sync.legacy.memory_store import InMemoryLegacyStore

__all__ = [
    "LegacyAnnotation",
    "LegacyGroup",
    "LegacyNote",
    "LegacySheet",
    "LegacyStore",
    "InMemoryLegacyStore",
    "JsonLegacyStore",
]
