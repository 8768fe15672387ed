"""In-memory legacy store, also the base of the JSON-file store."""
import copy
import datetime
import logging
import threading
from typing import Dict, Iterable, List, Optional

from notis_sync.legacy.base import LegacyGroup, LegacySheet, LegacyStore
from notis_sync.models.schema import ensure_timezone_aware

logger = logging.getLogger(__name__)

_EPOCH = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)


def _modified_key(sheet: LegacySheet) -> datetime.datetime:
    if sheet.modified_at is None:
        return _EPOCH
    return ensure_timezone_aware(sheet.modified_at)


class InMemoryLegacyStore(LegacyStore):
    """Holds sheets in a dict keyed by id.

    Sheets are copied on the way in and out so callers never mutate stored
    state behind the store's back; ``update_sheet`` is the only way to change
    a sheet.
    """

    def __init__(self, sheets: Optional[Iterable[LegacySheet]] = None):
        self._lock = threading.RLock()
        self._sheets: Dict[str, LegacySheet] = {}
        self._groups: Dict[str, LegacyGroup] = {}
        self.dirty = False
        self.save_count = 0
        for sheet in sheets or []:
            self._sheets[sheet.id] = copy.deepcopy(sheet)

    def fetch_sheets(self, include_trashed: bool = False) -> List[LegacySheet]:
        with self._lock:
            sheets = [
                copy.deepcopy(s)
                for s in self._sheets.values()
                if include_trashed or not s.is_in_trash
            ]
        sheets.sort(key=_modified_key, reverse=True)
        return sheets

    def get_sheet(self, sheet_id: str) -> Optional[LegacySheet]:
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            return copy.deepcopy(sheet) if sheet else None

    def add_sheet(self, sheet: LegacySheet) -> None:
        with self._lock:
            if sheet.id in self._sheets:
                raise ValueError(f"Sheet {sheet.id} already exists")
            self._sheets[sheet.id] = copy.deepcopy(sheet)
            self.dirty = True

    def update_sheet(self, sheet: LegacySheet) -> None:
        with self._lock:
            if sheet.id not in self._sheets:
                raise KeyError(sheet.id)
            self._sheets[sheet.id] = copy.deepcopy(sheet)
            self.dirty = True

    def find_or_create_group(self, folder_path: str) -> Optional[LegacyGroup]:
        """Reuse existing groups along the path, creating missing ones."""
        parent: Optional[LegacyGroup] = None
        walked: List[str] = []
        with self._lock:
            for name in folder_path.split("/"):
                name = name.strip()
                if not name:
                    continue
                walked.append(name)
                key = "/".join(walked)
                group = self._groups.get(key)
                if group is None:
                    group = LegacyGroup(name=name, parent=parent)
                    self._groups[key] = group
                    logger.debug(f"Created legacy group '{key}'")
                parent = group
        return parent

    def save(self) -> None:
        with self._lock:
            self.dirty = False
            self.save_count += 1

    def __len__(self) -> int:
        return len(self._sheets)
