"""Legacy store backed by a JSON export file."""
import json
import logging
import os
from pathlib import Path
from typing import Union

from notis_sync.exceptions import ErrorCode, StorageError
from notis_sync.legacy.base import sheet_from_dict, sheet_to_dict
from notis_sync.legacy.memory_store import InMemoryLegacyStore

logger = logging.getLogger(__name__)


class JsonLegacyStore(InMemoryLegacyStore):
    """Loads sheets from a JSON array on construction; ``save`` writes it back.

    Reads the same format the migration backup writes, so a backup can be
    opened as a store.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(
                f"Cannot load legacy store from {self.path.name}",
                operation="load",
                path=str(self.path),
                code=ErrorCode.LEGACY_STORE_UNAVAILABLE,
                original_error=e,
            ) from e
        if not isinstance(data, list):
            raise StorageError(
                "Legacy store file must contain a JSON array",
                operation="load",
                path=str(self.path),
                code=ErrorCode.LEGACY_STORE_UNAVAILABLE,
            )
        skipped = 0
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                skipped += 1
                continue
            sheet = sheet_from_dict(item)
            self._sheets[sheet.id] = sheet
        if skipped:
            logger.warning(f"Skipped {skipped} malformed records in {self.path.name}")
        logger.info(f"Loaded {len(self._sheets)} legacy sheets from {self.path.name}")

    def save(self) -> None:
        """Write every sheet back to the file atomically."""
        with self._lock:
            payload = [sheet_to_dict(s) for s in self._sheets.values()]
            tmp_path = self.path.with_name(f".{self.path.name}.tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(
                    json.dumps(payload, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise StorageError(
                    "Failed to save legacy store",
                    operation="save",
                    path=str(self.path),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
            super().save()
