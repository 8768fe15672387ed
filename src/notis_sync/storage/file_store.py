"""Markdown file store: one note per file under the notes root.

Files are the source of truth. Every write goes through a temp file in the
target folder followed by ``os.replace`` so readers never observe a partial
note. Temp files are dot-prefixed and therefore invisible to scans.
"""
import datetime
import logging
import os
import threading
import uuid as uuid_module
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

import yaml

from notis_sync.config import config
from notis_sync.exceptions import ErrorCode, NotesRootError, ValidationError
from notis_sync.models.schema import (
    CreateFileResult,
    FileSignature,
    NoteMetadata,
    utc_now,
)
from notis_sync.storage.markdown_parser import MarkdownParser, normalize_body
from notis_sync.utils import clean_folder_path, sanitize_filename

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"

# Hidden sidecar folder for the losing side of sync conflicts
CONFLICTS_DIRNAME = ".conflicts"


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


class MarkdownFileStore:
    """Durable, human-readable persistence of one note per markdown file.

    Args:
        notes_dir: Root of the managed tree. Defaults to the configured
            notes directory.
        trash_dir: Where trashed files go. Defaults to ``.Trash`` next to
            the notes root so scans never see it.
        parser: Frontmatter codec. Defaults to one using the configured
            excerpt length.
    """

    def __init__(
        self,
        notes_dir: Optional[Path] = None,
        trash_dir: Optional[Path] = None,
        parser: Optional[MarkdownParser] = None,
    ):
        if notes_dir is not None:
            self.notes_dir = Path(notes_dir)
            self.trash_dir = (
                Path(trash_dir) if trash_dir else self.notes_dir.parent / ".Trash"
            )
        else:
            self.notes_dir = config.get_notes_dir()
            self.trash_dir = Path(trash_dir) if trash_dir else config.get_trash_dir()
        self.parser = parser or MarkdownParser(excerpt_length=config.excerpt_length)
        # Serializes path allocation so two writers never pick the same name
        self.file_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def get_notes_directory(self) -> Path:
        """Return the notes root, creating it on first use.

        Raises:
            NotesRootError: If the root cannot be created or is not writable.
        """
        try:
            self.notes_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise NotesRootError(str(self.notes_dir), original_error=e) from e
        if not self.notes_dir.is_dir() or not os.access(
            self.notes_dir, os.W_OK | os.X_OK
        ):
            raise NotesRootError(str(self.notes_dir))
        return self.notes_dir

    def get_trash_directory(self) -> Path:
        self.trash_dir.mkdir(parents=True, exist_ok=True)
        return self.trash_dir

    def create_folder(self, folder_path: str) -> bool:
        """Create a (possibly nested) folder under the notes root."""
        folder = clean_folder_path(folder_path)
        if not folder:
            return False
        try:
            (self.get_notes_directory() / folder).mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error(f"Failed to create folder {folder}: {e}")
            return False

    def get_all_folders(self) -> List[str]:
        """All non-hidden folders under the root, as sorted relative paths."""
        root = self.get_notes_directory()
        folders: List[str] = []
        for dirpath, dirnames, _ in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
            for name in dirnames:
                folders.append(self.relative_path(Path(dirpath) / name))
        return sorted(folders)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def relative_path(self, file_path: Path) -> str:
        """Path of ``file_path`` relative to the notes root, ``/``-separated.

        Raises:
            ValueError: If the path is not under the notes root.
        """
        return Path(file_path).relative_to(self.notes_dir).as_posix()

    def absolute_path(self, relative: str) -> Path:
        """Resolve a relative note path, refusing anything outside the root.

        Raises:
            ValidationError: If the path escapes the notes root.
        """
        parts = PurePosixPath(relative.replace("\\", "/")).parts
        if not parts or any(p in ("..", "") for p in parts) or parts[0] == "/":
            raise ValidationError(
                "Note path must stay inside the notes directory",
                field="path",
                value=relative,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return self.notes_dir.joinpath(*parts)

    def unique_file_path(self, title: str, folder_path: Optional[str] = None) -> Path:
        """First free ``Title.md``, ``Title 1.md``, ``Title 2.md``... in the folder."""
        folder = self.notes_dir
        cleaned = clean_folder_path(folder_path or "")
        if cleaned:
            folder = folder / cleaned
        stem = sanitize_filename(title)
        candidate = folder / f"{stem}{NOTE_EXTENSION}"
        counter = 1
        while candidate.exists():
            candidate = folder / f"{stem} {counter}{NOTE_EXTENSION}"
            counter += 1
        return candidate

    def file_signature(self, file_path: Path) -> Optional[FileSignature]:
        """mtime + size of a file, or None if it is gone."""
        try:
            stat = Path(file_path).stat()
        except OSError:
            return None
        return FileSignature(mtime=stat.st_mtime, size=stat.st_size)

    # ------------------------------------------------------------------
    # Create / read / update
    # ------------------------------------------------------------------

    def create_file(
        self,
        title: str,
        content: str,
        folder_path: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[NoteMetadata] = None,
    ) -> CreateFileResult:
        """Write a new note under a unique path.

        ``metadata`` carries identity and timestamps when a note is created
        from an existing record (migration, lazy sync); otherwise a fresh
        uuid is assigned.

        Returns:
            CreateFileResult; ``success`` is False on filesystem errors.

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        root = self.get_notes_directory()
        fields = metadata.model_dump() if metadata else {}
        fields["title"] = title
        if tags is not None:
            fields["tags"] = tags
        body = normalize_body(content)

        file_path: Optional[Path] = None
        try:
            with self.file_lock:
                folder = clean_folder_path(folder_path or "")
                if folder:
                    (root / folder).mkdir(parents=True, exist_ok=True)
                file_path = self.unique_file_path(title, folder)
                fields["path"] = self.relative_path(file_path)
                note = NoteMetadata(**fields).with_body(
                    body, self.parser.excerpt_length
                )
                self._atomic_write(
                    file_path, self.parser.render_to_markdown(note, body)
                )
        except OSError as e:
            logger.error(f"Failed to create note '{title}': {e}")
            return CreateFileResult(success=False, error=str(e))

        logger.debug(f"Created note {note.uuid} at {note.path}")
        return CreateFileResult(success=True, metadata=note, file_path=file_path)

    def read_file(self, file_path: Path) -> Optional[Tuple[NoteMetadata, str]]:
        """Parse a note file.

        Returns:
            ``(metadata, body)``, or None when the file is missing,
            unreadable, or not a managed note (malformed or foreign
            frontmatter).
        """
        file_path = Path(file_path)
        try:
            stat = file_path.stat()
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot read {file_path.name}: {e}")
            return None

        try:
            relative = self.relative_path(file_path)
        except ValueError:
            relative = file_path.name

        mtime = datetime.datetime.fromtimestamp(
            stat.st_mtime, tz=datetime.timezone.utc
        )
        try:
            parsed = self.parser.parse_note(content, relative, fallback_time=mtime)
        except (ValueError, yaml.YAMLError) as e:
            logger.debug(f"Skipping {relative}: not a managed note ({e})")
            return None

        note = parsed.metadata
        # Body edited outside the app: the file's mtime is the better clock
        if (
            parsed.stored_hash
            and parsed.stored_hash != note.content_hash
            and mtime > note.modified
        ):
            note = note.model_copy(update={"modified": mtime})
        return note, parsed.body

    def read_file_by_path(self, relative: str) -> Optional[Tuple[NoteMetadata, str]]:
        try:
            return self.read_file(self.absolute_path(relative))
        except ValidationError as e:
            logger.warning(f"Refusing to read {relative}: {e}")
            return None

    def update_file(
        self,
        metadata: NoteMetadata,
        content: str,
        touch: bool = True,
    ) -> Optional[NoteMetadata]:
        """Rewrite an existing note in place.

        Args:
            metadata: Metadata to write; ``path`` selects the file.
            content: New body.
            touch: Set ``modified`` to now. When False the given ``modified``
                is written as-is (used when another source's edit wins).

        Returns:
            The metadata as written, or None if the write failed.
        """
        try:
            file_path = self.absolute_path(metadata.path)
        except ValidationError as e:
            logger.error(f"Cannot update note {metadata.uuid}: {e}")
            return None

        body = normalize_body(content)
        note = metadata.with_body(body, self.parser.excerpt_length)
        if touch:
            # Never let modified run backwards
            note = note.model_copy(update={"modified": max(utc_now(), note.modified)})
        try:
            with self.file_lock:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                self._atomic_write(
                    file_path, self.parser.render_to_markdown(note, body)
                )
        except OSError as e:
            logger.error(f"Failed to update note {metadata.uuid}: {e}")
            return None
        return note

    # ------------------------------------------------------------------
    # Delete / move
    # ------------------------------------------------------------------

    def delete_file(self, relative: str) -> bool:
        """Delete a note file; a file that is already gone counts as deleted."""
        try:
            file_path = self.absolute_path(relative)
        except ValidationError as e:
            logger.warning(f"Refusing to delete {relative}: {e}")
            return False
        if not file_path.exists():
            return True
        try:
            with self.file_lock:
                file_path.unlink()
        except OSError as e:
            logger.error(f"Failed to delete {relative}: {e}")
            return False
        self._cleanup_empty_directories(file_path.parent)
        return True

    def move_file(self, old_relative: str, new_relative: str) -> bool:
        """Move or rename a note file.

        Fails when the source is missing or the destination already exists.
        Folders left empty by the move are removed.
        """
        try:
            source = self.absolute_path(old_relative)
            target = self.absolute_path(new_relative)
        except ValidationError as e:
            logger.warning(f"Refusing to move {old_relative}: {e}")
            return False
        if not source.exists():
            logger.warning(f"Source file doesn't exist for move: {old_relative}")
            return False
        try:
            with self.file_lock:
                if target.exists():
                    logger.warning(f"Move target already exists: {new_relative}")
                    return False
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(source, target)
        except OSError as e:
            logger.error(f"Failed to move {old_relative} to {new_relative}: {e}")
            return False
        self._cleanup_empty_directories(source.parent)
        return True

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    def move_to_trash(self, relative: str) -> Optional[Path]:
        """Move a note into the trash folder.

        Returns:
            The file's location in the trash, or None on failure.
        """
        try:
            source = self.absolute_path(relative)
        except ValidationError as e:
            logger.warning(f"Refusing to trash {relative}: {e}")
            return None
        if not source.exists():
            logger.warning(f"Source file doesn't exist for trash: {relative}")
            return None
        try:
            with self.file_lock:
                trash = self.get_trash_directory()
                target = trash / source.name
                counter = 1
                while target.exists():
                    target = trash / f"{source.stem} {counter}{source.suffix}"
                    counter += 1
                os.replace(source, target)
        except OSError as e:
            logger.error(f"Failed to move {relative} to trash: {e}")
            return None
        self._cleanup_empty_directories(source.parent)
        return target

    def restore_from_trash(self, trash_path: Path, relative: str) -> bool:
        """Move a trashed file back to ``relative``; never overwrites."""
        trash_path = Path(trash_path)
        if not trash_path.exists():
            logger.warning(f"File doesn't exist in trash: {trash_path.name}")
            return False
        try:
            target = self.absolute_path(relative)
        except ValidationError as e:
            logger.warning(f"Refusing to restore to {relative}: {e}")
            return False
        try:
            with self.file_lock:
                if target.exists():
                    logger.warning(f"File already exists at restore location: {relative}")
                    return False
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(trash_path, target)
        except OSError as e:
            logger.error(f"Failed to restore {relative} from trash: {e}")
            return False
        return True

    def purge_from_trash(self, trash_path: Path) -> bool:
        """Permanently delete a trashed file."""
        trash_path = Path(trash_path)
        if not trash_path.exists():
            return True
        try:
            trash_path.unlink()
        except OSError as e:
            logger.error(f"Failed to purge {trash_path.name}: {e}")
            return False
        return True

    def list_trash(self) -> List[Path]:
        if not self.trash_dir.is_dir():
            return []
        return sorted(
            p for p in self.trash_dir.iterdir()
            if p.is_file() and not _is_hidden(p.name)
        )

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def scan_all_files(self) -> List[Path]:
        """Recursively list note files, skipping hidden files and folders.

        Best-effort snapshot: files that vanish during the walk are omitted.

        Raises:
            NotesRootError: If the notes root is unusable.
        """
        root = self.get_notes_directory()
        files: List[Path] = []

        def _on_error(error: OSError) -> None:
            logger.debug(f"Skipping unreadable directory during scan: {error}")

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
            dirnames[:] = [d for d in dirnames if not _is_hidden(d)]
            for name in filenames:
                if _is_hidden(name) or not name.lower().endswith(NOTE_EXTENSION):
                    continue
                path = Path(dirpath) / name
                if path.is_file():
                    files.append(path)
        return sorted(files)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def write_conflict_copy(
        self, metadata: NoteMetadata, content: str
    ) -> Optional[Path]:
        """Keep the losing side of a sync conflict as a hidden sidecar.

        Written to ``<notes>/.conflicts/<uuid>-<timestamp>.md``; never
        scanned, never indexed.
        """
        try:
            root = self.get_notes_directory()
            folder = root / CONFLICTS_DIRNAME
            folder.mkdir(parents=True, exist_ok=True)
            stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
            target = folder / f"{metadata.uuid}-{stamp}{NOTE_EXTENSION}"
            body = normalize_body(content)
            note = metadata.model_copy(update={"path": self.relative_path(target)})
            self._atomic_write(target, self.parser.render_to_markdown(note, body))
        except OSError as e:
            logger.error(f"Failed to preserve conflict copy of {metadata.uuid}: {e}")
            return None
        logger.info(f"Preserved conflicting version of {metadata.uuid} at {target.name}")
        return target

    def list_conflict_copies(self) -> List[Path]:
        folder = self.notes_dir / CONFLICTS_DIRNAME
        if not folder.is_dir():
            return []
        return sorted(folder.glob(f"*{NOTE_EXTENSION}"))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _atomic_write(file_path: Path, text: str) -> None:
        """Write via a hidden temp file in the same folder, then replace."""
        tmp_path = file_path.parent / f".{file_path.name}.{uuid_module.uuid4().hex}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, file_path)
        except OSError:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise

    def _cleanup_empty_directories(self, directory: Path) -> None:
        """Remove empty folders upward, stopping at the notes root."""
        root = self.notes_dir.resolve()
        current = directory
        while True:
            try:
                if current.resolve() == root or root not in current.resolve().parents:
                    break
                if any(current.iterdir()):
                    break
                current.rmdir()
            except OSError:
                break
            current = current.parent
