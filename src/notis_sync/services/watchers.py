"""Change watchers that trigger a sync when the notes tree changes.

Two strategies share the ``ChangeWatcher`` interface:

- ``EventWatcher`` listens to filesystem events through watchdog and
  debounces bursts of events into one callback.
- ``PollingWatcher`` calls back on a fixed interval, for platforms or
  filesystems without usable change notifications.
"""
import logging
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from notis_sync.exceptions import ErrorCode, SyncError
from notis_sync.storage.file_store import CONFLICTS_DIRNAME, NOTE_EXTENSION

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_POLL_INTERVAL = 30.0

# Platforms where watchdog has a native (non-polling) backend
EVENT_PLATFORMS = ("darwin", "linux", "win32")

# Events that never mean the content changed
_IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})

ChangeCallback = Callable[[], None]


class ChangeWatcher(ABC):
    """Calls ``callback`` when the notes tree may have changed."""

    def __init__(self, notes_dir: Path, callback: ChangeCallback):
        self.notes_dir = Path(notes_dir)
        self.callback = callback

    @abstractmethod
    def start(self) -> None:
        """Begin watching. Starting a running watcher does nothing."""

    @abstractmethod
    def stop(self) -> None:
        """Stop watching. Stopping a stopped watcher does nothing."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the watcher is active."""

    def _fire(self) -> None:
        """Invoke the callback; failures are logged, never raised into the watcher thread."""
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Change callback failed: {e}", exc_info=True)


class _NotesEventHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the owning watcher."""

    def __init__(self, watcher: "EventWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(self._watcher.is_relevant(p) for p in paths if p):
            self._watcher.schedule()


class EventWatcher(ChangeWatcher):
    """Watches the tree with a watchdog observer.

    Events for hidden paths (temp files, the conflicts folder) are ignored.
    A burst of events restarts a single ``threading.Timer``, so the callback
    runs once, ``debounce_seconds`` after the last event.
    """

    def __init__(
        self,
        notes_dir: Path,
        callback: ChangeCallback,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        super().__init__(notes_dir, callback)
        self.debounce_seconds = debounce_seconds
        self._observer: Optional[Observer] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        with self._lock:
            if self._observer is not None:
                return
            observer = Observer()
            try:
                observer.schedule(
                    _NotesEventHandler(self), str(self.notes_dir), recursive=True
                )
                observer.daemon = True
                observer.start()
            except OSError as e:
                raise SyncError(
                    f"Cannot watch {self.notes_dir}: {e}",
                    operation="start_monitoring",
                    code=ErrorCode.WATCHER_FAILED,
                ) from e
            self._observer = observer
        logger.info(f"Watching {self.notes_dir} for changes")

    def stop(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        logger.info(f"Stopped watching {self.notes_dir}")

    def is_relevant(self, path: str) -> bool:
        """True for note files and folders inside the tree, hidden ones excluded.

        The observer may report real paths for a symlinked or relative root,
        so both sides are resolved before giving up.
        """
        candidate = Path(path)
        try:
            relative = candidate.relative_to(self.notes_dir)
        except ValueError:
            try:
                relative = candidate.resolve().relative_to(self.notes_dir.resolve())
            except ValueError:
                return False
        parts = relative.parts
        if not parts:
            return False
        if any(part.startswith(".") or part == CONFLICTS_DIRNAME for part in parts):
            return False
        name = parts[-1]
        # Folder events carry no extension
        return name.endswith(NOTE_EXTENSION) or "." not in name

    def schedule(self) -> None:
        """Start or restart the debounce timer."""
        with self._lock:
            if self._observer is None:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self._fire()


class PollingWatcher(ChangeWatcher):
    """Calls back every ``interval`` seconds from a daemon thread."""

    def __init__(
        self,
        notes_dir: Path,
        callback: ChangeCallback,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        super().__init__(notes_dir, callback)
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="notis-poll", daemon=True
            )
            self._thread.start()
        logger.info(f"Polling {self.notes_dir} every {self.interval:g}s")

    def stop(self) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            self._stop_event.set()
        # The current callback, if any, finishes on its own
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 5)
            logger.info(f"Stopped polling {self.notes_dir}")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self._fire()


def resolve_watch_mode(mode: str = "auto", platform: Optional[str] = None) -> str:
    """Map ``auto`` to ``events`` or ``polling`` by platform capability."""
    if mode != "auto":
        return mode
    platform = platform or sys.platform
    return "events" if platform.startswith(EVENT_PLATFORMS) else "polling"


def create_watcher(
    notes_dir: Path,
    callback: ChangeCallback,
    mode: str = "auto",
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    platform: Optional[str] = None,
) -> ChangeWatcher:
    """Build the watcher for ``mode`` (``auto``, ``events`` or ``polling``)."""
    resolved = resolve_watch_mode(mode, platform)
    if resolved == "events":
        return EventWatcher(notes_dir, callback, debounce_seconds=debounce_seconds)
    if resolved == "polling":
        return PollingWatcher(notes_dir, callback, interval=poll_interval)
    raise SyncError(
        f"Unknown watch mode: {mode}",
        operation="create_watcher",
        code=ErrorCode.WATCHER_FAILED,
    )
