"""
Watchdog-based monitoring of the tasks directory.

Reloads a collection when its <collection>.tasks.json file is created or
modified outside the daemon. Watchdog delivers events on its observer
thread; they are handed to the control loop with call_soon_threadsafe and
debounced there, so reloads never run concurrently with other callbacks.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, TYPE_CHECKING

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

from task_scheduler.errors import PersistenceError, ValidationError
from task_scheduler.persistence import COLLECTION_FILE_SUFFIX

if TYPE_CHECKING:
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)


class CollectionFileWatcher(FileSystemEventHandler):
    """
    Watches the tasks directory for collection file changes.

    Multiple events for the same file within the debounce window are
    coalesced into a single reload, fired after the window closes.
    """

    def __init__(
        self,
        scheduler: "Scheduler",
        loop: asyncio.AbstractEventLoop,
        debounce_ms: int = 500
    ):
        """
        Initialize collection file watcher.

        Args:
            scheduler: Scheduler whose persistence gateway reloads files
            loop: Control loop that reloads run on
            debounce_ms: Debounce delay in milliseconds
        """
        super().__init__()

        self.scheduler = scheduler
        self.loop = loop
        self.debounce_seconds = debounce_ms / 1000.0

        # Pending reloads per file path (touched on the loop only)
        self._pending: Dict[str, asyncio.TimerHandle] = {}

        self._observer: Optional[Observer] = None

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_file_event(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_file_event(event.src_path, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers (ours included) replace the file with a rename
        if event.is_directory:
            return
        self._handle_file_event(event.dest_path, "moved")

    def _handle_file_event(self, file_path, event_type: str) -> None:
        """Observer thread: filter, then hand over to the control loop."""
        file_path = str(file_path)
        if not file_path.endswith(COLLECTION_FILE_SUFFIX):
            return
        if Path(file_path).name.startswith("."):
            return

        logger.debug(f"Collection file {event_type}: {Path(file_path).name}")
        self.loop.call_soon_threadsafe(self._schedule_reload, file_path)

    def _schedule_reload(self, file_path: str) -> None:
        handle = self._pending.pop(file_path, None)
        if handle is not None:
            handle.cancel()
        self._pending[file_path] = self.loop.call_later(
            self.debounce_seconds, self._reload, file_path
        )

    def _reload(self, file_path: str) -> None:
        self._pending.pop(file_path, None)
        persistence = self.scheduler.persistence

        path = Path(file_path)
        if not path.exists():
            return
        if persistence.is_known_content(path):
            logger.debug(f"Ignoring unchanged collection file: {path.name}")
            return

        try:
            persistence.load_collection_from_file(path)
        except (ValidationError, PersistenceError) as e:
            logger.error(f"Failed to reload {path.name}: {e}")

    def start(self, watch_path: Path) -> None:
        """
        Start watching a tasks directory.

        Args:
            watch_path: Directory holding collection files
        """
        if self._observer is not None:
            logger.warning(f"Observer already running for {watch_path}")
            return

        watch_path = Path(watch_path)
        if not watch_path.is_dir():
            logger.error(f"Tasks directory does not exist: {watch_path}")
            return

        self._observer = Observer()
        self._observer.schedule(
            event_handler=self,
            path=str(watch_path),
            recursive=False
        )
        self._observer.start()
        logger.info(f"Watching collection files in {watch_path}")

    def stop(self) -> None:
        """Stop watching and drop pending reloads."""
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._observer is None:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        except RuntimeError as e:
            logger.error(f"Error stopping observer: {e}", exc_info=True)
        finally:
            self._observer = None

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
