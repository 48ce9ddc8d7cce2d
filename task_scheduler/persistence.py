"""
Persistence gateway: collection files <-> task store.

One JSON file per collection, named <collection>.tasks.json, in the
configured tasks directory:

    {
      "collection": "florida",
      "defaults": {"cwd": "/var/www/website/"},
      "config": {"enabled": true},
      "tasks": {
        "task1": {"command": "./update-apis", "trigger": {"time": "*/10 * * * *"}},
        "task2": {"command": "./process-data", "trigger": {"after": "florida.task1"}}
      }
    }
"""

from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TYPE_CHECKING

from task_scheduler.atomic import AtomicFileWriter
from task_scheduler.errors import (
    PersistenceError,
    UnknownDependencyError,
    ValidationError,
)
from task_scheduler.events import Event, EventType
from task_scheduler.models import Collection, LoadReport

if TYPE_CHECKING:
    import asyncio
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)

COLLECTION_FILE_SUFFIX = ".tasks.json"


def serialize_collection(collection: Collection) -> Dict[str, Any]:
    """Collection file content for a collection."""
    return {
        "collection": collection.name,
        "defaults": dict(collection.defaults),
        "config": collection.config.model_dump(),
        "tasks": {
            name: task.to_definition()
            for name, task in collection.tasks.items()
        },
    }


class PersistenceGateway:
    """
    Loads and saves collections.

    Remembers the content hash of every file it reads or writes, so the
    file watcher can tell the daemon's own writes from external edits.
    """

    def __init__(self, scheduler: "Scheduler"):
        self.scheduler = scheduler
        self.known_hashes: Dict[str, str] = {}
        self._loading = False
        self._save_handle: Optional["asyncio.Handle"] = None

        scheduler.events.subscribe(EventType.TASK_UPDATED, self._on_task_change)
        scheduler.events.subscribe(EventType.TASK_DELETED, self._on_task_change)

    @property
    def tasks_path(self) -> Optional[Path]:
        path = self.scheduler.config.tasks_path
        return Path(path).expanduser() if path else None

    def collection_file(self, name: str) -> Path:
        if self.tasks_path is None:
            raise PersistenceError("No tasks_path configured")
        return self.tasks_path / f"{name}{COLLECTION_FILE_SUFFIX}"

    @contextlib.contextmanager
    def _suspend_autosave(self) -> Iterator[None]:
        previous = self._loading
        self._loading = True
        try:
            yield
        finally:
            self._loading = previous

    # =========================================================================
    # Loading
    # =========================================================================

    def load_collection_from_file(self, path: Path) -> Collection:
        """
        Load one collection file through full-sync reconciliation.

        Args:
            path: Collection file

        Returns:
            The loaded Collection

        Raises:
            PersistenceError: File cannot be read
            ValidationError: File content is not a valid collection (nothing applied)
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot read collection file {path}: {e}") from e
        except UnicodeDecodeError as e:
            raise ValidationError(f"Collection file {path} is not valid UTF-8: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Collection file {path} is not valid JSON: {e}") from e

        with self._suspend_autosave():
            collection = self.scheduler.store.update_collection_and_tasks(data)

        self.known_hashes[str(path.resolve())] = AtomicFileWriter.file_hash(path)
        logger.info(f"Loaded collection '{collection.name}' ({len(collection.tasks)} tasks) from {path}")
        return collection

    def load_tasks(self) -> LoadReport:
        """
        Load every collection file in the tasks directory.

        A bad file is reported and skipped; the others still load. Files
        that only fail because an 'after' trigger points into a collection
        not loaded yet are retried once the other files are in.

        Raises:
            PersistenceError: The tasks directory does not exist
        """
        report = LoadReport()
        tasks_path = self.tasks_path
        if tasks_path is None:
            logger.warning("No tasks_path configured, no collections loaded")
            return report
        if not tasks_path.is_dir():
            raise PersistenceError(f"Tasks directory does not exist: {tasks_path}")

        pending = sorted(tasks_path.glob(f"*{COLLECTION_FILE_SUFFIX}"))
        while pending:
            deferred = []
            for path in pending:
                try:
                    collection = self.load_collection_from_file(path)
                except UnknownDependencyError as e:
                    deferred.append(path)
                    report.errors[str(path)] = str(e)
                except (ValidationError, PersistenceError) as e:
                    report.errors[str(path)] = str(e)
                else:
                    report.loaded.append(collection.name)
                    report.errors.pop(str(path), None)

            if len(deferred) == len(pending):
                break
            pending = deferred

        for path, message in report.errors.items():
            logger.error(f"Failed to load {path}: {message}")
        logger.info(f"Loaded {len(report.loaded)} collection(s) from {tasks_path}")
        return report

    # =========================================================================
    # Saving
    # =========================================================================

    def save_collection(self, name: str) -> Path:
        """
        Write one collection to its file.

        Raises:
            NotFoundError: Unknown collection
            PersistenceError: Write failed
        """
        collection = self.scheduler.store.get_collection(name)
        path = self.collection_file(name)
        try:
            digest = AtomicFileWriter.write_json(path, serialize_collection(collection), indent=2)
        except OSError as e:
            raise PersistenceError(f"Cannot write collection file {path}: {e}") from e
        self.known_hashes[str(path.resolve())] = digest
        return path

    def save_tasks(self) -> List[Path]:
        """Write every collection to its own file."""
        paths = [self.save_collection(name) for name in list(self.scheduler.store.collections)]
        logger.info(f"Saved {len(paths)} collection(s)")
        return paths

    def delete_collection_file(self, name: str) -> bool:
        """Remove a collection's file. Returns True if a file was removed."""
        if self.tasks_path is None:
            return False
        path = self.collection_file(name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise PersistenceError(f"Cannot delete collection file {path}: {e}") from e
        self.known_hashes.pop(str(path.resolve()), None)
        return True

    def is_known_content(self, path: Path) -> bool:
        """True if the file holds exactly what was last loaded from or written to it."""
        path = Path(path)
        known = self.known_hashes.get(str(path.resolve()))
        return known is not None and known == AtomicFileWriter.file_hash(path)

    # =========================================================================
    # Auto-save
    # =========================================================================

    def _on_task_change(self, event: Event) -> None:
        if self._loading or not self.scheduler.config.auto_save or self.tasks_path is None:
            return
        loop = self.scheduler.loop
        if loop is None:
            return
        # Coalesce a burst of changes into one save
        if self._save_handle is None:
            self._save_handle = loop.call_soon(self._auto_save)

    def _auto_save(self) -> None:
        self._save_handle = None
        try:
            self.save_tasks()
        except PersistenceError as e:
            logger.error(f"Auto-save failed: {e}")
