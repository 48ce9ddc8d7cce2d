"""
Task store.

Owns tasks, collections and collection defaults. Enforces task identity
(<collection>.<name>), merges collection defaults into task definitions and
keeps trigger registration in step with every mutation.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from task_scheduler.errors import (
    CollectionDisabledError,
    DuplicateTaskError,
    NotFoundError,
    UnknownDependencyError,
    ValidationError,
)
from task_scheduler.events import EventType
from task_scheduler.models import (
    AfterTrigger,
    Collection,
    CollectionConfig,
    CollectionDefinition,
    CollectionView,
    Task,
    is_task_id,
    make_task_id,
    split_task_id,
    validate_collection_name,
)

if TYPE_CHECKING:
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)

TaskLookup = Callable[[str], Optional[Task]]


class TaskStore:
    """
    In-memory registry of collections and their tasks.

    Tasks are indexed twice: by id in `tasks` and by name inside their
    Collection. Both views are updated together.
    """

    def __init__(self, scheduler: "Scheduler"):
        self.scheduler = scheduler
        self.collections: Dict[str, Collection] = {}
        self.tasks: Dict[str, Task] = {}

    # =========================================================================
    # Identity, validation and merge
    # =========================================================================

    def _identity(
        self,
        definition: Mapping[str, Any],
        fallback: Optional[Tuple[str, str]] = None
    ) -> Tuple[str, str]:
        """
        Work out (collection, name) for a task definition.

        A dotted name carries its own collection ("foo.bar"). Otherwise the
        'collection' field is used, then the configured default collection.
        """
        name = definition.get("name")
        collection = definition.get("collection")

        if name is None and fallback is not None:
            name = fallback[1]
            collection = collection or fallback[0]

        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Task definition requires a name")
        if collection is not None and not isinstance(collection, str):
            raise ValidationError("Task collection must be a string")

        if is_task_id(name):
            prefix, name = split_task_id(name)
            if collection and collection != prefix:
                raise ValidationError(
                    f"Task name {definition.get('name')!r} does not belong to collection {collection!r}"
                )
            collection = prefix

        collection = collection or self.scheduler.config.default_collection
        try:
            validate_collection_name(collection)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not name:
            raise ValidationError("Task definition requires a name")

        return collection, name

    def _build_task(
        self,
        definition: Mapping[str, Any],
        collection: str,
        name: str,
        defaults: Optional[Mapping[str, Any]] = None
    ) -> Task:
        """Merge collection defaults under the definition and validate the result."""
        if defaults is None:
            existing = self.collections.get(collection)
            defaults = existing.defaults if existing else {}

        task_id = make_task_id(collection, name)
        data = dict(defaults)
        data.update(definition)
        data.update({"id": task_id, "name": name, "collection": collection})

        if not data.get("command"):
            raise ValidationError(f"Task {task_id} requires a command")

        try:
            return Task(**data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid definition for task {task_id}: {e}") from e

    @staticmethod
    def _check_dependency(task: Task, lookup: TaskLookup) -> None:
        """
        Verify an 'after' trigger points at an existing task and forms no cycle.

        Args:
            task: Task being created or replaced
            lookup: Resolves task ids as they will exist after the change
        """
        if not isinstance(task.trigger, AfterTrigger):
            return

        seen = {task.id}
        current = task.trigger.after
        while True:
            if current in seen:
                raise ValidationError(f"Task {task.id} has a circular 'after' dependency through {current}")
            upstream = lookup(current)
            if upstream is None:
                if current == task.trigger.after:
                    raise UnknownDependencyError(task.id, current)
                return
            if not isinstance(upstream.trigger, AfterTrigger):
                return
            seen.add(current)
            current = upstream.trigger.after

    def _ensure_collection(self, name: str) -> Collection:
        collection = self.collections.get(name)
        if collection is None:
            collection = Collection(name=name)
            self.collections[name] = collection
            logger.info(f"Collection '{name}' created")
        return collection

    def _put(self, task: Task) -> None:
        collection = self._ensure_collection(task.collection)
        collection.tasks[task.name] = task
        self.tasks[task.id] = task

    def _remove(self, task: Task) -> None:
        self.scheduler.triggers.remove_task_triggers(task.id)
        collection = self.collections.get(task.collection)
        if collection is not None:
            collection.tasks.pop(task.name, None)
        self.tasks.pop(task.id, None)

    # =========================================================================
    # Single task operations
    # =========================================================================

    def create_task(self, definition: Mapping[str, Any]) -> Task:
        """
        Create a task from a definition.

        Args:
            definition: {name, command, collection?, cwd?, env?, trigger?, enabled?}

        Returns:
            The stored Task (collection defaults merged in)

        Raises:
            ValidationError: Malformed definition or unknown 'after' reference
            DuplicateTaskError: A task with the same id exists
        """
        collection, name = self._identity(definition)
        task_id = make_task_id(collection, name)
        if task_id in self.tasks:
            raise DuplicateTaskError(task_id)

        task = self._build_task(definition, collection, name)
        self._check_dependency(task, self.tasks.get)

        self._put(task)
        self.scheduler.triggers.setup_task_triggers(task)
        logger.info(f"Task {task.id} created")
        self.scheduler.events.emit(EventType.TASK_UPDATED, task.id)
        return task

    def update_task(self, task_id: str, definition: Mapping[str, Any]) -> Task:
        """
        Replace a task's definition.

        The new definition is not merged with the old one; collection
        defaults are applied again.

        Raises:
            NotFoundError: Unknown task id
            ValidationError: Malformed definition, or it names a different task
        """
        existing = self.get_task(task_id)
        collection, name = self._identity(definition, fallback=(existing.collection, existing.name))
        if make_task_id(collection, name) != task_id:
            raise ValidationError(f"Definition for {make_task_id(collection, name)} cannot update task {task_id}")

        task = self._build_task(definition, collection, name)
        self._check_dependency(task, lambda tid: task if tid == task_id else self.tasks.get(tid))

        self.scheduler.triggers.remove_task_triggers(task_id)
        self._put(task)
        self.scheduler.triggers.setup_task_triggers(task)
        logger.info(f"Task {task_id} updated")
        self.scheduler.events.emit(EventType.TASK_UPDATED, task_id)
        return task

    def delete_task(self, task_id: str) -> None:
        """
        Delete a task and its triggers.

        Raises:
            NotFoundError: Unknown task id
        """
        task = self.get_task(task_id)
        self._remove(task)
        logger.info(f"Task {task_id} deleted")
        self.scheduler.events.emit(EventType.TASK_DELETED, task_id)

    def enable_task(self, task_id: str) -> Task:
        """
        Enable a task and register its triggers.

        Raises:
            NotFoundError: Unknown task id
            CollectionDisabledError: The task's collection is disabled
        """
        task = self.get_task(task_id)
        collection = self.collections[task.collection]
        if not collection.enabled:
            raise CollectionDisabledError(
                f"Cannot enable task {task_id} because its collection is disabled. "
                f"Please enable collection {task.collection}"
            )

        task.enabled = True
        self.scheduler.triggers.setup_task_triggers(task)
        self.scheduler.events.emit(EventType.TASK_UPDATED, task_id)
        return task

    def disable_task(self, task_id: str) -> Task:
        """Disable a task; its triggers are removed, the task is kept."""
        task = self.get_task(task_id)
        task.enabled = False
        self.scheduler.triggers.remove_task_triggers(task_id)
        self.scheduler.events.emit(EventType.TASK_UPDATED, task_id)
        return task

    # =========================================================================
    # Collection operations
    # =========================================================================

    def update_collection_and_tasks(self, bulk: Any) -> Collection:
        """
        Full-sync one collection against a bulk definition.

        Tasks only in `bulk` are created, tasks only in the store are deleted,
        tasks in both are replaced. Defaults and config are replaced wholesale.
        Everything is validated before anything changes.

        Args:
            bulk: {collection, defaults?, config?: {enabled}, tasks?: {name: {...}}}

        Returns:
            The reconciled Collection

        Raises:
            ValidationError: Malformed bulk definition or any malformed task
        """
        try:
            definition = (
                bulk if isinstance(bulk, CollectionDefinition)
                else CollectionDefinition.model_validate(bulk)
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid collection definition: {e}") from e

        name = definition.collection
        existing = self.collections.get(name)
        existing_names = set(existing.tasks) if existing else set()

        built: Dict[str, Task] = {}
        for task_name, task_definition in definition.tasks.items():
            if not isinstance(task_definition, dict):
                raise ValidationError(f"Definition for task {task_name!r} must be an object")
            data = dict(task_definition)
            data.pop("name", None)
            data.pop("collection", None)
            built[task_name] = self._build_task(data, name, task_name, defaults=definition.defaults)

        removed = [existing.tasks[n] for n in existing_names - set(built)] if existing else []
        removed_ids = {task.id for task in removed}
        batch = {task.id: task for task in built.values()}

        def lookup(task_id: str) -> Optional[Task]:
            if task_id in batch:
                return batch[task_id]
            if task_id in removed_ids:
                return None
            return self.tasks.get(task_id)

        for task in built.values():
            self._check_dependency(task, lookup)

        # Validated - apply
        collection = self._ensure_collection(name)
        collection.defaults = dict(definition.defaults)
        collection.config = CollectionConfig(**definition.config.model_dump())

        for task in removed:
            self._remove(task)
            logger.info(f"Task {task.id} deleted")
            self.scheduler.events.emit(EventType.TASK_DELETED, task.id)

        for task in built.values():
            self.scheduler.triggers.remove_task_triggers(task.id)
            self._put(task)

        for task in built.values():
            self.scheduler.triggers.setup_task_triggers(task)

        logger.info(
            f"Collection '{name}' synced: {len(built)} task(s), "
            f"{len(removed)} removed, enabled={collection.enabled}"
        )
        self.scheduler.events.emit(EventType.TASK_UPDATED, name)
        return collection

    def create_collection_and_tasks(self, bulk: Any) -> Collection:
        """Create a collection from a bulk definition (same full-sync semantics)."""
        return self.update_collection_and_tasks(bulk)

    def get_collection(self, name: str) -> Collection:
        collection = self.collections.get(name)
        if collection is None:
            raise NotFoundError(f"No collection of name {name} found")
        return collection

    def get_collection_defaults(self, name: str) -> Dict[str, Any]:
        return self.get_collection(name).defaults

    def set_collection_defaults(self, name: str, defaults: Mapping[str, Any]) -> Collection:
        """
        Replace a collection's defaults, creating the collection if needed.

        Defaults apply to tasks created or replaced afterwards.
        """
        try:
            validate_collection_name(name)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        collection = self._ensure_collection(name)
        collection.defaults = dict(defaults)
        self.scheduler.events.emit(EventType.TASK_UPDATED, name)
        return collection

    def enable_collection(self, name: str) -> Optional[List[str]]:
        """
        Enable a collection and register triggers of its enabled tasks.

        Returns:
            Ids of the collection's tasks, or None if it was already enabled
        """
        collection = self.get_collection(name)
        if collection.config.enabled:
            return None

        collection.config.enabled = True
        task_ids = []
        for task in collection.tasks.values():
            self.scheduler.triggers.setup_task_triggers(task)
            task_ids.append(task.id)

        logger.info(f"Collection '{name}' enabled")
        self.scheduler.events.emit(EventType.TASK_UPDATED, name)
        return task_ids

    def disable_collection(self, name: str) -> Optional[List[str]]:
        """
        Disable a collection: all its triggers go, its tasks stay.

        Returns:
            Ids of the collection's tasks, or None if it was already disabled
        """
        collection = self.get_collection(name)
        if not collection.config.enabled:
            return None

        collection.config.enabled = False
        task_ids = []
        for task in collection.tasks.values():
            self.scheduler.triggers.remove_task_triggers(task.id)
            task_ids.append(task.id)

        logger.info(f"Collection '{name}' disabled")
        self.scheduler.events.emit(EventType.TASK_UPDATED, name)
        return task_ids

    def delete_collection(self, name: str) -> List[str]:
        """
        Delete a collection, its defaults and all of its tasks.

        Returns:
            Ids of the deleted tasks
        """
        collection = self.get_collection(name)
        task_ids = [task.id for task in collection.tasks.values()]
        for task_id in task_ids:
            self.delete_task(task_id)

        del self.collections[name]
        logger.info(f"Collection '{name}' deleted")
        self.scheduler.events.emit(EventType.TASK_DELETED, name)
        return task_ids

    # =========================================================================
    # Queries
    # =========================================================================

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def get_tasks(self, task_filter: Optional[str] = None) -> List[CollectionView]:
        """
        List tasks grouped by collection.

        Args:
            task_filter: Task id (contains a dot), collection name, or None for all

        Returns:
            One CollectionView per matching collection, tasks keyed by id

        Raises:
            NotFoundError: The filter matches nothing
        """
        if not task_filter:
            return [self._view(collection) for collection in self.collections.values()]

        if is_task_id(task_filter):
            task = self.tasks.get(task_filter)
            if task is None:
                raise NotFoundError("There are no tasks or collections that match the provided filter")
            return [self._view(self.collections[task.collection], only=task.id)]

        collection = self.collections.get(task_filter)
        if collection is None:
            raise NotFoundError("There are no tasks or collections that match the provided filter")
        return [self._view(collection)]

    def get_task_ids(self, pattern: Optional[str] = None) -> List[str]:
        """Task ids, optionally filtered by a glob pattern such as 'florida.*'."""
        if pattern is None:
            return list(self.tasks)
        return [task_id for task_id in self.tasks if fnmatch.fnmatchcase(task_id, pattern)]

    @staticmethod
    def _view(collection: Collection, only: Optional[str] = None) -> CollectionView:
        tasks = {
            task.id: task
            for task in collection.tasks.values()
            if only is None or task.id == only
        }
        return CollectionView(
            collection=collection.name,
            defaults=dict(collection.defaults),
            config=collection.config.model_copy(),
            tasks=tasks,
        )
