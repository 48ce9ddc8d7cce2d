"""
Exception taxonomy for the scheduler core.

Validation, duplicate and not-found errors are raised synchronously to the
caller; the control surface maps them to its own status codes.
"""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ValidationError(SchedulerError):
    """Malformed task or collection definition."""


class UnknownDependencyError(ValidationError):
    """An ``after`` trigger references a task id that does not exist."""

    def __init__(self, task_id: str, after: str):
        self.task_id = task_id
        self.after = after
        super().__init__(f"Task {task_id} depends on unknown task {after}")


class DuplicateTaskError(SchedulerError):
    """A task with the same id already exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"A task with id {task_id} already exists")


class NotFoundError(SchedulerError):
    """Unknown task, collection or run reference."""


class CollectionDisabledError(SchedulerError):
    """A task cannot be enabled while its collection is disabled."""


class ConfigurationError(SchedulerError):
    """Invalid run configuration detected at spawn time (e.g. missing cwd)."""


class PersistenceError(SchedulerError, OSError):
    """Collection file could not be read or written."""


class RunStateError(SchedulerError):
    """Illegal run state transition or mutation of a completed run."""
