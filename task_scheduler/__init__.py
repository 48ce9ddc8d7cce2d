"""
Task Scheduler - cron and dependency driven process scheduler.

Runs shell commands grouped into collections, on a cron schedule or after
another task succeeds, with a bounded number of concurrent child processes.

Architecture: collection files are the source of truth on disk.
- <tasks_path>/<collection>.tasks.json  - one file per collection
- Queue and running workers live in memory only
"""

__version__ = "1.0.0"

from task_scheduler.errors import (
    SchedulerError,
    ValidationError,
    UnknownDependencyError,
    DuplicateTaskError,
    NotFoundError,
    CollectionDisabledError,
    ConfigurationError,
    PersistenceError,
    RunStateError,
)

from task_scheduler.models import (
    Task,
    TimeTrigger,
    AfterTrigger,
    Collection,
    CollectionDefinition,
    CollectionView,
    Run,
    RunState,
    RunTask,
    StatusSnapshot,
    LoadReport,
)

from task_scheduler.config import ConfigManager, SchedulerConfig, DependencyFailurePolicy, DEFAULT_CONFIG_FILE
from task_scheduler.events import EventBus, EventType, Event
from task_scheduler.scheduler import Scheduler

__all__ = [
    # Errors
    "SchedulerError",
    "ValidationError",
    "UnknownDependencyError",
    "DuplicateTaskError",
    "NotFoundError",
    "CollectionDisabledError",
    "ConfigurationError",
    "PersistenceError",
    "RunStateError",
    # Models
    "Task",
    "TimeTrigger",
    "AfterTrigger",
    "Collection",
    "CollectionDefinition",
    "CollectionView",
    "Run",
    "RunState",
    "RunTask",
    "StatusSnapshot",
    "LoadReport",
    # Config
    "ConfigManager",
    "SchedulerConfig",
    "DependencyFailurePolicy",
    "DEFAULT_CONFIG_FILE",
    # Components
    "EventBus",
    "EventType",
    "Event",
    "Scheduler",
]
