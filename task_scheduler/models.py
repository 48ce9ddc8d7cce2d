"""
Data models for the task scheduler.

Defines Pydantic models for tasks, collections, triggers and runs.
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from task_scheduler.errors import RunStateError


# Separator between collection name and task name in a task id
TASK_ID_SEPARATOR = "."


def make_task_id(collection: str, name: str) -> str:
    """Build a task id from its collection and name."""
    return f"{collection}{TASK_ID_SEPARATOR}{name}"


def split_task_id(task_id: str) -> tuple:
    """
    Split a task id into (collection, name).

    Only the first dot separates the collection; the rest belongs to the name.
    """
    collection, _, name = task_id.partition(TASK_ID_SEPARATOR)
    return collection, name


def is_task_id(value: str) -> bool:
    """Task ids always contain a dot; collection names never do."""
    return TASK_ID_SEPARATOR in value


# =============================================================================
# TRIGGERS
# =============================================================================

class TimeTrigger(BaseModel):
    """Recurring wall-clock trigger described by a cron expression."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    time: str = Field(..., description="Cron expression, e.g. '*/10 * * * *'")

    @field_validator("time")
    @classmethod
    def validate_expression(cls, v: str) -> str:
        v = v.strip()
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v


class AfterTrigger(BaseModel):
    """Fires when the referenced task completes successfully."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    after: str = Field(..., description="Id of the task this one depends on")

    @field_validator("after")
    @classmethod
    def validate_reference(cls, v: str) -> str:
        v = v.strip()
        if not is_task_id(v):
            raise ValueError(f"'after' must reference a full task id (<collection>.<name>): {v!r}")
        return v


Trigger = Union[TimeTrigger, AfterTrigger]


def check_trigger_keys(data: Any) -> Any:
    """Reject trigger definitions with neither or both of 'time' and 'after'."""
    if data is None or isinstance(data, (TimeTrigger, AfterTrigger)):
        return data
    if not isinstance(data, dict):
        raise ValueError("trigger must be an object with a 'time' or 'after' key")
    if ("time" in data) == ("after" in data):
        raise ValueError("trigger must have exactly one of 'time' or 'after'")
    return data


# =============================================================================
# TASKS AND COLLECTIONS
# =============================================================================

class Task(BaseModel):
    """
    A named, schedulable shell command.

    Stored with collection defaults already merged in.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Globally unique id: <collection>.<name>")
    name: str
    collection: str
    command: str = Field(..., description="Shell command run with sh -c")
    cwd: Optional[str] = Field(default=None, description="Working directory")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    trigger: Optional[Trigger] = Field(default=None, description="Time or dependency trigger")
    enabled: bool = True

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("command must not be empty")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name must not be empty")
        return v

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        return validate_collection_name(v)

    @field_validator("trigger", mode="before")
    @classmethod
    def validate_trigger(cls, v: Any) -> Any:
        return check_trigger_keys(v)

    @model_validator(mode="after")
    def check_id(self) -> "Task":
        if self.id != make_task_id(self.collection, self.name):
            raise ValueError(f"Task id {self.id!r} does not match {self.collection!r}.{self.name!r}")
        return self

    def to_definition(self) -> Dict[str, Any]:
        """Serialize as a collection-file task entry (no id/name/collection)."""
        data = self.model_dump(exclude={"id", "name", "collection"}, exclude_none=True)
        if not data.get("env"):
            data.pop("env", None)
        return data


def validate_collection_name(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("collection name must not be empty")
    if TASK_ID_SEPARATOR in v:
        raise ValueError(f"collection name must not contain a dot: {v!r}")
    return v


class CollectionConfig(BaseModel):
    """Per-collection switches."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = True


class Collection(BaseModel):
    """A named group of tasks sharing defaults and an enable switch."""

    name: str
    config: CollectionConfig = Field(default_factory=CollectionConfig)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    tasks: Dict[str, Task] = Field(default_factory=dict, description="Task name -> Task")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_collection_name(v)

    @property
    def enabled(self) -> bool:
        return self.config.enabled


class CollectionDefinition(BaseModel):
    """
    Bulk definition of one collection.

    Shape of a collection file and of full-sync update requests:
    {collection, defaults, config: {enabled}, tasks: {name: {...}}}
    """

    collection: str
    defaults: Dict[str, Any] = Field(default_factory=dict)
    config: CollectionConfig = Field(default_factory=CollectionConfig)
    tasks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def lift_enabled(cls, data: Any) -> Any:
        # {"enabled": false} at top level is shorthand for {"config": {"enabled": false}}
        if isinstance(data, dict) and "enabled" in data and "config" not in data:
            data = dict(data)
            data["config"] = {"enabled": data.pop("enabled")}
        return data

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        return validate_collection_name(v)

    @field_validator("tasks")
    @classmethod
    def validate_task_names(cls, v: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        for name in v:
            if TASK_ID_SEPARATOR in name:
                raise ValueError(f"task names inside a collection must not contain a dot: {name!r}")
        return v


class CollectionView(BaseModel):
    """Collection as returned by task listings (tasks keyed by task id)."""

    collection: str
    defaults: Dict[str, Any] = Field(default_factory=dict)
    config: CollectionConfig = Field(default_factory=CollectionConfig)
    tasks: Dict[str, Task] = Field(default_factory=dict)


# =============================================================================
# RUNS
# =============================================================================

class RunState(str, Enum):
    """Run lifecycle state."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"


class RunTask(BaseModel):
    """Immutable snapshot of what a run executes, taken at enqueue time."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    collection: Optional[str] = None
    command: str
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_task(cls, task: Task) -> "RunTask":
        return cls(
            id=task.id,
            collection=task.collection,
            command=task.command,
            cwd=task.cwd,
            env=dict(task.env),
        )

    @property
    def label(self) -> str:
        """Task id, or the command itself for ad-hoc runs."""
        return self.id or self.command


class Run(BaseModel):
    """
    One concrete execution of a task or ad-hoc command.

    State machine: queued -> running -> complete. A completed run
    rejects any further mutation.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task: RunTask
    state: RunState = RunState.QUEUED
    triggered_by: str = Field(default="manual", description="manual, time, after:<id> or cascade:<id>")

    pid: Optional[int] = None
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("state") == RunState.COMPLETE:
            raise RunStateError(f"Run {self.id} is complete and cannot be modified")
        super().__setattr__(name, value)

    def start(self) -> None:
        """Queued -> Running."""
        if self.state != RunState.QUEUED:
            raise RunStateError(f"Cannot start run {self.id} in state {self.state.value}")
        self.started_at = datetime.now().isoformat()
        self.state = RunState.RUNNING

    def complete(self, exit_code: int) -> None:
        """Running -> Complete(exit_code)."""
        if self.state != RunState.RUNNING:
            raise RunStateError(f"Cannot complete run {self.id} in state {self.state.value}")
        self.exit_code = exit_code
        self.completed_at = datetime.now().isoformat()
        self.state = RunState.COMPLETE

    def fail(self, reason: str) -> None:
        """Finish without an exit code (never spawned, or crashed in the worker)."""
        if self.state == RunState.COMPLETE:
            raise RunStateError(f"Run {self.id} is already complete")
        self.error = reason
        self.completed_at = datetime.now().isoformat()
        self.state = RunState.COMPLETE

    @property
    def is_complete(self) -> bool:
        return self.state == RunState.COMPLETE

    @property
    def succeeded(self) -> bool:
        return self.is_complete and self.exit_code == 0

    def duration(self) -> Optional[float]:
        """Elapsed seconds since start (until completion if complete)."""
        if not self.started_at:
            return None
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at) if self.completed_at else datetime.now()
        return (end - start).total_seconds()

    def duration_human(self) -> str:
        seconds = self.duration()
        if seconds is None:
            return "not started"
        minutes, secs = divmod(int(round(seconds)), 60)
        hours, minutes = divmod(minutes, 60)
        if hours:
            return f"{hours}h {minutes}m {secs}s"
        if minutes:
            return f"{minutes}m {secs}s"
        return f"{seconds:.1f}s"


# =============================================================================
# REPORTS
# =============================================================================

class StatusSnapshot(BaseModel):
    """Point-in-time view of the scheduler."""

    workers: List[str] = Field(default_factory=list, description="Labels of running tasks")
    queue: List[str] = Field(default_factory=list, description="Labels of queued runs")
    active_timers: List[str] = Field(default_factory=list)
    is_paused: bool = False
    max_workers: int = 1
    collections: List[str] = Field(default_factory=list)
    total_tasks: int = 0


class LoadReport(BaseModel):
    """Outcome of loading a directory of collection files."""

    loaded: List[str] = Field(default_factory=list, description="Collections loaded")
    errors: Dict[str, str] = Field(default_factory=dict, description="File path -> error message")

    @property
    def ok(self) -> bool:
        return not self.errors
