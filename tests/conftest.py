"""Test fixtures for task-scheduler tests."""

import json
from pathlib import Path
from unittest.mock import Mock

import pytest

from task_scheduler.config import SchedulerConfig
from task_scheduler.models import Run, RunTask
from task_scheduler.scheduler import Scheduler


@pytest.fixture
def tasks_dir(tmp_path):
    """Directory holding collection files."""
    path = tmp_path / "tasks"
    path.mkdir()
    return path


@pytest.fixture
def config(tasks_dir):
    """Configuration suitable for tests: no auto-save, fast polling."""
    return SchedulerConfig(
        name="test-scheduler",
        tasks_path=str(tasks_dir),
        auto_save=False,
        poll_interval_ms=20,
        shutdown_poll_interval_ms=20,
        watch_debounce_ms=10,
    )


@pytest.fixture
def scheduler(config):
    """A Scheduler that has not been started."""
    return Scheduler(config=config)


@pytest.fixture
def florida():
    """Collection with a time-triggered head and a three-step dependency chain."""
    return {
        "collection": "florida",
        "defaults": {"env": {"REGION": "florida"}},
        "config": {"enabled": True},
        "tasks": {
            "task1": {
                "command": "echo task1",
                "cwd": "/var/www/website/",
                "trigger": {"time": "*/10 * * * *"},
            },
            "task2": {
                "command": "echo task2",
                "cwd": "/var/www/website/",
                "trigger": {"after": "florida.task1"},
            },
            "task3": {
                "command": "echo task3",
                "cwd": "/var/www/website2/",
                "trigger": {"after": "florida.task2"},
            },
            "task4": {
                "command": "echo task4",
                "trigger": {"after": "florida.task3"},
            },
        },
    }


@pytest.fixture
def barankay():
    """Single time-triggered task with a default cwd."""
    return {
        "collection": "barankay",
        "defaults": {"cwd": "/x/"},
        "config": {"enabled": True},
        "tasks": {
            "send-text-messages": {
                "command": "sh test.sh",
                "trigger": {"time": "* * * * *"},
            },
        },
    }


@pytest.fixture
def write_collection(tasks_dir):
    """Write a collection definition to <tasks_dir>/<name>.tasks.json."""

    def _write(definition, name=None) -> Path:
        path = tasks_dir / f"{name or definition['collection']}.tasks.json"
        path.write_text(json.dumps(definition, indent=2))
        return path

    return _write


@pytest.fixture
def chain(scheduler):
    """Tasks chain.a (time) -> chain.b (after a) -> chain.c (after b)."""
    scheduler.create_task({"name": "chain.a", "command": "true", "trigger": {"time": "0 * * * *"}})
    scheduler.create_task({"name": "chain.b", "command": "true", "trigger": {"after": "chain.a"}})
    scheduler.create_task({"name": "chain.c", "command": "true", "trigger": {"after": "chain.b"}})
    return scheduler


@pytest.fixture
def finished_run():
    """Build a run of a task that went through queued -> running -> complete."""

    def _finished(task, exit_code=0):
        run = Run(task=RunTask.from_task(task))
        run.start()
        run.complete(exit_code)
        return run

    return _finished


@pytest.fixture
def recorder():
    """Mock usable as an event handler; records every Event it is given."""
    return Mock()
