"""
Scheduler: the single owner of all scheduling state.

Builds the task store, trigger manager, run queue, dispatcher and
persistence gateway, hands itself to each of them, and exposes the
operations the control surface (HTTP API, websocket push) calls.

All state mutation happens on one asyncio event loop: timer firings,
dispatcher ticks, child process I/O and file watcher callbacks are all
delivered there.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from task_scheduler.config import ConfigManager, SchedulerConfig
from task_scheduler.dispatcher import Dispatcher
from task_scheduler.errors import ValidationError
from task_scheduler.events import EventBus, EventType
from task_scheduler.models import (
    Collection,
    CollectionView,
    LoadReport,
    Run,
    RunTask,
    StatusSnapshot,
    Task,
)
from task_scheduler.persistence import PersistenceGateway
from task_scheduler.run_queue import RunQueue
from task_scheduler.store import TaskStore
from task_scheduler.triggers import TriggerManager
from task_scheduler.watcher import CollectionFileWatcher
from task_scheduler.worker import Worker


logger = logging.getLogger(__name__)


class Scheduler:
    """
    Scheduling daemon core.

    Lifecycle: construct, load collections, `await start()`, and
    `await shutdown()` on a termination signal.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        config_manager: Optional[ConfigManager] = None
    ):
        """
        Initialize scheduler.

        Args:
            config: In-memory configuration (ignored if config_manager is given)
            config_manager: Configuration manager backed by a config file
        """
        self.config_manager = config_manager or ConfigManager.from_config(config or SchedulerConfig())

        self.events = EventBus()
        self.store = TaskStore(self)
        self.triggers = TriggerManager(self)
        self.queue = RunQueue()
        self.workers: Dict[str, Worker] = {}
        self.dispatcher = Dispatcher(self)
        self.persistence = PersistenceGateway(self)
        self.watcher: Optional[CollectionFileWatcher] = None

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.started_at: Optional[str] = None
        self.shutdown_requested = False

    @property
    def config(self) -> SchedulerConfig:
        return self.config_manager.config

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Arm timers, start the dispatcher and the optional file watcher."""
        self.loop = asyncio.get_running_loop()
        self.started_at = datetime.now().isoformat()
        self.shutdown_requested = False

        self.triggers.attach(self.loop)
        self.dispatcher.start()

        tasks_path = self.persistence.tasks_path
        if self.config.watch_tasks_path and tasks_path is not None:
            self.watcher = CollectionFileWatcher(self, self.loop, self.config.watch_debounce_ms)
            self.watcher.start(tasks_path)

        logger.info(
            f"Scheduler '{self.config.name}' started: {len(self.store.collections)} collection(s), "
            f"{len(self.store.tasks)} task(s)"
        )

    async def shutdown(self, sig: int = signal.SIGTERM) -> None:
        """
        Graceful shutdown.

        Stops dispatching, disarms timers, forwards `sig` to every live
        child and waits until the active worker set is empty.
        """
        if self.shutdown_requested:
            return
        self.shutdown_requested = True

        self.config_manager.update(pause=True)
        logger.info(f"Kill ({signal.Signals(sig).name}) signal received. Waiting for workers to finish")

        await self.dispatcher.stop()
        self.triggers.detach()
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None

        for worker in list(self.workers.values()):
            worker.kill(sig)

        interval = self.config.shutdown_poll_interval_ms / 1000.0
        while self.workers:
            logger.info(f"Still waiting for {len(self.workers)} workers to finish")
            await asyncio.sleep(interval)

        logger.info("All workers complete")
        self.loop = None

    # =========================================================================
    # Configuration and status
    # =========================================================================

    def get_config(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def set_config(self, **values) -> SchedulerConfig:
        """
        Update configuration; capacity is recomputed immediately.

        Raises:
            ValidationError: Unknown key or invalid value
        """
        was_paused = self.config.pause
        config = self.config_manager.update(**values)
        self.dispatcher.refresh_capacity()
        if config.pause != was_paused:
            logger.info("Dispatch paused" if config.pause else "Dispatch resumed")
        return config

    def status(self) -> StatusSnapshot:
        return StatusSnapshot(
            workers=[worker.run.task.label for worker in self.workers.values()],
            queue=self.queue.get_present_task_ids(),
            active_timers=self.triggers.active_timers(),
            is_paused=self.config.pause,
            max_workers=self.dispatcher.max_workers,
            collections=list(self.store.collections),
            total_tasks=len(self.store.tasks),
        )

    def ps(self) -> Dict[str, Any]:
        """Running processes."""
        runs = [worker.run for worker in self.workers.values()]
        return {
            "count": len(runs),
            "pids": [run.pid for run in runs if run.pid is not None],
            "runs": runs,
        }

    def get_runs(self) -> Dict[str, List[Run]]:
        """Queued and running runs, for live status pushes."""
        return {
            "queued": list(self.queue),
            "running": [worker.run for worker in self.workers.values()],
        }

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(self, definition: Mapping[str, Any]) -> Task:
        return self.store.create_task(definition)

    def update_task(self, task_id: str, definition: Mapping[str, Any]) -> Task:
        return self.store.update_task(task_id, definition)

    def delete_task(self, task_id: str) -> None:
        self.store.delete_task(task_id)

    def enable_task(self, task_id: str) -> Task:
        return self.store.enable_task(task_id)

    def disable_task(self, task_id: str) -> Task:
        return self.store.disable_task(task_id)

    def get_task(self, task_id: str) -> Task:
        return self.store.get_task(task_id)

    def get_tasks(self, task_filter: Optional[str] = None) -> List[CollectionView]:
        return self.store.get_tasks(task_filter)

    # =========================================================================
    # Collections
    # =========================================================================

    def create_collection_and_tasks(self, bulk: Any) -> Collection:
        return self.store.create_collection_and_tasks(bulk)

    def update_collection_and_tasks(self, bulk: Any) -> Collection:
        return self.store.update_collection_and_tasks(bulk)

    def get_collection(self, name: str) -> Collection:
        return self.store.get_collection(name)

    def get_collection_defaults(self, name: str) -> Dict[str, Any]:
        return self.store.get_collection_defaults(name)

    def set_collection_defaults(self, name: str, defaults: Mapping[str, Any]) -> Collection:
        return self.store.set_collection_defaults(name, defaults)

    def enable_collection(self, name: str) -> Optional[List[str]]:
        return self.store.enable_collection(name)

    def disable_collection(self, name: str) -> Optional[List[str]]:
        return self.store.disable_collection(name)

    def delete_collection(self, name: str) -> List[str]:
        """Delete a collection, its tasks and its collection file."""
        task_ids = self.store.delete_collection(name)
        self.persistence.delete_collection_file(name)
        return task_ids

    # =========================================================================
    # Runs and queue
    # =========================================================================

    def run_task(self, task_id_or_command: str, triggered_by: str = "manual") -> Run:
        """
        Queue a run.

        Args:
            task_id_or_command: A known task id, or else an ad-hoc shell command
            triggered_by: manual, time, after:<id>

        Returns:
            The queued Run
        """
        if not isinstance(task_id_or_command, str) or not task_id_or_command.strip():
            raise ValidationError("A task id or command is required")

        task = self.store.tasks.get(task_id_or_command)
        if task is not None:
            run_task = RunTask.from_task(task)
        else:
            run_task = RunTask(command=task_id_or_command)

        run = Run(task=run_task, triggered_by=triggered_by)
        self.queue.push(run)
        logger.info(f"Added \"{run_task.label}\" to the queue ({triggered_by})")
        self.events.emit(EventType.QUEUE_NEW, run)
        return run

    def skip_task(self, task_id: str, reason: str, triggered_by: str) -> Run:
        """Record a run of `task_id` that fails without executing (dependency cascade)."""
        task = self.store.get_task(task_id)
        run = Run(task=RunTask.from_task(task), triggered_by=triggered_by)
        run.fail(reason)
        logger.warning(f"Skipping {task_id}: {reason}")
        self.events.emit(EventType.RUN_SKIPPED, run)
        return run

    def start_worker(self, run: Run) -> Worker:
        """Hand a run to a new worker on the control loop."""
        worker = Worker(run, self)
        self.workers[run.id] = worker
        worker.task = asyncio.get_running_loop().create_task(worker.execute())
        return worker

    def get_queue(self) -> List[str]:
        return self.queue.get_present_task_ids()

    def clear_queue(self, task_id: Optional[str] = None) -> int:
        removed = self.queue.clear(task_id)
        logger.info(f"Cleared {removed} run(s) from the queue")
        return removed

    # =========================================================================
    # Persistence
    # =========================================================================

    def load_tasks(self) -> LoadReport:
        return self.persistence.load_tasks()

    def load_collection_from_file(self, path: Path) -> Collection:
        return self.persistence.load_collection_from_file(path)

    def save_tasks(self) -> List[Path]:
        return self.persistence.save_tasks()
