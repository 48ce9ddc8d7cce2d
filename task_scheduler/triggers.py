"""
Trigger manager.

Two kinds of trigger:
- time: a cron expression; a CronTimer per task re-arms itself on the
  control loop after every firing and enqueues a run each time.
- after: the task runs when another task completes with exit code 0;
  tracked in a reverse dependency index (upstream id -> dependent ids).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, TYPE_CHECKING

from croniter import croniter

from task_scheduler.config import DependencyFailurePolicy
from task_scheduler.events import Event, EventType
from task_scheduler.models import AfterTrigger, Run, Task, TimeTrigger

if TYPE_CHECKING:
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)


class CronTimer:
    """
    Cancellable recurring wake-up for one task.

    Registered timers are inert until started on an event loop; the
    TriggerManager starts them when the scheduler starts.
    """

    def __init__(self, task_id: str, expression: str, callback: Callable[[str], None]):
        self.task_id = task_id
        self.expression = expression
        self.callback = callback
        self.next_fire: Optional[datetime] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.armed:
            return
        self._loop = loop
        self._schedule()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._loop = None

    def _schedule(self) -> None:
        now = datetime.now()
        # Never compute from before the last firing; loop timers may wake slightly early
        base = max(now, self.next_fire) if self.next_fire else now
        self.next_fire = croniter(self.expression, base).get_next(datetime)
        delay = max(0.0, (self.next_fire - now).total_seconds())
        self._handle = self._loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        try:
            self.callback(self.task_id)
        except Exception as e:
            logger.error(f"Timer for {self.task_id} failed: {e}", exc_info=True)
        finally:
            if self._loop is not None:
                self._schedule()


class TriggerManager:
    """
    Owns time-based timers and the reverse dependency index.

    Listens for run completions and enqueues dependents of successful runs.
    """

    def __init__(self, scheduler: "Scheduler"):
        self.scheduler = scheduler
        self.timers: Dict[str, CronTimer] = {}
        self.dependents: Dict[str, Set[str]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        scheduler.events.subscribe(EventType.WORKER_COMPLETE, self._on_run_complete)
        scheduler.events.subscribe(EventType.RUN_SKIPPED, self._on_run_complete)

    # =========================================================================
    # Loop attachment
    # =========================================================================

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Arm every registered timer on the control loop."""
        self._loop = loop
        for timer in self.timers.values():
            timer.start(loop)
        logger.info(f"{len(self.timers)} timer(s) armed")

    def detach(self) -> None:
        """Disarm all timers but keep their registrations."""
        for timer in self.timers.values():
            timer.cancel()
        self._loop = None

    # =========================================================================
    # Registration
    # =========================================================================

    def setup_task_triggers(self, task: Task) -> bool:
        """
        Register a task's trigger if the task and its collection are enabled.

        Any previous registration for the task is dropped first.

        Returns:
            True if a trigger is now registered
        """
        self.remove_task_triggers(task.id)

        if not task.enabled or task.trigger is None:
            return False
        collection = self.scheduler.store.collections.get(task.collection)
        if collection is not None and not collection.enabled:
            return False

        if isinstance(task.trigger, TimeTrigger):
            timer = CronTimer(task.id, task.trigger.time, self._on_timer)
            self.timers[task.id] = timer
            if self._loop is not None:
                timer.start(self._loop)
            logger.debug(f"Timer '{task.trigger.time}' registered for {task.id}")

        elif isinstance(task.trigger, AfterTrigger):
            self.dependents.setdefault(task.trigger.after, set()).add(task.id)
            logger.debug(f"{task.id} registered to run after {task.trigger.after}")

        return True

    def remove_task_triggers(self, task_id: str) -> None:
        """Cancel a task's timer and purge it from the dependency index."""
        timer = self.timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()

        for upstream in list(self.dependents):
            references = self.dependents[upstream]
            references.discard(task_id)
            if not references:
                del self.dependents[upstream]

    def get_task_references(self, task_id: str) -> List[str]:
        """Ids of tasks that run after `task_id`, sorted."""
        return sorted(self.dependents.get(task_id, ()))

    def active_timers(self) -> List[str]:
        return list(self.timers)

    # =========================================================================
    # Firing
    # =========================================================================

    def _on_timer(self, task_id: str) -> None:
        logger.info(f"Timer fired for {task_id}")
        self.scheduler.run_task(task_id, triggered_by="time")

    def _on_run_complete(self, event: Event) -> None:
        run: Run = event.payload
        upstream = run.task.id
        if not upstream:
            return

        dependents = [
            task_id for task_id in self.get_task_references(upstream)
            if task_id in self.scheduler.store.tasks
        ]
        if not dependents:
            return

        if run.succeeded:
            for task_id in dependents:
                logger.info(f"{upstream} succeeded, queueing dependent {task_id}")
                self.scheduler.run_task(task_id, triggered_by=f"after:{upstream}")
        elif self._should_cascade(run):
            for task_id in dependents:
                self.scheduler.skip_task(
                    task_id,
                    reason=f"Upstream task {upstream} failed",
                    triggered_by=f"cascade:{upstream}",
                )
        else:
            logger.info(
                f"{upstream} did not succeed (exit code {run.exit_code}), "
                f"withholding {len(dependents)} dependent(s)"
            )

    def _should_cascade(self, run: Run) -> bool:
        if self.scheduler.config.dependency_failure_policy != DependencyFailurePolicy.CASCADE:
            return False
        # Runs that never spawned (bad cwd) have no exit code and never cascade
        if run.triggered_by.startswith("cascade:"):
            return True
        return run.exit_code is not None and run.exit_code != 0
