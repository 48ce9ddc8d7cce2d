"""
Dispatcher: fixed-interval poll loop that moves queued runs into free
worker slots.

Polling means queue changes, completions and configuration changes are all
picked up on the next tick without wiring callbacks at each site.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)


def compute_max_workers(worker_to_cpu_ratio: float, cpu_count: Optional[int] = None) -> int:
    """
    Capacity ceiling: available CPUs times the configured ratio (at least 1).

    Args:
        worker_to_cpu_ratio: Workers per CPU
        cpu_count: CPU count override (defaults to os.cpu_count())
    """
    cpus = cpu_count or os.cpu_count() or 1
    return max(1, int(round(cpus * worker_to_cpu_ratio)))


class Dispatcher:
    """Assigns queued runs to workers, up to the capacity ceiling."""

    def __init__(self, scheduler: "Scheduler"):
        self.scheduler = scheduler
        self.max_workers = compute_max_workers(scheduler.config.worker_to_cpu_ratio)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def paused(self) -> bool:
        return self.scheduler.config.pause

    @property
    def running(self) -> bool:
        return self._running

    def refresh_capacity(self) -> int:
        """
        Recompute the ceiling from the current configuration.

        Lowering it never stops workers that are already running.
        """
        max_workers = compute_max_workers(self.scheduler.config.worker_to_cpu_ratio)
        if max_workers != self.max_workers:
            logger.info(f"Max workers changed: {self.max_workers} -> {max_workers}")
            self.max_workers = max_workers
        return self.max_workers

    def tick(self) -> int:
        """
        One dispatch pass.

        Returns:
            Number of workers started
        """
        if self.paused:
            return 0

        started = 0
        queue = self.scheduler.queue
        while len(self.scheduler.workers) < self.max_workers and len(queue):
            run = queue.pop()
            self.scheduler.start_worker(run)
            started += 1
        return started

    def start(self) -> None:
        """Start polling on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._poll())
        logger.info(
            f"Dispatcher started (max workers: {self.max_workers}, "
            f"poll interval: {self.scheduler.config.poll_interval_ms}ms)"
        )

    async def stop(self) -> None:
        """Stop polling; running workers are not affected."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in dispatcher tick: {e}", exc_info=True)
            await asyncio.sleep(self.scheduler.config.poll_interval_ms / 1000.0)
