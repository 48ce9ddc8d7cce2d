"""
FIFO backlog of runs waiting for a free worker slot.
"""

from collections import deque
from typing import Deque, Iterator, List, Optional

from task_scheduler.models import Run


class RunQueue:
    """Ordered queue of pending runs."""

    def __init__(self):
        self.items: Deque[Run] = deque()

    def push(self, run: Run) -> None:
        self.items.append(run)

    def pop(self) -> Optional[Run]:
        """Remove and return the oldest run, or None if empty."""
        if not self.items:
            return None
        return self.items.popleft()

    def clear(self, task_id: Optional[str] = None) -> int:
        """
        Remove queued runs.

        Args:
            task_id: Only remove runs of this task; None empties the queue

        Returns:
            Number of runs removed
        """
        before = len(self.items)
        if task_id is None:
            self.items.clear()
        else:
            self.items = deque(run for run in self.items if run.task.id != task_id)
        return before - len(self.items)

    def get_present_task_ids(self) -> List[str]:
        """Labels of queued runs in order (task id, or command for ad-hoc runs)."""
        return [run.task.label for run in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Run]:
        return iter(list(self.items))
