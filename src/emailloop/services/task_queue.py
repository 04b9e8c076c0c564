"""In-memory queue of pending email tasks.

The queue holds tasks between the poll that received them and the moment
their result is computed. It has a single owner (the agent scheduler) and is
only mutated from the scheduler's control flow, so it needs no locking.

Accounting rule: ``size()`` always equals the number of accepted tasks
minus the number of tasks removed. A task is removed the instant its result
exists, not once the result has been reported, so the queue stays bounded
whatever the reporting latency.
"""

from __future__ import annotations

import logging
import resource
import sys
from collections import deque
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from emailloop.schemas import Task

logger = logging.getLogger(__name__)


class TaskQueue:
    """Ordered in-memory sequence of pending tasks.

    Supports FIFO removal (drain mode) and removal by ``queue_id`` (batch
    mode, where a task is removed as soon as it has been executed).

    Example:
        queue = TaskQueue()
        accepted = queue.enqueue(tasks)
        task = queue.dequeue_front()
        queue.remove_by_identity(task.queue_id)
    """

    def __init__(self) -> None:
        self._tasks: deque[Task] = deque()
        self._ids: set[int] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def size(self) -> int:
        """Number of queued tasks."""
        return len(self._tasks)

    def enqueue(self, tasks: Iterable[Task]) -> list[Task]:
        """Append tasks in order.

        A task whose ``queue_id`` is already queued is skipped with a
        warning so that identifiers stay unique.

        Args:
            tasks: Tasks received from a poll.

        Returns:
            The tasks actually appended, in order.
        """
        accepted: list[Task] = []
        for task in tasks:
            if task.queue_id in self._ids:
                logger.warning("Task %s already queued, skipping duplicate", task.queue_id)
                continue
            self._tasks.append(task)
            self._ids.add(task.queue_id)
            accepted.append(task)

        logger.info("Queued %d task(s), queue size: %d", len(accepted), len(self._tasks))
        return accepted

    def dequeue_front(self) -> Task | None:
        """Pop the oldest task, or return None when the queue is empty."""
        if not self._tasks:
            return None
        task = self._tasks.popleft()
        self._ids.discard(task.queue_id)
        return task

    def remove_by_identity(self, queue_id: int) -> bool:
        """Remove the task with ``queue_id``.

        Returns:
            True if a task was removed, False if none was queued.
        """
        if queue_id not in self._ids:
            return False
        for task in self._tasks:
            if task.queue_id == queue_id:
                self._tasks.remove(task)
                break
        self._ids.discard(queue_id)
        return True

    def drain_all(self) -> list[Task]:
        """Empty the queue and return the discarded tasks.

        Only meant for shutdown, once the remaining tasks have been
        abandoned on purpose.
        """
        discarded = list(self._tasks)
        self._tasks.clear()
        self._ids.clear()
        if discarded:
            logger.warning(
                "Discarded %d unprocessed task(s): %s",
                len(discarded),
                [t.queue_id for t in discarded],
            )
        return discarded

    def peek_all(self) -> list[Task]:
        """Copy of the queued tasks, oldest first."""
        return list(self._tasks)

    def memory_stats(self) -> dict[str, Any]:
        """Diagnostic snapshot of the queue and process memory."""
        max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is in bytes on macOS, kilobytes elsewhere
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        return {
            "queue_size": len(self._tasks),
            "max_rss_mb": round(max_rss / divisor, 1),
        }
