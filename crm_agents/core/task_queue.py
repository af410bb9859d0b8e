"""In-memory priority queue of agent work items."""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Dict, List, Optional, Set, Tuple

from .errors import ValidationError
from .models import Task, TaskStatus, new_id, utcnow


class TaskQueue:
    """Yield queued tasks by priority, FIFO within a priority band.

    Every task the queue has seen is retained, including tasks dispatched
    directly through :meth:`track`. Only ids in the pending set can be handed
    out or cancelled, so a task is dequeued at most once. Nothing is
    persisted; a restart loses all queued and in-flight work. Mutations are
    synchronous so two coroutines on the same loop can never dequeue the same
    task.
    """

    def __init__(self) -> None:
        self._heap: List[Tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._tasks: Dict[str, Task] = {}
        self._pending: Set[str] = set()
        self._work_available = asyncio.Event()

    def enqueue(self, task: Task) -> str:
        if not task.type:
            raise ValidationError("Task type is required")
        if task.id is None:
            task.id = new_id("task")
        elif task.id in self._tasks:
            raise ValidationError(f"Task {task.id} is already known to the queue")
        task.status = TaskStatus.QUEUED
        task.updated_at = utcnow()
        self._tasks[task.id] = task
        self._pending.add(task.id)
        heapq.heappush(self._heap, (task.priority.rank, next(self._sequence), task.id))
        self._work_available.set()
        return task.id

    def dequeue_next(self) -> Optional[Task]:
        while self._heap:
            _, _, task_id = heapq.heappop(self._heap)
            # Cancelled tasks leave stale heap entries behind.
            if task_id not in self._pending:
                continue
            self._pending.discard(task_id)
            if not self._heap:
                self._work_available.clear()
            return self._tasks[task_id]
        self._work_available.clear()
        return None

    def track(self, task: Task) -> str:
        """Retain a task that is dispatched directly instead of queued."""
        if task.id is None:
            task.id = new_id("task")
        elif task.id in self._tasks:
            raise ValidationError(f"Task {task.id} is already known to the queue")
        self._tasks[task.id] = task
        return task.id

    def cancel(self, task_id: str) -> bool:
        if task_id not in self._pending:
            return False
        self._pending.discard(task_id)
        self._tasks[task_id].fail("cancelled")
        return True

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def list(self) -> List[Task]:
        return list(self._tasks.values())

    def pending(self) -> List[Task]:
        return [self._tasks[task_id] for _, _, task_id in sorted(self._heap) if task_id in self._pending]

    def count(self, status: TaskStatus) -> int:
        if status is TaskStatus.QUEUED:
            return len(self._pending)
        return sum(1 for task in self._tasks.values() if task.status is status)

    def __len__(self) -> int:
        return len(self._pending)

    async def wait_for_work(self) -> None:
        await self._work_available.wait()

    def notify(self) -> None:
        """Wake a waiting drain loop without adding work."""
        self._work_available.set()
