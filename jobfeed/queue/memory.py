"""Process-local queue broker.

Tasks live in a ``dict`` and are lost when the process exits. Every method
runs without an ``await`` between reading and writing task state, so claims
are atomic with respect to other coroutines on the same event loop.
"""

import itertools
from datetime import timedelta
from typing import Any

from jobfeed.clock import utc_now
from jobfeed.queue.interfaces import QueueBrokerInterface
from jobfeed.queue.models import QueueTask, TaskState


class InMemoryQueueBroker(QueueBrokerInterface):
    """In-memory broker for tests, development and single-process runs."""

    def __init__(self) -> None:
        self._tasks: dict[str, QueueTask] = {}
        self._sequence = itertools.count(1)

    def _require(self, task_id: str) -> QueueTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    async def add(self, task: QueueTask) -> QueueTask:
        stored = task.model_copy(update={"sequence": next(self._sequence)}, deep=True)
        self._tasks[stored.id] = stored
        return stored.model_copy(deep=True)

    async def claim(self, queue_name: str) -> QueueTask | None:
        now = utc_now()
        ready = [
            t
            for t in self._tasks.values()
            if t.queue_name == queue_name
            and (t.state == TaskState.WAITING or (t.state == TaskState.DELAYED and t.available_at <= now))
        ]
        if not ready:
            return None
        task = min(ready, key=lambda t: (t.priority, t.sequence))
        task.state = TaskState.ACTIVE
        task.attempts_made += 1
        task.started_at = now
        return task.model_copy(deep=True)

    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> QueueTask:
        task = self._require(task_id)
        task.state = TaskState.COMPLETED
        task.result = result
        task.error = None
        task.finished_at = utc_now()
        return task.model_copy(deep=True)

    async def fail(self, task_id: str, error: str) -> QueueTask:
        task = self._require(task_id)
        task.error = error
        if task.attempts_made < task.attempts:
            task.state = TaskState.DELAYED
            task.available_at = utc_now() + task.retry_delay()
        else:
            task.state = TaskState.FAILED
            task.finished_at = utc_now()
        return task.model_copy(deep=True)

    async def get(self, task_id: str) -> QueueTask | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def count(self, queue_name: str, state: TaskState) -> int:
        return sum(1 for t in self._tasks.values() if t.queue_name == queue_name and t.state == state)

    async def clean(self, queue_name: str, grace_seconds: float, state: TaskState | None = None) -> int:
        cutoff = utc_now() - timedelta(seconds=grace_seconds)
        doomed = [
            t.id
            for t in self._tasks.values()
            if t.queue_name == queue_name
            and t.is_finished
            and (state is None or t.state == state)
            and t.finished_at is not None
            and t.finished_at < cutoff
        ]
        for task_id in doomed:
            del self._tasks[task_id]
        return len(doomed)

    async def trim(self, queue_name: str, state: TaskState, keep: int) -> int:
        finished = sorted(
            (t for t in self._tasks.values() if t.queue_name == queue_name and t.state == state),
            key=lambda t: (t.finished_at or t.created_at, t.sequence),
            reverse=True,
        )
        doomed = finished[keep:]
        for task in doomed:
            del self._tasks[task.id]
        return len(doomed)

    async def close(self) -> None:
        self._tasks.clear()
