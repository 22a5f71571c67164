"""Queue broker interface."""

from abc import ABC, abstractmethod
from typing import Any

from jobfeed.queue.models import QueueTask, TaskState


class QueueBrokerInterface(ABC):
    """Abstract interface for task persistence and state transitions.

    The broker owns task state. Workers never edit a task directly; they
    claim it and report its outcome through `complete` or `fail`.
    """

    @abstractmethod
    async def add(self, task: QueueTask) -> QueueTask:
        """Persist a new task and return it with its arrival sequence set."""

    @abstractmethod
    async def claim(self, queue_name: str) -> QueueTask | None:
        """Atomically move the next ready task to ``active`` and return it.

        A task is ready when it is ``waiting``, or ``delayed`` with
        ``available_at`` in the past. Claiming counts as an attempt. Returns
        None when nothing is ready.
        """

    @abstractmethod
    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> QueueTask:
        """Mark an active task completed."""

    @abstractmethod
    async def fail(self, task_id: str, error: str) -> QueueTask:
        """Record a failed attempt.

        With attempts left the task becomes ``delayed`` for its backoff
        interval; otherwise it becomes ``failed``. Returns the updated task.
        """

    @abstractmethod
    async def get(self, task_id: str) -> QueueTask | None:
        """Retrieve a task by ID, or None if not found."""

    @abstractmethod
    async def count(self, queue_name: str, state: TaskState) -> int:
        """Count the tasks of ``queue_name`` in ``state``."""

    @abstractmethod
    async def clean(self, queue_name: str, grace_seconds: float, state: TaskState | None = None) -> int:
        """Delete finished tasks that finished more than ``grace_seconds`` ago.

        ``state`` narrows the sweep to completed or failed tasks. Returns the
        number of tasks removed.
        """

    @abstractmethod
    async def trim(self, queue_name: str, state: TaskState, keep: int) -> int:
        """Delete all but the ``keep`` most recently finished tasks in ``state``."""

    @abstractmethod
    async def close(self) -> None:
        """Release broker resources."""
