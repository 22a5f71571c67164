"""Task and statistics models for the work queue."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from jobfeed.clock import utc_now


class TaskState(str, Enum):
    """Where a task is in its lifecycle. Only the broker changes it."""

    WAITING = "waiting"
    """Ready to be claimed by a worker."""

    ACTIVE = "active"
    """Claimed by a worker and being processed."""

    COMPLETED = "completed"
    """The handler returned normally."""

    FAILED = "failed"
    """The handler raised on every attempt; the retry budget is spent."""

    DELAYED = "delayed"
    """Not claimable before ``available_at`` (initial delay or retry backoff)."""


class QueueOptions(BaseModel, frozen=True):
    """Per-queue defaults applied to every task added to the queue."""

    attempts: int = Field(default=3, ge=1, description="Total handler invocations before a task fails.")
    backoff_delay: float = Field(default=2.0, ge=0, description="Seconds before the first retry; doubles each retry.")
    keep_completed: int = Field(default=100, ge=0, description="Completed tasks retained per queue.")
    keep_failed: int = Field(default=50, ge=0, description="Failed tasks retained per queue.")


class QueueTask(BaseModel):
    """A unit of work and its delivery bookkeeping.

    Claim order is ``(priority, sequence)``: a lower priority value is served
    first and equal priorities are served in arrival order.
    """

    id: str
    queue_name: str
    name: str = "task"
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    attempts: int = Field(default=3, ge=1)
    attempts_made: int = Field(default=0, ge=0)
    backoff_delay: float = Field(default=2.0, ge=0)
    state: TaskState = TaskState.WAITING
    sequence: int = 0
    available_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.state in (TaskState.COMPLETED, TaskState.FAILED)

    def retry_delay(self) -> timedelta:
        """Backoff before the next attempt: ``backoff_delay * 2 ** (attempts_made - 1)``."""
        return timedelta(seconds=self.backoff_delay * 2 ** max(self.attempts_made - 1, 0))


class QueueStats(BaseModel):
    """Task counts per state for one queue.

    ``available`` is False when the broker could not be queried; all counts
    are then zero.
    """

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    available: bool = True

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    @classmethod
    def unavailable(cls) -> "QueueStats":
        return cls(available=False)
