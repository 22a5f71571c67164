"""
Durable queue broker on a SQLModel table.

Tasks survive process restarts. A process that dies mid-task leaves rows in
``active``; those are returned to ``waiting`` when the next broker starts, so
delivery is at-least-once. Session work runs in worker threads so a slow or
locked database never blocks the event loop.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, and_, delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, select

from jobfeed.clock import ensure_aware, utc_now
from jobfeed.queue.interfaces import QueueBrokerInterface
from jobfeed.queue.models import QueueTask, TaskState

logger = logging.getLogger(__name__)


class QueueTaskRow(SQLModel, table=True):
    """
    One queued task.
    """

    __tablename__ = "queue_tasks"

    id: str = Field(primary_key=True, description="UUID string for the task")
    queue_name: str = Field(index=True)
    name: str = Field(default="task")
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    priority: int = Field(default=0)
    attempts: int = Field(default=3)
    attempts_made: int = Field(default=0)
    backoff_delay: float = Field(default=2.0)
    state: str = Field(default="waiting", index=True, description="waiting | active | completed | failed | delayed")
    sequence: int = Field(default=0, index=True, description="Arrival order, for FIFO among equal priorities")
    available_at: datetime = Field(description="Stored as naive UTC")
    created_at: datetime = Field(description="Stored as naive UTC")
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    result: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    error: Optional[str] = Field(default=None)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    return ensure_aware(value) if value is not None else None


def _task_from_row(row: QueueTaskRow) -> QueueTask:
    return QueueTask(
        id=row.id,
        queue_name=row.queue_name,
        name=row.name,
        payload=row.payload or {},
        priority=row.priority,
        attempts=row.attempts,
        attempts_made=row.attempts_made,
        backoff_delay=row.backoff_delay,
        state=TaskState(row.state),
        sequence=row.sequence,
        available_at=_aware(row.available_at),
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        result=row.result,
        error=row.error,
    )


class SQLQueueBroker(QueueBrokerInterface):
    """
    Broker backed by the ``queue_tasks`` table.

    Claims are optimistic: the chosen row is updated only if it is still in
    the state it was read in, so two workers (or two processes) can never
    both claim the same task.
    """

    def __init__(self, engine: Engine, create_tables: bool = True, recover: bool = True):
        self.engine = engine
        if create_tables:
            SQLModel.metadata.create_all(engine, tables=[QueueTaskRow.__table__])
        if recover:
            recovered = self.recover_stalled()
            if recovered:
                logger.warning("Returned %s stalled task(s) to the waiting state", recovered)

    def recover_stalled(self) -> int:
        """Move every ``active`` task back to ``waiting``."""
        with Session(self.engine) as session:
            result = session.execute(
                update(QueueTaskRow)
                .where(QueueTaskRow.state == TaskState.ACTIVE.value)
                .values(state=TaskState.WAITING.value, started_at=None)
            )
            session.commit()
            return result.rowcount or 0

    def _require(self, session: Session, task_id: str) -> QueueTaskRow:
        row = session.get(QueueTaskRow, task_id)
        if row is None:
            raise KeyError(f"Unknown task: {task_id}")
        return row

    async def add(self, task: QueueTask) -> QueueTask:
        row = QueueTaskRow(
            id=task.id,
            queue_name=task.queue_name,
            name=task.name,
            payload=task.payload,
            priority=task.priority,
            attempts=task.attempts,
            attempts_made=task.attempts_made,
            backoff_delay=task.backoff_delay,
            state=task.state.value,
            sequence=time.time_ns(),
            available_at=_naive_utc(task.available_at),
            created_at=_naive_utc(task.created_at),
        )

        def _add() -> QueueTask:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return _task_from_row(row)

        return await asyncio.to_thread(_add)

    async def claim(self, queue_name: str) -> QueueTask | None:
        now = _naive_utc(utc_now())
        ready = and_(
            QueueTaskRow.queue_name == queue_name,
            or_(
                QueueTaskRow.state == TaskState.WAITING.value,
                and_(QueueTaskRow.state == TaskState.DELAYED.value, QueueTaskRow.available_at <= now),
            ),
        )

        def _claim() -> QueueTask | None:
            with Session(self.engine) as session:
                # Another claimer may win the race for a row; move on to the next candidate.
                for _ in range(5):
                    row = session.exec(
                        select(QueueTaskRow)
                        .where(ready)
                        .order_by(QueueTaskRow.priority, QueueTaskRow.sequence)
                        .limit(1)
                    ).first()
                    if row is None:
                        return None
                    claimed = session.execute(
                        update(QueueTaskRow)
                        .where(QueueTaskRow.id == row.id, QueueTaskRow.state == row.state)
                        .values(
                            state=TaskState.ACTIVE.value,
                            attempts_made=QueueTaskRow.attempts_made + 1,
                            started_at=now,
                        )
                    )
                    session.commit()
                    if claimed.rowcount == 1:
                        session.refresh(row)
                        return _task_from_row(row)
                    session.expire_all()
            return None

        return await asyncio.to_thread(_claim)

    async def complete(self, task_id: str, result: dict[str, Any] | None = None) -> QueueTask:
        def _complete() -> QueueTask:
            with Session(self.engine) as session:
                row = self._require(session, task_id)
                row.state = TaskState.COMPLETED.value
                row.result = result
                row.error = None
                row.finished_at = _naive_utc(utc_now())
                session.add(row)
                session.commit()
                session.refresh(row)
                return _task_from_row(row)

        return await asyncio.to_thread(_complete)

    async def fail(self, task_id: str, error: str) -> QueueTask:
        def _fail() -> QueueTask:
            with Session(self.engine) as session:
                row = self._require(session, task_id)
                task = _task_from_row(row)
                row.error = error
                if task.attempts_made < task.attempts:
                    row.state = TaskState.DELAYED.value
                    row.available_at = _naive_utc(utc_now() + task.retry_delay())
                else:
                    row.state = TaskState.FAILED.value
                    row.finished_at = _naive_utc(utc_now())
                session.add(row)
                session.commit()
                session.refresh(row)
                return _task_from_row(row)

        return await asyncio.to_thread(_fail)

    async def get(self, task_id: str) -> QueueTask | None:
        def _get() -> QueueTask | None:
            with Session(self.engine) as session:
                row = session.get(QueueTaskRow, task_id)
                return _task_from_row(row) if row else None

        return await asyncio.to_thread(_get)

    async def count(self, queue_name: str, state: TaskState) -> int:
        statement = (
            select(func.count())
            .select_from(QueueTaskRow)
            .where(QueueTaskRow.queue_name == queue_name, QueueTaskRow.state == TaskState(state).value)
        )

        def _count() -> int:
            with Session(self.engine) as session:
                return session.exec(statement).one()

        return await asyncio.to_thread(_count)

    async def clean(self, queue_name: str, grace_seconds: float, state: TaskState | None = None) -> int:
        cutoff = _naive_utc(utc_now() - timedelta(seconds=grace_seconds))
        states = [state.value] if state else [TaskState.COMPLETED.value, TaskState.FAILED.value]

        def _clean() -> int:
            with Session(self.engine) as session:
                result = session.execute(
                    delete(QueueTaskRow).where(
                        QueueTaskRow.queue_name == queue_name,
                        QueueTaskRow.state.in_(states),
                        QueueTaskRow.finished_at < cutoff,
                    )
                )
                session.commit()
                return result.rowcount or 0

        return await asyncio.to_thread(_clean)

    async def trim(self, queue_name: str, state: TaskState, keep: int) -> int:
        keep_ids = (
            select(QueueTaskRow.id)
            .where(QueueTaskRow.queue_name == queue_name, QueueTaskRow.state == state.value)
            .order_by(QueueTaskRow.finished_at.desc(), QueueTaskRow.sequence.desc())
            .limit(keep)
        )

        def _trim() -> int:
            with Session(self.engine) as session:
                result = session.execute(
                    delete(QueueTaskRow).where(
                        QueueTaskRow.queue_name == queue_name,
                        QueueTaskRow.state == state.value,
                        QueueTaskRow.id.not_in(keep_ids),
                    )
                )
                session.commit()
                return result.rowcount or 0

        return await asyncio.to_thread(_trim)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
