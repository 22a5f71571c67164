"""Named work queues with bounded-concurrency asyncio workers.

`WorkQueue` sits between callers and a `QueueBrokerInterface`. It bounds every
call a caller waits on: submission races ``submit_timeout`` and each stats
count races ``stats_timeout``, so a stalled broker can never hang an import
pass or a status request. Workers are plain asyncio tasks, ``concurrency``
per queue, each claiming and running one task at a time.

Delivery is at-least-once. A handler that raises is retried by the broker
with exponential backoff until the task's attempt budget is spent; handlers
must therefore be idempotent.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

from jobfeed.clock import utc_now
from jobfeed.errors import QueueUnavailableError
from jobfeed.queue.interfaces import QueueBrokerInterface
from jobfeed.queue.models import QueueOptions, QueueStats, QueueTask, TaskState

logger = logging.getLogger(__name__)

TaskHandler = Callable[[QueueTask], Awaitable[dict[str, Any] | None]]
FailureHandler = Callable[[QueueTask, BaseException], Awaitable[None]]

DEFAULT_SUBMIT_TIMEOUT = 20.0
DEFAULT_STATS_TIMEOUT = 3.0
DEFAULT_CLEAN_GRACE = 24 * 60 * 60.0


class QueueWorker:
    """The worker pool registered for one queue."""

    def __init__(
        self,
        queue_name: str,
        handler: TaskHandler,
        concurrency: int,
        on_failed: FailureHandler | None = None,
    ):
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self.on_failed = on_failed
        self.tasks: list[asyncio.Task] = []
        self.in_flight = 0
        self.resumed = asyncio.Event()
        self.resumed.set()

    @property
    def is_paused(self) -> bool:
        return not self.resumed.is_set()


class WorkQueue:
    """Submit, process and inspect tasks on named queues.

    Args:
        broker: Where tasks are stored and how their state changes.
        default_options: Options for queues without their own `configure`.
        submit_timeout: Seconds `enqueue` waits for the broker.
        stats_timeout: Seconds each count in `stats` waits for the broker.
        poll_interval: Seconds an idle worker sleeps before looking for
            delayed tasks that have become ready.
    """

    def __init__(
        self,
        broker: QueueBrokerInterface,
        default_options: QueueOptions | None = None,
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
        stats_timeout: float = DEFAULT_STATS_TIMEOUT,
        poll_interval: float = 0.5,
    ):
        self.broker = broker
        self.default_options = default_options or QueueOptions()
        self.submit_timeout = submit_timeout
        self.stats_timeout = stats_timeout
        self.poll_interval = poll_interval
        self._options: dict[str, QueueOptions] = {}
        self._workers: dict[str, QueueWorker] = {}
        self._signals: dict[str, asyncio.Event] = {}
        self._closed = False

    def configure(self, queue_name: str, options: QueueOptions) -> None:
        self._options[queue_name] = options

    def options_for(self, queue_name: str) -> QueueOptions:
        return self._options.get(queue_name, self.default_options)

    def _signal(self, queue_name: str) -> asyncio.Event:
        if queue_name not in self._signals:
            self._signals[queue_name] = asyncio.Event()
        return self._signals[queue_name]

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        name: str = "task",
        priority: int = 0,
        delay: float = 0.0,
    ) -> QueueTask:
        """Add a task to ``queue_name`` and return it.

        Raises:
            QueueUnavailableError: If the broker fails or does not answer
                within ``submit_timeout`` seconds.
        """
        if self._closed:
            raise QueueUnavailableError("Work queue is closed")
        options = self.options_for(queue_name)
        now = utc_now()
        task = QueueTask(
            id=uuid.uuid4().hex,
            queue_name=queue_name,
            name=name,
            payload=payload,
            priority=priority,
            attempts=options.attempts,
            backoff_delay=options.backoff_delay,
            state=TaskState.DELAYED if delay > 0 else TaskState.WAITING,
            available_at=now + timedelta(seconds=delay),
            created_at=now,
        )
        try:
            stored = await asyncio.wait_for(self.broker.add(task), timeout=self.submit_timeout)
        except asyncio.TimeoutError as e:
            raise QueueUnavailableError(f"Queue submission timeout after {self.submit_timeout}s") from e
        except QueueUnavailableError:
            raise
        except Exception as e:
            raise QueueUnavailableError(f"Queue submission failed: {e}") from e
        logger.debug("Enqueued %s on %s as %s (priority %s)", name, queue_name, stored.id, priority)
        self._signal(queue_name).set()
        return stored

    def register_worker(
        self,
        queue_name: str,
        handler: TaskHandler,
        concurrency: int = 5,
        on_failed: FailureHandler | None = None,
    ) -> QueueWorker:
        """Start ``concurrency`` worker loops consuming ``queue_name``.

        Must be called with a running event loop. Registering a queue twice
        returns the existing worker.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if queue_name in self._workers:
            logger.warning("Worker for queue %s already registered", queue_name)
            return self._workers[queue_name]
        worker = QueueWorker(queue_name, handler, concurrency, on_failed)
        for _ in range(concurrency):
            worker.tasks.append(asyncio.create_task(self._worker_loop(worker)))
        self._workers[queue_name] = worker
        logger.info("Started %s worker(s) for queue %s", concurrency, queue_name)
        return worker

    async def _wait_for_work(self, queue_name: str) -> None:
        signal = self._signal(queue_name)
        try:
            await asyncio.wait_for(signal.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        signal.clear()

    async def _worker_loop(self, worker: QueueWorker) -> None:
        """Claim and run tasks until cancelled."""
        while not self._closed:
            try:
                await worker.resumed.wait()
                task = await self.broker.claim(worker.queue_name)
                if task is None:
                    await self._wait_for_work(worker.queue_name)
                    continue
                worker.in_flight += 1
                try:
                    await self._run_task(worker, task)
                finally:
                    worker.in_flight -= 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Worker loop error on queue %s: %s", worker.queue_name, e)
                await asyncio.sleep(self.poll_interval)

    async def _run_task(self, worker: QueueWorker, task: QueueTask) -> None:
        options = self.options_for(worker.queue_name)
        try:
            result = await worker.handler(task)
        except Exception as e:
            error = str(e) or type(e).__name__
            updated = await self.broker.fail(task.id, error)
            if updated.state != TaskState.FAILED:
                logger.warning(
                    "Task %s (%s) attempt %s/%s failed: %s; retrying",
                    task.id,
                    task.name,
                    updated.attempts_made,
                    updated.attempts,
                    error,
                )
                return
            logger.error(
                "Task %s (%s) failed after %s attempt(s): %s", task.id, task.name, updated.attempts_made, error
            )
            await self.broker.trim(worker.queue_name, TaskState.FAILED, options.keep_failed)
            if worker.on_failed is not None:
                try:
                    await worker.on_failed(updated, e)
                except Exception:
                    logger.exception("on_failed callback raised for task %s", task.id)
            return

        await self.broker.complete(task.id, result if isinstance(result, dict) else None)
        await self.broker.trim(worker.queue_name, TaskState.COMPLETED, options.keep_completed)
        logger.debug("Task %s (%s) completed", task.id, task.name)

    async def stats(self, queue_name: str) -> QueueStats:
        """Count tasks per state; never raises.

        The counts run concurrently, each bounded by ``stats_timeout``. If any
        of them times out or fails, the result is all zeros with
        ``available=False``.
        """
        states = list(TaskState)
        try:
            counts = await asyncio.gather(
                *(asyncio.wait_for(self.broker.count(queue_name, s), timeout=self.stats_timeout) for s in states)
            )
        except Exception as e:
            logger.warning("Queue stats unavailable for %s: %s", queue_name, str(e) or type(e).__name__)
            return QueueStats.unavailable()
        return QueueStats(**{s.value: c for s, c in zip(states, counts)})

    async def get_task(self, task_id: str) -> QueueTask | None:
        return await self.broker.get(task_id)

    async def pause(self, queue_name: str) -> None:
        """Stop claiming new tasks on ``queue_name``; running tasks finish."""
        worker = self._workers.get(queue_name)
        if worker is not None:
            worker.resumed.clear()
            logger.info("Paused queue %s", queue_name)

    async def resume(self, queue_name: str) -> None:
        worker = self._workers.get(queue_name)
        if worker is not None:
            worker.resumed.set()
            self._signal(queue_name).set()
            logger.info("Resumed queue %s", queue_name)

    async def clean(self, queue_name: str, grace: float = DEFAULT_CLEAN_GRACE) -> int:
        """Remove completed and failed tasks finished more than ``grace`` seconds ago."""
        removed = 0
        for state in (TaskState.COMPLETED, TaskState.FAILED):
            removed += await self.broker.clean(queue_name, grace, state)
        logger.info("Cleaned %s finished task(s) from %s", removed, queue_name)
        return removed

    async def wait_until_idle(self, queue_name: str, timeout: float | None = None) -> None:
        """Wait until ``queue_name`` has no waiting, delayed or active tasks.

        Raises:
            asyncio.TimeoutError: If the queue is still busy after ``timeout``.
        """

        async def _poll() -> None:
            while True:
                pending = 0
                for state in (TaskState.WAITING, TaskState.DELAYED, TaskState.ACTIVE):
                    pending += await self.broker.count(queue_name, state)
                if pending == 0:
                    return
                await asyncio.sleep(min(self.poll_interval, 0.05))

        await asyncio.wait_for(_poll(), timeout=timeout)

    async def close(self) -> None:
        """Cancel all workers and close the broker."""
        self._closed = True
        tasks = [t for w in self._workers.values() for t in w.tasks]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        await self.broker.close()
        logger.info("Closed work queue")
