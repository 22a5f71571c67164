"""Tests for the work queue and its brokers.

This module verifies:
- Claim order: lower priority value first, FIFO among equals
- Retries with exponential backoff until the attempt budget is spent
- The failure callback fires once, after the last attempt
- Submission and statistics are bounded by their timeouts
- Pause/resume, cleaning and retention trimming
- The SQL broker returns stalled active tasks to waiting on startup
- A locked SQL database cannot hold submission or statistics past their timeouts
"""

import asyncio
import time

import pytest

from jobfeed.errors import QueueUnavailableError
from jobfeed.factory import get_engine
from jobfeed.queue.memory import InMemoryQueueBroker
from jobfeed.queue.models import QueueOptions, QueueStats, QueueTask, TaskState
from jobfeed.queue.service import WorkQueue
from jobfeed.queue.sql import SQLQueueBroker

from tests.conftest import eventually, locked_sqlite

QUEUE = "test-queue"


class HangingBroker(InMemoryQueueBroker):
    """A broker whose add and count never answer in time."""

    async def add(self, task: QueueTask) -> QueueTask:
        await asyncio.sleep(10)
        return await super().add(task)

    async def count(self, queue_name: str, state: TaskState) -> int:
        await asyncio.sleep(10)
        return 0


class BrokenBroker(InMemoryQueueBroker):
    async def add(self, task: QueueTask) -> QueueTask:
        raise ConnectionError("broker is down")


class TestClaimOrder:
    async def test_priority_then_fifo(self, work_queue: WorkQueue, broker: InMemoryQueueBroker) -> None:
        await work_queue.enqueue(QUEUE, {"n": 1}, name="low", priority=5)
        await work_queue.enqueue(QUEUE, {"n": 2}, name="first", priority=1)
        await work_queue.enqueue(QUEUE, {"n": 3}, name="second", priority=1)

        claimed = [await broker.claim(QUEUE) for _ in range(3)]

        assert [t.name for t in claimed] == ["first", "second", "low"]
        assert all(t.state == TaskState.ACTIVE and t.attempts_made == 1 for t in claimed)
        assert await broker.claim(QUEUE) is None

    async def test_delayed_task_is_not_claimable_yet(self, work_queue: WorkQueue, broker: InMemoryQueueBroker) -> None:
        task = await work_queue.enqueue(QUEUE, {}, delay=60)

        assert task.state == TaskState.DELAYED
        assert await broker.claim(QUEUE) is None

    async def test_queues_are_independent(self, work_queue: WorkQueue, broker: InMemoryQueueBroker) -> None:
        await work_queue.enqueue("other", {})
        assert await broker.claim(QUEUE) is None


class TestRetries:
    def test_backoff_doubles(self) -> None:
        task = QueueTask(id="t", queue_name=QUEUE, backoff_delay=2.0)

        delays = [task.model_copy(update={"attempts_made": n}).retry_delay().total_seconds() for n in (1, 2, 3)]

        assert delays == [2.0, 4.0, 8.0]

    async def test_failed_attempt_is_delayed_by_backoff(self, broker: InMemoryQueueBroker) -> None:
        queue = WorkQueue(broker, default_options=QueueOptions(attempts=3, backoff_delay=30.0))
        await queue.enqueue(QUEUE, {})
        claimed = await broker.claim(QUEUE)

        failed = await broker.fail(claimed.id, "boom")

        assert failed.state == TaskState.DELAYED
        assert failed.error == "boom"
        assert (failed.available_at - claimed.started_at).total_seconds() >= 29
        assert await broker.claim(QUEUE) is None

    async def test_handler_retried_until_success(self, work_queue: WorkQueue) -> None:
        calls = []

        async def flaky(task: QueueTask) -> dict:
            calls.append(task.attempts_made)
            if len(calls) < 2:
                raise RuntimeError("temporary")
            return {"ok": True}

        task = await work_queue.enqueue(QUEUE, {})
        work_queue.register_worker(QUEUE, flaky, concurrency=1)
        await work_queue.wait_until_idle(QUEUE, timeout=2)

        done = await work_queue.get_task(task.id)
        assert done.state == TaskState.COMPLETED
        assert done.result == {"ok": True}
        assert calls == [1, 2]

    async def test_exhausted_task_fails_and_notifies(self, work_queue: WorkQueue) -> None:
        work_queue.configure(QUEUE, QueueOptions(attempts=2, backoff_delay=0.0))
        failures = []

        async def always_fails(task: QueueTask) -> None:
            raise ValueError("bad payload")

        async def on_failed(task: QueueTask, error: BaseException) -> None:
            failures.append((task.id, task.attempts_made, str(error)))

        task = await work_queue.enqueue(QUEUE, {})
        work_queue.register_worker(QUEUE, always_fails, concurrency=1, on_failed=on_failed)
        await eventually(lambda: failures)

        assert failures == [(task.id, 2, "bad payload")]
        stored = await work_queue.get_task(task.id)
        assert stored.state == TaskState.FAILED
        assert stored.error == "bad payload"


class TestWorkers:
    async def test_concurrency_bound(self, work_queue: WorkQueue) -> None:
        running = 0
        peak = 0

        async def handler(task: QueueTask) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        for i in range(6):
            await work_queue.enqueue(QUEUE, {"i": i})
        work_queue.register_worker(QUEUE, handler, concurrency=2)
        await work_queue.wait_until_idle(QUEUE, timeout=2)

        assert peak == 2
        assert (await work_queue.stats(QUEUE)).completed == 6

    async def test_register_twice_returns_existing_worker(self, work_queue: WorkQueue) -> None:
        async def handler(task: QueueTask) -> None:
            return None

        first = work_queue.register_worker(QUEUE, handler, concurrency=1)
        assert work_queue.register_worker(QUEUE, handler, concurrency=3) is first
        assert len(first.tasks) == 1

    async def test_pause_and_resume(self, work_queue: WorkQueue) -> None:
        handled = []

        async def handler(task: QueueTask) -> None:
            handled.append(task.id)

        work_queue.register_worker(QUEUE, handler, concurrency=1)
        await work_queue.pause(QUEUE)
        await work_queue.enqueue(QUEUE, {})
        await asyncio.sleep(0.05)

        assert handled == []
        assert (await work_queue.stats(QUEUE)).waiting == 1

        await work_queue.resume(QUEUE)
        await work_queue.wait_until_idle(QUEUE, timeout=2)
        assert len(handled) == 1

    async def test_wait_until_idle_times_out(self, work_queue: WorkQueue) -> None:
        await work_queue.enqueue(QUEUE, {})
        with pytest.raises(asyncio.TimeoutError):
            await work_queue.wait_until_idle(QUEUE, timeout=0.05)


class TestBoundedCalls:
    async def test_enqueue_times_out(self) -> None:
        queue = WorkQueue(HangingBroker(), submit_timeout=0.05)

        with pytest.raises(QueueUnavailableError, match="timeout"):
            await queue.enqueue(QUEUE, {})

    async def test_enqueue_broker_error(self) -> None:
        queue = WorkQueue(BrokenBroker())

        with pytest.raises(QueueUnavailableError, match="broker is down"):
            await queue.enqueue(QUEUE, {})

    async def test_enqueue_after_close(self, broker: InMemoryQueueBroker) -> None:
        queue = WorkQueue(broker)
        await queue.close()

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue(QUEUE, {})

    async def test_stats_degrade_when_broker_hangs(self) -> None:
        queue = WorkQueue(HangingBroker(), stats_timeout=0.05)

        stats = await asyncio.wait_for(queue.stats(QUEUE), timeout=1)

        assert stats == QueueStats.unavailable()
        assert not stats.available
        assert stats.total == 0

    async def test_stats_counts(self, work_queue: WorkQueue, broker: InMemoryQueueBroker) -> None:
        await work_queue.enqueue(QUEUE, {})
        await work_queue.enqueue(QUEUE, {}, delay=60)
        claimed = await broker.claim(QUEUE)
        await broker.complete(claimed.id, {"done": 1})
        await work_queue.enqueue(QUEUE, {})

        stats = await work_queue.stats(QUEUE)

        assert (stats.waiting, stats.delayed, stats.completed, stats.active, stats.failed) == (1, 1, 1, 0, 0)
        assert stats.available


class TestHousekeeping:
    async def test_clean_respects_grace(self, work_queue: WorkQueue, broker: InMemoryQueueBroker) -> None:
        await work_queue.enqueue(QUEUE, {})
        claimed = await broker.claim(QUEUE)
        await broker.complete(claimed.id)

        assert await work_queue.clean(QUEUE, grace=3600) == 0
        await asyncio.sleep(0.01)
        assert await work_queue.clean(QUEUE, grace=0) == 1
        assert await work_queue.get_task(claimed.id) is None

    async def test_retention_trims_completed(self, work_queue: WorkQueue) -> None:
        work_queue.configure(QUEUE, QueueOptions(keep_completed=2, backoff_delay=0.0))

        async def handler(task: QueueTask) -> None:
            return None

        for i in range(5):
            await work_queue.enqueue(QUEUE, {"i": i})
        work_queue.register_worker(QUEUE, handler, concurrency=1)
        await work_queue.wait_until_idle(QUEUE, timeout=2)

        assert (await work_queue.stats(QUEUE)).completed == 2


class TestSQLQueueBroker:
    @pytest.fixture
    def engine(self, tmp_path):
        engine = get_engine(f"sqlite:///{tmp_path / 'queue.db'}")
        yield engine
        engine.dispose()

    async def test_priority_and_lifecycle(self, engine) -> None:
        queue = WorkQueue(SQLQueueBroker(engine), default_options=QueueOptions(attempts=2, backoff_delay=0.0))
        broker = queue.broker
        await queue.enqueue(QUEUE, {"n": 1}, name="later", priority=2)
        await queue.enqueue(QUEUE, {"n": 2}, name="sooner", priority=1)

        first = await broker.claim(QUEUE)
        assert first.name == "sooner"
        assert first.payload == {"n": 2}

        retried = await broker.fail(first.id, "boom")
        assert retried.state == TaskState.DELAYED
        again = await broker.claim(QUEUE)
        assert again.id == first.id
        assert again.attempts_made == 2

        final = await broker.fail(again.id, "boom")
        assert final.state == TaskState.FAILED
        assert await broker.count(QUEUE, TaskState.FAILED) == 1

        later = await broker.claim(QUEUE)
        done = await broker.complete(later.id, {"stored": 1})
        assert done.result == {"stored": 1}
        assert (await queue.stats(QUEUE)).completed == 1

    async def test_stalled_tasks_recovered_on_startup(self, engine) -> None:
        broker = SQLQueueBroker(engine)
        queue = WorkQueue(broker)
        task = await queue.enqueue(QUEUE, {"batch": 1})
        await broker.claim(QUEUE)
        assert (await broker.get(task.id)).state == TaskState.ACTIVE

        restarted = SQLQueueBroker(engine)

        recovered = await restarted.get(task.id)
        assert recovered.state == TaskState.WAITING
        reclaimed = await restarted.claim(QUEUE)
        assert reclaimed.id == task.id
        assert reclaimed.attempts_made == 2

    async def test_trim_and_clean(self, engine) -> None:
        broker = SQLQueueBroker(engine)
        queue = WorkQueue(broker)
        for i in range(3):
            await queue.enqueue(QUEUE, {"i": i})
            claimed = await broker.claim(QUEUE)
            await broker.complete(claimed.id)

        assert await broker.trim(QUEUE, TaskState.COMPLETED, keep=1) == 2
        assert await broker.count(QUEUE, TaskState.COMPLETED) == 1
        assert await broker.clean(QUEUE, grace_seconds=3600) == 0

    async def test_stats_time_boxed_on_locked_database(self, engine, tmp_path) -> None:
        queue = WorkQueue(SQLQueueBroker(engine), stats_timeout=0.2)

        with locked_sqlite(tmp_path / "queue.db"):
            started = time.monotonic()
            stats = await queue.stats(QUEUE)
            elapsed = time.monotonic() - started

        assert stats == QueueStats.unavailable()
        assert elapsed < 1.0

    async def test_enqueue_time_boxed_on_locked_database(self, engine, tmp_path) -> None:
        queue = WorkQueue(SQLQueueBroker(engine), submit_timeout=0.2)

        with locked_sqlite(tmp_path / "queue.db"):
            started = time.monotonic()
            with pytest.raises(QueueUnavailableError, match="timeout"):
                await queue.enqueue(QUEUE, {"batch": 1})
            elapsed = time.monotonic() - started

        assert elapsed < 1.0
