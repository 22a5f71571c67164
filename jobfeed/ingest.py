"""Import orchestration: from configured feeds to stored jobs.

This module provides `ImportOrchestrator`, which drives one import pass over
every configured feed source and, as the queue handler, turns queued batches
into stored jobs.

**Per feed source, in configuration order:**
    1. Fetch the feed body (`FeedFetcherInterface`)
    2. Parse it, falling back to regex extraction (`FeedParser.parse_feed`)
    3. Normalize the items into `JobRecord` instances (`JobNormalizer`)
    4. Record an `ImportRun` with status ``running``
    5. Enqueue the normalized batch tagged with that run's id

**Per queued batch (`process_batch`, run by queue workers):**
    1. Upsert every job by ``(source_feed, guid)``
    2. Write the final counts and a terminal status onto the run

A failure scoped to one feed or one item never aborts the pass. At most one
pass runs at a time; a second start request fails immediately with
`ImportBusyError`.

Example usage:
    ```python
    orchestrator = ImportOrchestrator(
        feeds=[FeedSource(url="https://example.com/jobs.xml", name="Example")],
        fetcher=FeedFetcher(),
        job_storage=InMemoryJobStorage(),
        run_storage=InMemoryImportRunStorage(),
        queue=WorkQueue(InMemoryQueueBroker()),
    )
    summary = await orchestrator.start_import()
    await orchestrator.queue.wait_until_idle(orchestrator.queue_name)
    ```
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from jobfeed.clock import ensure_aware, utc_now
from jobfeed.dedup import UpsertOutcome, upsert_job
from jobfeed.errors import ImportBusyError, MalformedFeedError, QueueUnavailableError
from jobfeed.models import FailedJob, FeedSource, ImportBatch, ImportRun, ImportRunStatus
from jobfeed.notify import (
    IMPORT_COMPLETED,
    IMPORT_ERROR,
    IMPORT_PROGRESS,
    IMPORT_STARTED,
    NullNotifier,
    ProgressNotifierInterface,
)
from jobfeed.pipeline.interfaces import FeedFetcherInterface
from jobfeed.pipeline.normalizer import JobNormalizer
from jobfeed.pipeline.parser import FeedParser
from jobfeed.queue.models import QueueStats, QueueTask
from jobfeed.queue.service import DEFAULT_CLEAN_GRACE, WorkQueue
from jobfeed.storage.interfaces import ImportRunStorageInterface, JobStorageInterface

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "job-import"


class ImportState(str, Enum):
    """Orchestrator lifecycle: Idle -> Running -> {Completed, Failed}."""

    IDLE = "idle"
    """No pass has run yet."""

    RUNNING = "running"
    """A pass is in progress; new start requests are rejected."""

    COMPLETED = "completed"
    """The last pass attempted every feed source."""

    FAILED = "failed"
    """The last pass ended with an unexpected error."""


class FeedResult(BaseModel):
    """Outcome of handing one feed source to the queue.

    ``success`` means the batch was enqueued; the final per-item counts land
    on the `ImportRun` once a worker has processed it.
    """

    model_config = {"frozen": True}

    feed_url: str
    feed_name: str
    success: bool
    import_run_id: str | None = None
    queue_task_id: str | None = None
    total_fetched: int = 0
    total_normalized: int = 0
    rejected: int = 0
    used_fallback: bool = False
    error: str | None = None


class ImportSummary(BaseModel):
    """Aggregate result of one orchestrated pass."""

    model_config = {"frozen": True}

    import_id: str
    state: ImportState
    started_at: datetime
    completed_at: datetime
    total_feeds: int
    results: tuple[FeedResult, ...] = ()

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


class ImportStatus(BaseModel):
    is_running: bool
    current_import_id: str | None = None
    state: ImportState = ImportState.IDLE
    started_at: datetime | None = None


class ProcessingStats(BaseModel):
    """Queue-derived processing counters for dashboards."""

    total_jobs: int = 0
    processed_jobs: int = 0
    failed_jobs: int = 0


class ImportOrchestrator(BaseModel):
    """Runs import passes and processes the batches they enqueue.

    The running flag and current import id are private state changed only by
    the start and finish transitions of a pass.

    Attributes:
        feeds: Feed sources, processed in this order.
        fetcher: Retrieves raw feed bodies.
        parser: Turns feed bodies into loose items.
        normalizer: Turns loose items into `JobRecord` instances.
        job_storage: Where jobs are upserted.
        run_storage: Where `ImportRun` audit rows are kept.
        queue: Work queue carrying batches to the workers.
        notifier: Receives progress events.
        queue_name: Queue the batches are submitted to.
        concurrency: Worker loops started by `start_workers`.
        batch_priority: Priority of submitted batches (lower runs first).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    feeds: list[FeedSource]
    fetcher: FeedFetcherInterface
    parser: FeedParser = Field(default_factory=FeedParser)
    normalizer: JobNormalizer = Field(default_factory=JobNormalizer)
    job_storage: JobStorageInterface
    run_storage: ImportRunStorageInterface
    queue: WorkQueue
    notifier: ProgressNotifierInterface = Field(default_factory=NullNotifier)
    queue_name: str = DEFAULT_QUEUE_NAME
    concurrency: int = Field(default=5, ge=1)
    batch_priority: int = 1

    _state: ImportState = PrivateAttr(default=ImportState.IDLE)
    _current_import_id: str | None = PrivateAttr(default=None)
    _started_at: datetime | None = PrivateAttr(default=None)
    _workers_started: bool = PrivateAttr(default=False)
    _background: set = PrivateAttr(default_factory=set)
    _last_summary: ImportSummary | None = PrivateAttr(default=None)

    @property
    def is_running(self) -> bool:
        return self._state == ImportState.RUNNING

    @property
    def last_summary(self) -> ImportSummary | None:
        return self._last_summary

    def start_workers(self) -> None:
        """Register `process_batch` as the handler of ``queue_name``; idempotent."""
        if self._workers_started:
            return
        self.queue.register_worker(
            self.queue_name,
            self.process_batch,
            concurrency=self.concurrency,
            on_failed=self.on_batch_failed,
        )
        self._workers_started = True

    def _begin(self) -> str:
        if self._state == ImportState.RUNNING:
            raise ImportBusyError(self._current_import_id)
        import_id = uuid.uuid4().hex
        self._state = ImportState.RUNNING
        self._current_import_id = import_id
        self._started_at = utc_now()
        return import_id

    async def start_import(self) -> ImportSummary:
        """Run one pass over every feed source and return its summary.

        Raises:
            ImportBusyError: If a pass is already running. Nothing is written.
        """
        import_id = self._begin()
        return await self._run(import_id)

    def trigger_import(self) -> str:
        """Start a pass in the background and return its import id at once.

        Must be called with a running event loop.

        Raises:
            ImportBusyError: If a pass is already running.
        """
        import_id = self._begin()
        task = asyncio.create_task(self._run_in_background(import_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return import_id

    async def _run_in_background(self, import_id: str) -> None:
        try:
            await self._run(import_id)
        except Exception:
            # Already logged and published by _run.
            pass

    async def _run(self, import_id: str) -> ImportSummary:
        started_at = self._started_at or utc_now()
        total = len(self.feeds)
        try:
            self.start_workers()
            logger.info("Starting import %s over %s feed(s)", import_id, total)
            self.notifier.publish(IMPORT_STARTED, {"importId": import_id})

            results: list[FeedResult] = []
            for index, feed in enumerate(self.feeds, start=1):
                self.notifier.publish(
                    IMPORT_PROGRESS,
                    {"importId": import_id, "currentFeed": index, "totalFeeds": total, "feedName": feed.name},
                )
                try:
                    result = await self.process_feed(feed, import_id=import_id)
                except Exception as e:
                    logger.exception("Unexpected error processing feed %s: %s", feed.name, e)
                    result = FeedResult(feed_url=feed.url, feed_name=feed.name, success=False, error=str(e))
                results.append(result)

            summary = ImportSummary(
                import_id=import_id,
                state=ImportState.COMPLETED,
                started_at=started_at,
                completed_at=utc_now(),
                total_feeds=total,
                results=tuple(results),
            )
            self._state = ImportState.COMPLETED
            self._last_summary = summary
            logger.info(
                "Import %s finished: %s of %s feed(s) enqueued", import_id, summary.succeeded, total
            )
            self.notifier.publish(
                IMPORT_COMPLETED,
                {
                    "importId": import_id,
                    "totalFeeds": total,
                    "results": [r.model_dump(mode="json") for r in results],
                },
            )
            return summary
        except Exception as e:
            self._state = ImportState.FAILED
            logger.exception("Import %s failed: %s", import_id, e)
            self.notifier.publish(IMPORT_ERROR, {"importId": import_id, "message": str(e)})
            raise
        finally:
            if self._state == ImportState.RUNNING:
                self._state = ImportState.FAILED
            self._current_import_id = None

    async def process_feed(self, feed: FeedSource, import_id: str | None = None) -> FeedResult:
        """Fetch, parse and normalize one feed, then enqueue its batch.

        Fetch and parse failures are returned as unsuccessful results without
        an `ImportRun`. A submission failure marks the feed's run ``failed``.
        """
        fetched = await self.fetcher.fetch(feed.url, feed.name)
        if not fetched.ok:
            return FeedResult(
                feed_url=feed.url, feed_name=feed.name, success=False, error=f"Fetch failed: {fetched.error}"
            )

        try:
            parsed = self.parser.parse_feed(fetched.text)
        except MalformedFeedError as e:
            logger.error("Could not parse feed %s: %s", feed.name, e)
            return FeedResult(feed_url=feed.url, feed_name=feed.name, success=False, error=str(e))

        jobs, rejected = self.normalizer.normalize_batch(parsed.items, feed.url, feed.name)
        run = await self.run_storage.create(
            ImportRun(
                id=uuid.uuid4().hex,
                import_id=import_id,
                source_feed=feed.url,
                source_name=feed.name,
                total_fetched=len(parsed.items),
            )
        )
        base = {
            "feed_url": feed.url,
            "feed_name": feed.name,
            "import_run_id": run.id,
            "total_fetched": len(parsed.items),
            "total_normalized": len(jobs),
            "rejected": len(rejected),
            "used_fallback": parsed.used_fallback,
        }
        batch = ImportBatch(
            import_run_id=run.id,
            import_id=import_id,
            feed_url=feed.url,
            feed_name=feed.name,
            jobs=jobs,
            rejected=rejected,
        )

        try:
            task = await self.queue.enqueue(
                self.queue_name,
                batch.model_dump(mode="json"),
                name=f"import-{feed.name}",
                priority=self.batch_priority,
            )
        except QueueUnavailableError as e:
            logger.error("Could not enqueue batch for %s: %s", feed.name, e)
            await self.run_storage.update(
                run.id,
                status=ImportRunStatus.FAILED,
                error=str(e),
                completed_at=utc_now(),
                duration_ms=_elapsed_ms(run.started_at),
            )
            return FeedResult(success=False, error=str(e), **base)

        await self.run_storage.update(run.id, queue_task_id=task.id)
        logger.info("Enqueued %s job(s) from %s as task %s", len(jobs), feed.name, task.id)
        return FeedResult(success=True, queue_task_id=task.id, **base)

    async def process_batch(self, task: QueueTask) -> dict[str, Any]:
        """Queue handler: upsert a batch and record its counts on the run.

        Safe to re-run; counts are recomputed from scratch on every delivery.
        """
        batch = ImportBatch.model_validate(task.payload)
        new_jobs = 0
        updated_jobs = 0
        failures: list[FailedJob] = list(batch.rejected)

        for job in batch.jobs:
            try:
                outcome = await upsert_job(self.job_storage, job)
            except Exception as e:
                logger.warning("Failed to store job %s from %s: %s", job.guid, batch.feed_name, e)
                failures.append(FailedJob(guid=job.guid, title=job.title, reason="storage", error=str(e)))
                continue
            if outcome == UpsertOutcome.NEW:
                new_jobs += 1
            else:
                updated_jobs += 1

        imported = new_jobs + updated_jobs
        if not failures:
            status = ImportRunStatus.COMPLETED
        elif imported:
            status = ImportRunStatus.PARTIAL
        else:
            status = ImportRunStatus.FAILED

        run = await self.run_storage.get(batch.import_run_id)
        if run is None:
            logger.warning("Import run %s not found; counts for %s not recorded", batch.import_run_id, batch.feed_name)
        else:
            await self.run_storage.update(
                run.id,
                total_imported=imported,
                new_jobs=new_jobs,
                updated_jobs=updated_jobs,
                failed_jobs=failures,
                status=status,
                error=f"All {len(failures)} item(s) failed" if status == ImportRunStatus.FAILED else None,
                completed_at=utc_now(),
                duration_ms=_elapsed_ms(run.started_at),
            )
        logger.info(
            "Processed batch for %s: %s new, %s updated, %s failed",
            batch.feed_name,
            new_jobs,
            updated_jobs,
            len(failures),
        )
        return {
            "import_run_id": batch.import_run_id,
            "total_imported": imported,
            "new_jobs": new_jobs,
            "updated_jobs": updated_jobs,
            "failed_jobs": len(failures),
        }

    async def on_batch_failed(self, task: QueueTask, error: BaseException) -> None:
        """Mark the batch's run failed once the queue gives up on it."""
        run_id = task.payload.get("import_run_id")
        if not run_id:
            return
        run = await self.run_storage.get(run_id)
        if run is None or run.is_terminal:
            return
        await self.run_storage.update(
            run_id,
            status=ImportRunStatus.FAILED,
            error=str(error) or type(error).__name__,
            completed_at=utc_now(),
            duration_ms=_elapsed_ms(run.started_at),
        )

    def get_import_status(self) -> ImportStatus:
        return ImportStatus(
            is_running=self.is_running,
            current_import_id=self._current_import_id,
            state=self._state,
            started_at=self._started_at,
        )

    async def get_queue_stats(self) -> QueueStats:
        return await self.queue.stats(self.queue_name)

    async def get_processing_stats(self) -> ProcessingStats:
        stats = await self.get_queue_stats()
        return ProcessingStats(
            total_jobs=stats.waiting + stats.active + stats.completed + stats.failed,
            processed_jobs=stats.completed,
            failed_jobs=stats.failed,
        )

    async def cleanup_queue(self, grace: float = DEFAULT_CLEAN_GRACE) -> int:
        """Remove finished tasks older than ``grace`` seconds (24 h by default)."""
        return await self.queue.clean(self.queue_name, grace)


def _elapsed_ms(started_at: datetime) -> int:
    return max(int((utc_now() - ensure_aware(started_at)).total_seconds() * 1000), 0)
