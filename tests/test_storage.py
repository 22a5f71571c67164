"""Tests for job and import run storage.

The same behaviour is checked against the in-memory stores and the SQL
stores on a throwaway SQLite file:
- Jobs are unique per (source_feed, guid) and round-trip intact
- Runs are updated as a whole and refuse inconsistent counts
- Listing filters, ordering and time windows
- SQL sessions run off the event loop, so a locked database does not stall
  other coroutines
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from jobfeed.errors import DuplicateKeyError
from jobfeed.factory import get_engine
from jobfeed.models import FailedJob, ImportRun, ImportRunStatus, JobRecord, summarize_runs
from jobfeed.storage.memory import InMemoryImportRunStorage, InMemoryJobStorage
from jobfeed.storage.sql import SQLImportRunStorage, SQLJobStorage

from tests.conftest import locked_sqlite

FEED_URL = "https://jobs.example.com/feed.xml"


def make_job(guid: str, published_at: datetime | None = None, **overrides) -> JobRecord:
    return JobRecord(
        title=overrides.pop("title", f"Job {guid}"),
        company="Acme",
        source_feed=overrides.pop("source_feed", FEED_URL),
        source_name="TestFeed",
        guid=guid,
        published_at=published_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
        **overrides,
    )


def make_run(run_id: str, **overrides) -> ImportRun:
    fields = {"id": run_id, "source_feed": FEED_URL, "source_name": "TestFeed", "total_fetched": 3}
    fields.update(overrides)
    return ImportRun(**fields)


@pytest.fixture(params=["memory", "sql"])
def stores(request, tmp_path):
    """(job storage, run storage) pairs for every backend."""
    if request.param == "memory":
        yield InMemoryJobStorage(), InMemoryImportRunStorage()
        return
    engine = get_engine(f"sqlite:///{tmp_path / 'jobfeed.db'}")
    yield SQLJobStorage(engine), SQLImportRunStorage(engine)
    engine.dispose()


class TestJobStorage:
    async def test_insert_and_get_round_trip(self, stores) -> None:
        jobs, _ = stores
        job = make_job("1", tags=["python"], raw_data={"title": "Job 1", "extra": {"nested": True}})

        await jobs.insert(job)
        stored = await jobs.get(FEED_URL, "1")

        assert stored is not None
        assert stored.title == "Job 1"
        assert stored.tags == ["python"]
        assert stored.raw_data == {"title": "Job 1", "extra": {"nested": True}}
        assert stored.published_at == job.published_at
        assert await jobs.get(FEED_URL, "missing") is None

    async def test_duplicate_key_is_rejected(self, stores) -> None:
        jobs, _ = stores
        await jobs.insert(make_job("1"))

        with pytest.raises(DuplicateKeyError):
            await jobs.insert(make_job("1", title="Again"))
        assert await jobs.count() == 1

    async def test_update(self, stores) -> None:
        jobs, _ = stores
        await jobs.insert(make_job("1"))

        assert await jobs.update(make_job("1", title="Renamed"))
        assert not await jobs.update(make_job("2"))
        assert (await jobs.get(FEED_URL, "1")).title == "Renamed"

    async def test_stored_copy_is_isolated(self, stores) -> None:
        jobs, _ = stores
        job = make_job("1", tags=["a"])
        await jobs.insert(job)

        job.tags.append("b")
        fetched = await jobs.get(FEED_URL, "1")
        fetched.tags.append("c")

        assert (await jobs.get(FEED_URL, "1")).tags == ["a"]

    async def test_list_jobs_newest_first_with_filter(self, stores) -> None:
        jobs, _ = stores
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        await jobs.insert(make_job("old", published_at=base))
        await jobs.insert(make_job("new", published_at=base + timedelta(days=2)))
        await jobs.insert(make_job("other", published_at=base + timedelta(days=1), source_feed="https://other/rss"))

        assert [j.guid for j in await jobs.list_jobs()] == ["new", "other", "old"]
        assert [j.guid for j in await jobs.list_jobs(source_feed=FEED_URL)] == ["new", "old"]
        assert [j.guid for j in await jobs.list_jobs(limit=1, offset=1)] == ["other"]


class TestImportRunStorage:
    async def test_create_get_update(self, stores) -> None:
        _, runs = stores
        await runs.create(make_run("r1"))

        updated = await runs.update(
            "r1",
            total_imported=2,
            new_jobs=1,
            updated_jobs=1,
            failed_jobs=[FailedJob(guid="x", reason="normalization", error="bad")],
            status=ImportRunStatus.PARTIAL,
            duration_ms=120,
        )

        assert updated.failed_count == 1
        assert updated.success_rate == 67
        stored = await runs.get("r1")
        assert stored.status == ImportRunStatus.PARTIAL
        assert stored.failed_jobs[0].guid == "x"
        assert await runs.update("missing", status=ImportRunStatus.FAILED) is None

    async def test_inconsistent_counts_are_refused(self, stores) -> None:
        _, runs = stores
        await runs.create(make_run("r1"))

        with pytest.raises(ValidationError):
            await runs.update("r1", total_imported=2, new_jobs=1, updated_jobs=0)
        with pytest.raises(ValidationError):
            await runs.update("r1", total_imported=4, new_jobs=4)

        assert (await runs.get("r1")).total_imported == 0

    async def test_list_runs_filters_and_window(self, stores) -> None:
        _, runs = stores
        now = datetime.now(timezone.utc)
        await runs.create(make_run("old", started_at=now - timedelta(days=10), status=ImportRunStatus.COMPLETED))
        await runs.create(make_run("mid", started_at=now - timedelta(days=1), status=ImportRunStatus.FAILED))
        await runs.create(make_run("new", started_at=now, source_feed="https://other/rss"))

        assert [r.id for r in await runs.list_runs()] == ["new", "mid", "old"]
        assert [r.id for r in await runs.list_runs(status=ImportRunStatus.FAILED)] == ["mid"]
        assert [r.id for r in await runs.list_runs(source_feed=FEED_URL)] == ["mid", "old"]
        assert [r.id for r in await runs.list_since(now - timedelta(days=2))] == ["new", "mid"]
        assert await runs.count() == 3


class TestSummarizeRuns:
    def test_empty(self) -> None:
        assert summarize_runs([]).total_imports == 0

    def test_aggregates(self) -> None:
        stats = summarize_runs(
            [
                make_run("a", total_imported=2, new_jobs=2, duration_ms=100, status=ImportRunStatus.COMPLETED),
                make_run("b", status=ImportRunStatus.FAILED, duration_ms=300),
            ]
        )

        assert stats.total_imports == 2
        assert stats.total_jobs_fetched == 6
        assert stats.total_new_jobs == 2
        assert stats.avg_duration_ms == 200
        assert stats.successful_imports == 1
        assert stats.failed_imports == 1


class TestSQLStorageThreads:
    async def test_locked_database_does_not_block_the_loop(self, tmp_path) -> None:
        path = tmp_path / "jobfeed.db"
        engine = get_engine(f"sqlite:///{path}")
        jobs = SQLJobStorage(engine)
        try:
            with locked_sqlite(path):
                pending = asyncio.create_task(jobs.get(FEED_URL, "1"))
                started = time.monotonic()
                await asyncio.sleep(0.1)
                assert time.monotonic() - started < 1.0
                assert not pending.done()

            assert await pending is None
        finally:
            engine.dispose()

    async def test_in_memory_database_is_shared_across_threads(self) -> None:
        engine = get_engine("sqlite://")
        jobs, runs = SQLJobStorage(engine), SQLImportRunStorage(engine)
        try:
            for i in range(5):
                await jobs.insert(make_job(str(i)))
            await runs.create(make_run("r1"))

            assert await jobs.count() == 5
            assert (await runs.get("r1")).source_name == "TestFeed"
        finally:
            engine.dispose()
