"""In-memory storage implementations for testing and development.

Dictionary-backed versions of the storage interfaces. Suitable for unit
tests and one-off runs; nothing survives the process. Every stored model is
copied on the way in and on the way out, so callers can never mutate stored
state behind the store's back.
"""

from datetime import datetime
from typing import Any

from jobfeed.clock import ensure_aware
from jobfeed.errors import DuplicateKeyError
from jobfeed.models import ImportRun, ImportRunStatus, JobRecord
from jobfeed.storage.interfaces import ImportRunStorageInterface, JobStorageInterface, apply_run_update


class InMemoryJobStorage(JobStorageInterface):
    """Job storage in a ``dict`` keyed by ``(source_feed, guid)``.

    There is no ``await`` between the membership check and the write in
    `insert`, so it is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._jobs: dict[tuple[str, str], JobRecord] = {}

    async def get(self, source_feed: str, guid: str) -> JobRecord | None:
        job = self._jobs.get((source_feed, guid))
        return job.model_copy(deep=True) if job else None

    async def insert(self, job: JobRecord) -> JobRecord:
        if job.key in self._jobs:
            raise DuplicateKeyError(job.source_feed, job.guid)
        self._jobs[job.key] = job.model_copy(deep=True)
        return job

    async def update(self, job: JobRecord) -> bool:
        if job.key not in self._jobs:
            return False
        self._jobs[job.key] = job.model_copy(deep=True)
        return True

    async def list_jobs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
    ) -> list[JobRecord]:
        jobs = [j for j in self._jobs.values() if source_feed is None or j.source_feed == source_feed]
        jobs.sort(key=lambda j: j.published_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[offset : offset + limit]]

    async def count(self) -> int:
        return len(self._jobs)


class InMemoryImportRunStorage(ImportRunStorageInterface):
    """Import run storage in a ``dict`` keyed by run ID."""

    def __init__(self) -> None:
        self._runs: dict[str, ImportRun] = {}

    async def create(self, run: ImportRun) -> ImportRun:
        self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get(self, run_id: str) -> ImportRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update(self, run_id: str, **fields: Any) -> ImportRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        updated = apply_run_update(run, fields)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    def _sorted(self) -> list[ImportRun]:
        return sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)

    async def list_runs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
        status: ImportRunStatus | None = None,
    ) -> list[ImportRun]:
        runs = [
            r
            for r in self._sorted()
            if (source_feed is None or r.source_feed == source_feed) and (status is None or r.status == status)
        ]
        return [r.model_copy(deep=True) for r in runs[offset : offset + limit]]

    async def list_since(self, since: datetime) -> list[ImportRun]:
        since = ensure_aware(since)
        return [r.model_copy(deep=True) for r in self._sorted() if ensure_aware(r.started_at) >= since]

    async def count(self) -> int:
        return len(self._runs)
