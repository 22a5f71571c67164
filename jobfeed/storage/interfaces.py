"""Storage interface definitions for imported jobs and the import audit trail."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from jobfeed.models import ImportRun, ImportRunStatus, JobRecord


class JobStorageInterface(ABC):
    """Abstract interface for job record storage.

    Records are keyed by ``(source_feed, guid)``. Implementations must make
    `insert` atomic on that key: a second insert of the same key raises
    `DuplicateKeyError` instead of creating a second record.
    """

    @abstractmethod
    async def get(self, source_feed: str, guid: str) -> JobRecord | None:
        """Retrieve a job by key, or None if not found."""

    @abstractmethod
    async def insert(self, job: JobRecord) -> JobRecord:
        """Store a new job and return it.

        Raises:
            DuplicateKeyError: If a job with the same key already exists.
        """

    @abstractmethod
    async def update(self, job: JobRecord) -> bool:
        """Replace the stored job with the same key.

        Returns True if the job was found and updated, False otherwise.
        """

    @abstractmethod
    async def list_jobs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
    ) -> list[JobRecord]:
        """List jobs, most recently published first."""

    @abstractmethod
    async def count(self) -> int:
        """Return the total number of stored jobs."""


class ImportRunStorageInterface(ABC):
    """Abstract interface for `ImportRun` audit rows."""

    @abstractmethod
    async def create(self, run: ImportRun) -> ImportRun:
        """Store a new run and return it."""

    @abstractmethod
    async def get(self, run_id: str) -> ImportRun | None:
        """Retrieve a run by ID, or None if not found."""

    @abstractmethod
    async def update(self, run_id: str, **fields: Any) -> ImportRun | None:
        """Apply ``fields`` to a run and return the updated run.

        The result is validated as a whole, so count invariants hold after
        every update. Returns None if the run does not exist.
        """

    @abstractmethod
    async def list_runs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
        status: ImportRunStatus | None = None,
    ) -> list[ImportRun]:
        """List runs, newest first, optionally filtered."""

    @abstractmethod
    async def list_since(self, since: datetime) -> list[ImportRun]:
        """Return every run started at or after ``since``, newest first."""

    @abstractmethod
    async def count(self) -> int:
        """Return the total number of stored runs."""


def apply_run_update(run: ImportRun, fields: dict[str, Any]) -> ImportRun:
    """Return ``run`` with ``fields`` applied, re-validated as a whole."""
    data = run.model_dump(exclude={"failed_count", "success_rate"})
    data.update(fields)
    return ImportRun.model_validate(data)
