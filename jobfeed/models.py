"""Canonical data models for imported jobs and the import audit trail.

Feed items arrive in many shapes; the normalizer converts every one of them
into a `JobRecord`, the schema this package owns. Each orchestrated pass writes
one `ImportRun` per feed source so that operators can see what was fetched,
inserted, updated and rejected.

All models use Pydantic v2.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field, model_validator

from jobfeed.clock import utc_now


class JobStatus(str, Enum):
    """Lifecycle status of a stored job."""

    ACTIVE = "active"
    """Seen in the most recent appearance of its feed."""

    EXPIRED = "expired"
    """Past its expiry date."""

    FILLED = "filled"
    """Marked as filled by an operator or the source."""

    INACTIVE = "inactive"
    """No longer listed; kept for history, never hard-deleted by the pipeline."""


class EmploymentType(str, Enum):
    FULL_TIME = "full-time"
    PART_TIME = "part-time"
    CONTRACT = "contract"
    INTERNSHIP = "internship"
    FREELANCE = "freelance"


class RemoteMode(str, Enum):
    ON_SITE = "on-site"
    REMOTE = "remote"
    HYBRID = "hybrid"


class ExperienceLevel(str, Enum):
    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"
    EXECUTIVE = "executive"


class SalaryPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SalaryRange(BaseModel):
    """Salary as advertised by the source.

    ``text`` keeps the original wording; ``min``/``max`` are filled only when
    amounts could be read from it. No currency conversion is attempted.
    """

    min: float | None = None
    max: float | None = None
    currency: str = "USD"
    period: SalaryPeriod = SalaryPeriod.YEARLY
    text: str = ""


class JobRequirements(BaseModel):
    experience: ExperienceLevel = ExperienceLevel.MID
    education: str = ""
    skills: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)


class JobRecord(BaseModel):
    """A normalized job posting.

    ``(source_feed, guid)`` identifies a record. Re-ingesting the same key
    updates the stored record instead of adding a second one.
    """

    title: str
    company: str
    location: str = ""
    description: str = ""
    salary: SalaryRange = Field(default_factory=SalaryRange)
    requirements: JobRequirements = Field(default_factory=JobRequirements)
    employment_type: EmploymentType = EmploymentType.FULL_TIME
    remote_mode: RemoteMode = RemoteMode.ON_SITE
    category: str = ""
    application_url: str = ""
    application_email: str = ""

    source_feed: str = Field(min_length=1, description="URL of the feed the job came from.")
    source_name: str = Field(description="Display name of the feed source.")
    guid: str = Field(min_length=1, description="Identifier of the item within its feed.")

    published_at: datetime = Field(default_factory=utc_now)
    status: JobStatus = JobStatus.ACTIVE
    views: int = Field(default=0, ge=0)
    applications: int = Field(default=0, ge=0)
    tags: list[str] = Field(default_factory=list)
    raw_data: dict[str, Any] = Field(default_factory=dict, description="Original feed item, kept for audit.")

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_feed, self.guid)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_remote(self) -> bool:
        return self.remote_mode in (RemoteMode.REMOTE, RemoteMode.HYBRID)

    @property
    def experience_level(self) -> ExperienceLevel:
        return self.requirements.experience


class FailedJob(BaseModel):
    """One item that could not be imported, with the reason."""

    guid: str = ""
    title: str = ""
    reason: str
    error: str = ""


class ImportRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class ImportRun(BaseModel):
    """Audit entry for one feed source within one orchestrated pass.

    Counts always satisfy ``total_imported == new_jobs + updated_jobs`` and
    ``total_imported + failed_count <= total_fetched``; the model refuses to
    be built otherwise.
    """

    id: str
    import_id: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    source_feed: str
    source_name: str
    total_fetched: int = Field(default=0, ge=0)
    total_imported: int = Field(default=0, ge=0)
    new_jobs: int = Field(default=0, ge=0)
    updated_jobs: int = Field(default=0, ge=0)
    failed_jobs: list[FailedJob] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)
    status: ImportRunStatus = ImportRunStatus.RUNNING
    error: str | None = None
    queue_task_id: str | None = None

    @model_validator(mode="after")
    def _counts_are_consistent(self) -> ImportRun:
        if self.total_imported != self.new_jobs + self.updated_jobs:
            raise ValueError(
                f"total_imported ({self.total_imported}) must equal new_jobs + updated_jobs "
                f"({self.new_jobs} + {self.updated_jobs})"
            )
        if self.total_imported + self.failed_count > self.total_fetched:
            raise ValueError(
                f"total_imported + failed ({self.total_imported} + {self.failed_count}) "
                f"exceeds total_fetched ({self.total_fetched})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed_count(self) -> int:
        return len(self.failed_jobs)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> int:
        """Percentage of fetched items that were imported, rounded."""
        if self.total_fetched == 0:
            return 0
        return round(self.total_imported / self.total_fetched * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status != ImportRunStatus.RUNNING


class ImportRunStats(BaseModel):
    """Aggregate over a set of import runs."""

    total_imports: int = 0
    total_jobs_fetched: int = 0
    total_jobs_imported: int = 0
    total_new_jobs: int = 0
    total_updated_jobs: int = 0
    total_failed_jobs: int = 0
    avg_duration_ms: float = 0.0
    successful_imports: int = 0
    failed_imports: int = 0


def summarize_runs(runs: list[ImportRun]) -> ImportRunStats:
    """Aggregate counts across ``runs``; an empty list gives all-zero stats."""
    if not runs:
        return ImportRunStats()
    return ImportRunStats(
        total_imports=len(runs),
        total_jobs_fetched=sum(r.total_fetched for r in runs),
        total_jobs_imported=sum(r.total_imported for r in runs),
        total_new_jobs=sum(r.new_jobs for r in runs),
        total_updated_jobs=sum(r.updated_jobs for r in runs),
        total_failed_jobs=sum(r.failed_count for r in runs),
        avg_duration_ms=sum(r.duration_ms for r in runs) / len(runs),
        successful_imports=sum(1 for r in runs if r.status == ImportRunStatus.COMPLETED),
        failed_imports=sum(1 for r in runs if r.status == ImportRunStatus.FAILED),
    )


class FeedSource(BaseModel, frozen=True):
    """A configured feed: where to fetch it and what to call it."""

    url: str = Field(min_length=1)
    name: str = Field(min_length=1)


class ImportBatch(BaseModel):
    """Queue payload: the normalized jobs of one feed, tagged with their run."""

    import_run_id: str
    import_id: str | None = None
    feed_url: str
    feed_name: str
    jobs: list[JobRecord] = Field(default_factory=list)
    rejected: list[FailedJob] = Field(default_factory=list)
