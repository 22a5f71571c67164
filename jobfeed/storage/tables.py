"""
SQLModel tables backing the SQL storage implementations.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    """
    One imported job. The full record lives in ``data``; the remaining columns
    exist for lookups, uniqueness and ordering.
    """

    __tablename__ = "jobs"
    __table_args__ = (UniqueConstraint("source_feed", "guid", name="uq_jobs_source_guid"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    source_feed: str = Field(index=True, description="URL of the feed the job came from")
    guid: str = Field(index=True, description="Identifier of the item within its feed")
    title: str = Field(default="")
    company: str = Field(default="")
    status: str = Field(default="active", index=True, description="active | expired | filled | inactive")
    published_at: datetime = Field(index=True, description="Publication time, stored as naive UTC")
    updated_at: datetime = Field(description="Last write, stored as naive UTC")
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class ImportRunRow(SQLModel, table=True):
    """
    Audit row for one feed source within one import pass.
    """

    __tablename__ = "import_runs"

    id: str = Field(primary_key=True, description="UUID string for the run")
    import_id: Optional[str] = Field(default=None, index=True, description="Import pass the run belongs to")
    started_at: datetime = Field(index=True, description="Stored as naive UTC")
    completed_at: Optional[datetime] = Field(default=None)
    source_feed: str = Field(index=True)
    source_name: str = Field()
    total_fetched: int = Field(default=0)
    total_imported: int = Field(default=0)
    new_jobs: int = Field(default=0)
    updated_jobs: int = Field(default=0)
    failed_jobs: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    duration_ms: int = Field(default=0)
    status: str = Field(default="running", index=True, description="running | completed | failed | partial")
    error: Optional[str] = Field(default=None)
    queue_task_id: Optional[str] = Field(default=None)
