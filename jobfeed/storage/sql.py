"""
SQLModel implementations of the storage interfaces.

Works with any SQLAlchemy URL; SQLite and PostgreSQL are the tested targets.
Each operation opens its own short-lived session, so one storage instance can
be shared by the orchestrator and every queue worker. The sessions run in
worker threads (``asyncio.to_thread``), so workers interleave while one of
them waits on the database.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from jobfeed.clock import ensure_aware
from jobfeed.errors import DuplicateKeyError
from jobfeed.models import FailedJob, ImportRun, ImportRunStatus, JobRecord
from jobfeed.storage.interfaces import ImportRunStorageInterface, JobStorageInterface, apply_run_update
from jobfeed.storage.tables import ImportRunRow, JobRow


def _naive_utc(value: datetime | None) -> datetime | None:
    """SQLite drops offsets, so timestamps are stored as naive UTC."""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).replace(tzinfo=None)


def _count_rows(engine: Engine, table: type[SQLModel]) -> int:
    with Session(engine) as session:
        return session.exec(select(func.count()).select_from(table)).one()


def _job_from_row(row: JobRow) -> JobRecord:
    return JobRecord.model_validate(row.data)


def _run_to_row(run: ImportRun) -> ImportRunRow:
    return ImportRunRow(
        id=run.id,
        import_id=run.import_id,
        started_at=_naive_utc(run.started_at),
        completed_at=_naive_utc(run.completed_at),
        source_feed=run.source_feed,
        source_name=run.source_name,
        total_fetched=run.total_fetched,
        total_imported=run.total_imported,
        new_jobs=run.new_jobs,
        updated_jobs=run.updated_jobs,
        failed_jobs=[f.model_dump(mode="json") for f in run.failed_jobs],
        duration_ms=run.duration_ms,
        status=run.status.value,
        error=run.error,
        queue_task_id=run.queue_task_id,
    )


def _run_from_row(row: ImportRunRow) -> ImportRun:
    return ImportRun(
        id=row.id,
        import_id=row.import_id,
        started_at=ensure_aware(row.started_at),
        completed_at=ensure_aware(row.completed_at) if row.completed_at else None,
        source_feed=row.source_feed,
        source_name=row.source_name,
        total_fetched=row.total_fetched,
        total_imported=row.total_imported,
        new_jobs=row.new_jobs,
        updated_jobs=row.updated_jobs,
        failed_jobs=[FailedJob.model_validate(f) for f in row.failed_jobs or []],
        duration_ms=row.duration_ms,
        status=ImportRunStatus(row.status),
        error=row.error,
        queue_task_id=row.queue_task_id,
    )


class SQLJobStorage(JobStorageInterface):
    """
    Job storage on the ``jobs`` table; uniqueness is enforced by the database.
    """

    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        if create_tables:
            SQLModel.metadata.create_all(engine, tables=[JobRow.__table__])

    def _find(self, session: Session, source_feed: str, guid: str) -> JobRow | None:
        statement = select(JobRow).where(JobRow.source_feed == source_feed, JobRow.guid == guid)
        return session.exec(statement).first()

    async def get(self, source_feed: str, guid: str) -> JobRecord | None:
        def _get() -> JobRecord | None:
            with Session(self.engine) as session:
                row = self._find(session, source_feed, guid)
                return _job_from_row(row) if row else None

        return await asyncio.to_thread(_get)

    async def insert(self, job: JobRecord) -> JobRecord:
        row = JobRow(
            source_feed=job.source_feed,
            guid=job.guid,
            title=job.title,
            company=job.company,
            status=job.status.value,
            published_at=_naive_utc(job.published_at),
            updated_at=_naive_utc(job.updated_at),
            data=job.model_dump(mode="json", exclude={"is_remote"}),
        )

        def _insert() -> None:
            with Session(self.engine) as session:
                session.add(row)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    raise DuplicateKeyError(job.source_feed, job.guid) from e

        await asyncio.to_thread(_insert)
        return job

    async def update(self, job: JobRecord) -> bool:
        def _update() -> bool:
            with Session(self.engine) as session:
                row = self._find(session, job.source_feed, job.guid)
                if row is None:
                    return False
                row.title = job.title
                row.company = job.company
                row.status = job.status.value
                row.published_at = _naive_utc(job.published_at)
                row.updated_at = _naive_utc(job.updated_at)
                row.data = job.model_dump(mode="json", exclude={"is_remote"})
                session.add(row)
                session.commit()
                return True

        return await asyncio.to_thread(_update)

    async def list_jobs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
    ) -> list[JobRecord]:
        statement = select(JobRow)
        if source_feed is not None:
            statement = statement.where(JobRow.source_feed == source_feed)
        statement = statement.order_by(JobRow.published_at.desc()).offset(offset).limit(limit)
        return await asyncio.to_thread(self._select_jobs, statement)

    def _select_jobs(self, statement) -> list[JobRecord]:
        with Session(self.engine) as session:
            return [_job_from_row(row) for row in session.exec(statement).all()]

    async def count(self) -> int:
        return await asyncio.to_thread(_count_rows, self.engine, JobRow)


class SQLImportRunStorage(ImportRunStorageInterface):
    """
    Import run storage on the ``import_runs`` table.
    """

    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        if create_tables:
            SQLModel.metadata.create_all(engine, tables=[ImportRunRow.__table__])

    async def create(self, run: ImportRun) -> ImportRun:
        def _create() -> None:
            with Session(self.engine) as session:
                session.add(_run_to_row(run))
                session.commit()

        await asyncio.to_thread(_create)
        return run

    async def get(self, run_id: str) -> ImportRun | None:
        def _get() -> ImportRun | None:
            with Session(self.engine) as session:
                row = session.get(ImportRunRow, run_id)
                return _run_from_row(row) if row else None

        return await asyncio.to_thread(_get)

    async def update(self, run_id: str, **fields: Any) -> ImportRun | None:
        def _update() -> ImportRun | None:
            with Session(self.engine) as session:
                row = session.get(ImportRunRow, run_id)
                if row is None:
                    return None
                updated = apply_run_update(_run_from_row(row), fields)
                session.merge(_run_to_row(updated))
                session.commit()
                return updated

        return await asyncio.to_thread(_update)

    async def list_runs(
        self,
        limit: int = 50,
        offset: int = 0,
        source_feed: str | None = None,
        status: ImportRunStatus | None = None,
    ) -> list[ImportRun]:
        statement = select(ImportRunRow)
        if source_feed is not None:
            statement = statement.where(ImportRunRow.source_feed == source_feed)
        if status is not None:
            statement = statement.where(ImportRunRow.status == ImportRunStatus(status).value)
        statement = statement.order_by(ImportRunRow.started_at.desc()).offset(offset).limit(limit)
        return await asyncio.to_thread(self._select_runs, statement)

    async def list_since(self, since: datetime) -> list[ImportRun]:
        statement = (
            select(ImportRunRow)
            .where(ImportRunRow.started_at >= _naive_utc(since))
            .order_by(ImportRunRow.started_at.desc())
        )
        return await asyncio.to_thread(self._select_runs, statement)

    def _select_runs(self, statement) -> list[ImportRun]:
        with Session(self.engine) as session:
            return [_run_from_row(row) for row in session.exec(statement).all()]

    async def count(self) -> int:
        return await asyncio.to_thread(_count_rows, self.engine, ImportRunRow)
