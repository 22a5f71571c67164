"""Upsert of normalized jobs keyed by ``(source_feed, guid)``.

The queue delivers batches at least once, so `upsert_job` must be safe to
repeat: a second delivery of the same job finds the stored record and merges
into it rather than inserting again.
"""

import logging
from enum import Enum

from jobfeed.clock import utc_now
from jobfeed.errors import DuplicateKeyError
from jobfeed.models import JobRecord, JobRequirements, JobStatus, SalaryRange
from jobfeed.storage.interfaces import JobStorageInterface

logger = logging.getLogger(__name__)

# Owned by the stored record; never taken from a fresh feed appearance.
PRESERVED_FIELDS = frozenset(
    {"source_feed", "guid", "status", "views", "applications", "created_at", "updated_at"}
)


class UpsertOutcome(str, Enum):
    NEW = "new"
    """No record had the key; the job was inserted."""

    UPDATED = "updated"
    """A record had the key; incoming fields were merged into it."""


def _is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _merge_salary(existing: SalaryRange, incoming: SalaryRange) -> SalaryRange:
    if not incoming.text and incoming.min is None and incoming.max is None:
        return existing
    return incoming


def _merge_requirements(existing: JobRequirements, incoming: JobRequirements) -> JobRequirements:
    return JobRequirements(
        experience=incoming.experience,
        education=incoming.education or existing.education,
        skills=incoming.skills or existing.skills,
        certifications=incoming.certifications or existing.certifications,
    )


def merge_job_records(existing: JobRecord, incoming: JobRecord) -> JobRecord:
    """Merge a fresh appearance of a job into its stored record.

    Non-empty incoming values replace stored ones; empty incoming values
    leave the stored value alone. Counters and creation time are kept, the
    key never changes, and the record is re-activated.
    """
    updates = {}
    for name in JobRecord.model_fields:
        if name in PRESERVED_FIELDS:
            continue
        value = getattr(incoming, name)
        if name == "salary":
            value = _merge_salary(existing.salary, incoming.salary)
        elif name == "requirements":
            value = _merge_requirements(existing.requirements, incoming.requirements)
        elif _is_empty(value):
            continue
        updates[name] = value
    updates["status"] = JobStatus.ACTIVE
    updates["updated_at"] = utc_now()
    return existing.model_copy(update=updates, deep=True)


async def upsert_job(store: JobStorageInterface, job: JobRecord) -> UpsertOutcome:
    """Insert ``job`` or merge it into the stored record with the same key.

    A concurrent insert of the same key surfaces as `DuplicateKeyError`; that
    race is resolved by merging into the record that won.
    """
    existing = await store.get(job.source_feed, job.guid)
    if existing is None:
        fresh = job.model_copy(update={"status": JobStatus.ACTIVE, "views": 0, "applications": 0})
        try:
            await store.insert(fresh)
            return UpsertOutcome.NEW
        except DuplicateKeyError:
            logger.info("Insert race on %s; merging into the stored record", job.key)
            existing = await store.get(job.source_feed, job.guid)
            if existing is None:
                raise

    merged = merge_job_records(existing, job)
    if not await store.update(merged):
        raise LookupError(f"Job {job.key} disappeared during update")
    return UpsertOutcome.UPDATED
