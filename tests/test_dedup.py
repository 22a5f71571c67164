"""Tests for upserting jobs by (source_feed, guid).

This module verifies:
- A first appearance inserts, a repeat appearance updates in place
- Non-empty incoming fields win; empty ones keep the stored value
- Counters, creation time and the key survive an update
- An insert race surfacing as DuplicateKeyError is resolved by merging
"""

from datetime import datetime, timezone

import pytest

from jobfeed.dedup import UpsertOutcome, merge_job_records, upsert_job
from jobfeed.errors import DuplicateKeyError
from jobfeed.models import JobRecord, JobStatus, SalaryRange
from jobfeed.storage.memory import InMemoryJobStorage

FEED_URL = "https://jobs.example.com/feed.xml"


def make_job(guid: str = "123", **overrides) -> JobRecord:
    fields = {
        "title": "Remote Backend Engineer",
        "company": "Acme",
        "source_feed": FEED_URL,
        "source_name": "TestFeed",
        "guid": guid,
    }
    fields.update(overrides)
    return JobRecord(**fields)


class RacingJobStorage(InMemoryJobStorage):
    """Hides an existing record from the first lookup, as a concurrent insert would."""

    def __init__(self) -> None:
        super().__init__()
        self.hide_next_get = False

    async def get(self, source_feed: str, guid: str) -> JobRecord | None:
        if self.hide_next_get:
            self.hide_next_get = False
            return None
        return await super().get(source_feed, guid)


class TestUpsert:
    async def test_insert_then_update(self, job_storage: InMemoryJobStorage) -> None:
        assert await upsert_job(job_storage, make_job()) == UpsertOutcome.NEW
        assert await upsert_job(job_storage, make_job(title="Senior Remote Backend Engineer")) == UpsertOutcome.UPDATED

        assert await job_storage.count() == 1
        stored = await job_storage.get(FEED_URL, "123")
        assert stored.title == "Senior Remote Backend Engineer"
        assert stored.guid == "123"
        assert stored.source_feed == FEED_URL

    async def test_same_guid_different_feed_is_separate(self, job_storage: InMemoryJobStorage) -> None:
        await upsert_job(job_storage, make_job())
        outcome = await upsert_job(job_storage, make_job(source_feed="https://other.example.com/rss"))

        assert outcome == UpsertOutcome.NEW
        assert await job_storage.count() == 2

    async def test_update_preserves_counters_and_reactivates(self, job_storage: InMemoryJobStorage) -> None:
        await upsert_job(job_storage, make_job())
        stored = await job_storage.get(FEED_URL, "123")
        touched = stored.model_copy(update={"views": 7, "applications": 2, "status": JobStatus.INACTIVE})
        await job_storage.update(touched)

        await upsert_job(job_storage, make_job(views=0))

        updated = await job_storage.get(FEED_URL, "123")
        assert updated.views == 7
        assert updated.applications == 2
        assert updated.status == JobStatus.ACTIVE
        assert updated.created_at == stored.created_at
        assert updated.updated_at >= stored.updated_at

    async def test_insert_race_is_merged(self) -> None:
        store = RacingJobStorage()
        await store.insert(make_job())
        store.hide_next_get = True

        outcome = await upsert_job(store, make_job(title="Changed"))

        assert outcome == UpsertOutcome.UPDATED
        assert (await store.get(FEED_URL, "123")).title == "Changed"
        assert await store.count() == 1

    async def test_storage_rejects_duplicate_insert(self, job_storage: InMemoryJobStorage) -> None:
        await job_storage.insert(make_job())
        with pytest.raises(DuplicateKeyError) as exc_info:
            await job_storage.insert(make_job())
        assert exc_info.value.guid == "123"


class TestMerge:
    def test_empty_incoming_fields_keep_stored_values(self) -> None:
        existing = make_job(location="Berlin", description="Long text", tags=["python"])
        incoming = make_job(location="", description="", tags=[])

        merged = merge_job_records(existing, incoming)

        assert merged.location == "Berlin"
        assert merged.description == "Long text"
        assert merged.tags == ["python"]

    def test_salary_kept_when_incoming_has_none(self) -> None:
        existing = make_job(salary=SalaryRange(min=1, max=2, text="1-2"))
        merged = merge_job_records(existing, make_job())
        assert merged.salary.text == "1-2"

    def test_incoming_values_win(self) -> None:
        published = datetime(2025, 1, 1, tzinfo=timezone.utc)
        merged = merge_job_records(make_job(location="Berlin"), make_job(location="Paris", published_at=published))

        assert merged.location == "Paris"
        assert merged.published_at == published
