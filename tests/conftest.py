"""Test fixtures and stand-in collaborators for the importer.

This module provides:
- A `FakeFetcher` that serves canned feed bodies by URL, so no test touches
  the network
- A `RecordingNotifier` that keeps every published progress event
- Pytest fixtures for in-memory storages, an in-memory queue broker and a
  fast-polling `WorkQueue`
- Small feed builders for RSS documents used across the test modules
- `locked_sqlite`, which holds an exclusive lock on a SQLite file so tests can
  stand in for a stalled database
"""

import asyncio
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from jobfeed.ingest import ImportOrchestrator
from jobfeed.models import FeedSource
from jobfeed.notify import ProgressNotifierInterface
from jobfeed.pipeline.interfaces import FeedFetcherInterface, FetchFailure, RawPayload
from jobfeed.queue.memory import InMemoryQueueBroker
from jobfeed.queue.models import QueueOptions
from jobfeed.queue.service import WorkQueue
from jobfeed.storage.memory import InMemoryImportRunStorage, InMemoryJobStorage

# --- Stand-in collaborators ---


class FakeFetcher(FeedFetcherInterface):
    """Serve feed bodies from a ``{url: body}`` mapping.

    URLs that are missing from the mapping, or mapped to None, come back as a
    `FetchFailure`. Every requested URL is recorded in ``calls``.
    """

    def __init__(self, bodies: dict[str, str | None] | None = None):
        self.bodies = dict(bodies or {})
        self.calls: list[str] = []

    async def fetch(self, url: str, name: str) -> RawPayload | FetchFailure:
        self.calls.append(url)
        body = self.bodies.get(url)
        if body is None:
            return FetchFailure(url=url, name=name, error="HTTP 404: Not Found", attempts=1)
        return RawPayload(url=url, name=name, text=body, status_code=200, content_type="application/rss+xml")


class RecordingNotifier(ProgressNotifierInterface):
    """Keep every published event as an ``(event, data)`` pair."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        self.events.append((event, data or {}))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]


# --- Feed builders ---


def rss_item(title: str, guid: str | None = None, company: str = "Acme", **extra: str) -> str:
    """One ``<item>`` element; ``extra`` adds more child elements."""
    parts = [f"<title>{title}</title>", f"<company>{company}</company>"]
    if guid is not None:
        parts.append(f"<guid>{guid}</guid>")
    parts.extend(f"<{tag}>{value}</{tag}>" for tag, value in extra.items())
    return "<item>" + "".join(parts) + "</item>"


def rss_feed(*items: str) -> str:
    return "<rss><channel><title>Jobs</title>" + "".join(items) + "</channel></rss>"


async def eventually(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until ``predicate()`` (sync or async) is truthy, or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@contextmanager
def locked_sqlite(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on the SQLite file at ``path``.

    Other connections, readers included, wait on their busy timeout until the
    block exits.
    """
    connection = sqlite3.connect(str(path), isolation_level=None)
    connection.execute("BEGIN EXCLUSIVE")
    try:
        yield
    finally:
        connection.execute("ROLLBACK")
        connection.close()


# --- Fixtures ---


@pytest.fixture
def job_storage() -> InMemoryJobStorage:
    """Provide a fresh in-memory job storage instance.

    Each test receives an empty storage, ensuring test isolation.
    """
    return InMemoryJobStorage()


@pytest.fixture
def run_storage() -> InMemoryImportRunStorage:
    """Provide a fresh in-memory import run storage instance."""
    return InMemoryImportRunStorage()


@pytest.fixture
def broker() -> InMemoryQueueBroker:
    return InMemoryQueueBroker()


@pytest.fixture
async def work_queue(broker: InMemoryQueueBroker):
    """A `WorkQueue` that retries immediately and polls every 10 ms.

    Workers registered during the test are cancelled on teardown.
    """
    queue = WorkQueue(broker, default_options=QueueOptions(backoff_delay=0.0), poll_interval=0.01)
    yield queue
    await queue.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def make_orchestrator(
    fetcher: FakeFetcher,
    job_storage: InMemoryJobStorage,
    run_storage: InMemoryImportRunStorage,
    work_queue: WorkQueue,
    notifier: RecordingNotifier,
) -> Callable[..., ImportOrchestrator]:
    """Factory for an orchestrator wired to the in-memory fixtures.

    Call it with ``(name, url, body)`` triples; each becomes a feed source
    whose body the fake fetcher serves (a None body makes the fetch fail).
    """

    def _make(*feeds: tuple[str, str, str | None], **kwargs: Any) -> ImportOrchestrator:
        for _, url, body in feeds:
            fetcher.bodies[url] = body
        return ImportOrchestrator(
            feeds=[FeedSource(name=name, url=url) for name, url, _ in feeds],
            fetcher=fetcher,
            job_storage=job_storage,
            run_storage=run_storage,
            queue=work_queue,
            notifier=notifier,
            concurrency=kwargs.pop("concurrency", 2),
            **kwargs,
        )

    return _make
