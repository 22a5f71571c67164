"""
Factory functions wiring storages, broker and orchestrator from settings.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from jobfeed.config import ImportSettings, load_feed_sources
from jobfeed.ingest import ImportOrchestrator
from jobfeed.models import FeedSource
from jobfeed.notify import ProgressNotifierInterface
from jobfeed.pipeline.fetcher import FeedFetcher
from jobfeed.pipeline.interfaces import FeedFetcherInterface
from jobfeed.queue.interfaces import QueueBrokerInterface
from jobfeed.queue.memory import InMemoryQueueBroker
from jobfeed.queue.service import WorkQueue
from jobfeed.queue.sql import SQLQueueBroker
from jobfeed.storage.interfaces import ImportRunStorageInterface, JobStorageInterface
from jobfeed.storage.memory import InMemoryImportRunStorage, InMemoryJobStorage
from jobfeed.storage.sql import SQLImportRunStorage, SQLJobStorage

logger = logging.getLogger(__name__)


def get_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``. SQLite connections may be used from
    any thread, since storage and broker sessions run in worker threads. An
    in-memory SQLite database is a single shared connection.
    """
    kwargs: dict = {}
    if database_url.startswith("sqlite://"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def build_storages(
    settings: ImportSettings, engine: Engine | None = None
) -> tuple[JobStorageInterface, ImportRunStorageInterface]:
    """
    Return (job storage, import run storage) for the configured database.
    """
    if settings.uses_memory:
        return InMemoryJobStorage(), InMemoryImportRunStorage()
    engine = engine or get_engine(settings.database_url)
    return SQLJobStorage(engine), SQLImportRunStorage(engine)


def build_broker(settings: ImportSettings, engine: Engine | None = None) -> QueueBrokerInterface:
    if settings.uses_memory:
        return InMemoryQueueBroker()
    return SQLQueueBroker(engine or get_engine(settings.database_url))


def build_orchestrator(
    settings: ImportSettings,
    notifier: ProgressNotifierInterface | None = None,
    feeds: list[FeedSource] | None = None,
    fetcher: FeedFetcherInterface | None = None,
) -> ImportOrchestrator:
    """
    Build a ready-to-run orchestrator. Storages and broker share one engine.
    """
    engine = None if settings.uses_memory else get_engine(settings.database_url)
    job_storage, run_storage = build_storages(settings, engine)
    queue = WorkQueue(
        build_broker(settings, engine),
        submit_timeout=settings.queue_submit_timeout,
        stats_timeout=settings.queue_stats_timeout,
    )
    extra = {"notifier": notifier} if notifier is not None else {}
    orchestrator = ImportOrchestrator(
        feeds=feeds if feeds is not None else load_feed_sources(settings.feeds_file),
        fetcher=fetcher
        or FeedFetcher(
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            user_agent=settings.user_agent,
        ),
        job_storage=job_storage,
        run_storage=run_storage,
        queue=queue,
        queue_name=settings.queue_name,
        concurrency=settings.concurrency,
        **extra,
    )
    logger.info(
        "Built orchestrator: %d feed(s), database %s, queue %s",
        len(orchestrator.feeds),
        "memory" if settings.uses_memory else engine.url.render_as_string(hide_password=True),
        settings.queue_name,
    )
    return orchestrator
