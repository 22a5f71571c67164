"""
Job Feed Importer - XML/RSS/Atom job feed ingestion.

Fetches job feeds from heterogeneous sources, normalizes their items into a
canonical `JobRecord`, deduplicates against earlier imports and keeps an
`ImportRun` audit trail per feed and pass.

The orchestrator and its collaborators are imported lazily, so importing the
data models does not pull in the HTTP, parsing and database stacks:

    # Lightweight:
    from jobfeed import JobRecord, ImportRun

    # Loads the full pipeline when the symbol is accessed:
    from jobfeed import ImportOrchestrator
"""

import importlib
from typing import TYPE_CHECKING, Any

from jobfeed.errors import (
    ConfigurationError,
    DuplicateKeyError,
    ImportBusyError,
    JobFeedError,
    MalformedFeedError,
    NormalizationError,
    QueueUnavailableError,
    TransientNetworkError,
)
from jobfeed.models import (
    FailedJob,
    FeedSource,
    ImportBatch,
    ImportRun,
    ImportRunStatus,
    JobRecord,
    JobStatus,
)

if TYPE_CHECKING:
    from jobfeed.ingest import ImportOrchestrator, ImportSummary
    from jobfeed.scheduler import ImportScheduler

_LAZY = {
    "ImportOrchestrator": "jobfeed.ingest",
    "ImportSummary": "jobfeed.ingest",
    "ImportScheduler": "jobfeed.scheduler",
}


def __getattr__(name: str) -> Any:
    if name in _LAZY:
        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module 'jobfeed' has no attribute {name!r}")


__all__ = [
    "JobFeedError",
    "TransientNetworkError",
    "MalformedFeedError",
    "NormalizationError",
    "DuplicateKeyError",
    "QueueUnavailableError",
    "ImportBusyError",
    "ConfigurationError",
    "JobRecord",
    "JobStatus",
    "FailedJob",
    "FeedSource",
    "ImportBatch",
    "ImportRun",
    "ImportRunStatus",
    "ImportOrchestrator",
    "ImportSummary",
    "ImportScheduler",
]

__version__ = "0.1.0"
