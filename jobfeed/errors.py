"""Exception taxonomy for the feed import pipeline.

Every error the pipeline raises deliberately derives from `JobFeedError`, so
callers that only care about "something in the importer went wrong" can catch
a single type. The subclasses mark how far a failure is allowed to spread:

- `TransientNetworkError`: one fetch attempt failed; retried, then recorded
  as a feed-level failure.
- `MalformedFeedError`: the payload could not be parsed even after cleaning
  and the regex fallback found nothing.
- `NormalizationError`: one feed item could not be mapped; the item is
  dropped and the batch continues.
- `DuplicateKeyError`: an insert lost a race against another insert of the
  same `(source_feed, guid)`; resolved by updating instead.
- `QueueUnavailableError`: the queue broker did not answer in time or
  refused the operation.
- `ImportBusyError`: an import pass is already running.
- `ConfigurationError`: invalid settings, such as a bad cron expression.
"""


class JobFeedError(Exception):
    """Base class for all importer errors."""


class TransientNetworkError(JobFeedError):
    """A fetch attempt failed with a timeout, connection error or non-2xx status."""


class MalformedFeedError(JobFeedError):
    """The feed payload is not parseable and yielded no fallback items."""


class NormalizationError(JobFeedError):
    """A single feed item could not be converted into a job record."""


class DuplicateKeyError(JobFeedError):
    """A job record with the same (source_feed, guid) key already exists."""

    def __init__(self, source_feed: str, guid: str):
        super().__init__(f"Job already exists for key ({source_feed!r}, {guid!r})")
        self.source_feed = source_feed
        self.guid = guid


class QueueUnavailableError(JobFeedError):
    """The queue broker is unreachable or did not respond within the timeout."""


class ImportBusyError(JobFeedError):
    """An import pass is already running."""

    def __init__(self, current_import_id: str | None = None):
        super().__init__("Import is already running")
        self.current_import_id = current_import_id


class ConfigurationError(JobFeedError):
    """Settings are invalid; the importer cannot start."""
