"""Pipeline interface definitions and the fetch result types."""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class RawPayload(BaseModel, frozen=True):
    """A successfully fetched feed body."""

    url: str
    name: str
    text: str
    status_code: int
    content_type: str = ""
    duration_ms: int = 0
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return True


class FetchFailure(BaseModel, frozen=True):
    """The fetch gave up; ``error`` holds the last attempt's failure."""

    url: str
    name: str
    error: str
    attempts: int
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return False


class FeedFetcherInterface(ABC):
    """Retrieve the raw body of a feed.

    Implementations must not raise for network problems; they report them as
    a `FetchFailure` so the caller can move on to the next feed.
    """

    @abstractmethod
    async def fetch(self, url: str, name: str) -> RawPayload | FetchFailure:
        """Fetch ``url`` and return its body or a failure description."""
