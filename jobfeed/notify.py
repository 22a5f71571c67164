"""Progress events for dashboards and other observers.

Publishing never blocks and never fails: events go to every current
subscriber's bounded buffer and are dropped for subscribers whose buffer is
full, or entirely when nobody is subscribed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from jobfeed.clock import utc_now

logger = logging.getLogger(__name__)

IMPORT_STARTED = "import-started"
IMPORT_PROGRESS = "import-progress"
IMPORT_COMPLETED = "import-completed"
IMPORT_ERROR = "import-error"
CRON_STATUS = "cron-status"


class ProgressEvent(BaseModel, frozen=True):
    """One outbound event, e.g. ``import-progress`` with its data."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ProgressNotifierInterface(ABC):
    """Abstract interface for publishing progress events."""

    @abstractmethod
    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        """Publish an event without waiting for any subscriber."""


class NullNotifier(ProgressNotifierInterface):
    """Discards every event."""

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        return None


class BroadcastNotifier(ProgressNotifierInterface):
    """Fan events out to asyncio queue subscribers.

    Example:
        ```python
        notifier = BroadcastNotifier()
        async for event in notifier.events():
            print(event.event, event.data)
        ```
    """

    def __init__(self, buffer_size: int = 100):
        self.buffer_size = buffer_size
        self._subscribers: set[asyncio.Queue[ProgressEvent]] = set()
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self.buffer_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ProgressEvent]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        message = ProgressEvent(event=event, data=data or {})
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug("Dropped %s event for a slow subscriber", event)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events as they are published until the consumer stops iterating."""
        queue = self.subscribe()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)
