"""HTTP retrieval of raw feed payloads.

`FeedFetcher.fetch` never raises for network trouble. It retries transient
failures with exponential backoff and then hands back either a `RawPayload`
or a `FetchFailure` describing the last error, so the orchestrator can record
a feed-level failure and carry on with the next source.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from jobfeed.errors import MalformedFeedError, TransientNetworkError
from jobfeed.pipeline.interfaces import FeedFetcherInterface, FetchFailure, RawPayload

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "jobfeed-importer/0.1"
DEFAULT_ACCEPT = "application/xml, text/xml, */*"


class FeedFetcher(FeedFetcherInterface):
    """Fetch feed payloads over HTTP with timeout and retry.

    Args:
        timeout: Per-request timeout in seconds.
        max_retries: Total number of attempts before giving up.
        backoff_base: Seconds for the first backoff; attempt ``n`` waits
            ``backoff_base * 2 ** (n - 1)`` (2 s, 4 s, ... by default).
        user_agent: Value of the ``User-Agent`` header.
        transport: Optional httpx transport, used by tests to stub the network.
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.user_agent = user_agent
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": DEFAULT_ACCEPT}

    async def _get_once(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}") from e
        if not response.is_success:
            raise TransientNetworkError(f"HTTP {response.status_code}: {response.reason_phrase}")
        body = response.text
        if not body or "<" not in body or ">" not in body:
            raise MalformedFeedError("Response does not contain XML content")
        return response

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "Fetch attempt %s failed (%s); retrying in %.0fs",
            retry_state.attempt_number,
            exc,
            wait,
        )

    async def fetch(self, url: str, name: str) -> RawPayload | FetchFailure:
        """Fetch ``url`` and return its body, or a failure after all retries."""
        started = time.perf_counter()
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_base, exp_base=2),
            retry=retry_if_exception_type((TransientNetworkError, MalformedFeedError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        logger.info("Fetching feed: %s (%s)", name, url)
        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers(),
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            try:
                async for attempt in retrying:
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        response = await self._get_once(client, url)
            except (TransientNetworkError, MalformedFeedError) as e:
                duration_ms = int((time.perf_counter() - started) * 1000)
                logger.error("Giving up on feed %s after %s attempt(s): %s", name, attempts, e)
                return FetchFailure(url=url, name=name, error=str(e), attempts=attempts, duration_ms=duration_ms)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("Fetched %s in %sms (%s bytes)", name, duration_ms, len(response.content))
        return RawPayload(
            url=url,
            name=name,
            text=response.text,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            duration_ms=duration_ms,
            attempts=attempts,
        )
