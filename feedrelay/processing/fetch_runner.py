"""
Feed Fetch Runner
=================

Concurrent feed fetching with a shared payload cache, conditional requests
and per-feed failure backoff. Produces normalized candidate items; nothing
here persists items.
"""

import asyncio
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiohttp
import certifi

from .run_context import RunContext
from ..database.models import CandidateItem, FeedConfig, FeedState, utc_now
from ..ingestion.feed_parser import FeedParser, ParsedFeed
from ..ingestion.fetch_cache import FetchCache
from ..recovery.retry_logic import RetryConfig, RetryStrategy, calculate_delay, parse_retry_after
from ..storage.feed_state_repository import FeedStateRepository
from ..utils.exceptions import ErrorCode, FeedFetchError, FeedParseError
from ..utils.logging import PerformanceLogger, get_logger_for_component


RETRY_AFTER_STATUSES = (429, 503)


@dataclass
class FetchResult:
    """Result of one feed fetch attempt."""

    feed_id: int
    feed_url: str
    success: bool
    items: List[CandidateItem] = field(default_factory=list)
    status: str = ""
    http_status: Optional[int] = None
    from_cache: bool = False
    error: Optional[str] = None
    fetch_time: Optional[datetime] = None
    duration_ms: int = 0
    item_count: int = 0
    skipped: bool = False

    def __post_init__(self):
        if self.items:
            self.item_count = len(self.items)
        if not self.fetch_time:
            self.fetch_time = utc_now()


class FetchRunner:
    """Fetches configured feeds concurrently and tracks their state."""

    USER_AGENT = "FeedRelay/0.3 (+https://github.com/feedrelay/feedrelay)"

    def __init__(
        self,
        state_repo: FeedStateRepository,
        cache: Optional[FetchCache] = None,
        parser: Optional[FeedParser] = None,
        parallel_feeds: int = 5,
        request_timeout: int = 30,
        backoff_config: Optional[RetryConfig] = None,
        backoff_enabled: bool = True,
    ):
        """Initialize fetch runner.

        Args:
            state_repo: Feed state persistence
            cache: Shared payload cache (None disables caching)
            parser: Feed parser adapter
            parallel_feeds: Maximum concurrent fetches
            request_timeout: Default per-request timeout in seconds
            backoff_config: Failure backoff policy
            backoff_enabled: Skip feeds whose backoff window is still open
        """
        self.state_repo = state_repo
        self.cache = cache
        self.parser = parser or FeedParser()
        self.parallel_feeds = parallel_feeds
        self.request_timeout = request_timeout
        self.backoff_config = backoff_config or RetryConfig(
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF, base_delay=60, max_delay=900
        )
        self.backoff_enabled = backoff_enabled
        self._feed_locks: Dict[int, asyncio.Lock] = {}
        self.logger = get_logger_for_component("fetch_runner")

        # SSL context for secure requests
        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    @asynccontextmanager
    async def get_session(self):
        """Get configured aiohttp session."""
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            limit=self.parallel_feeds * 2,
            limit_per_host=5,
        )
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        headers = {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
        }

        async with aiohttp.ClientSession(connector=connector, timeout=timeout, headers=headers) as session:
            yield session

    async def run(
        self,
        feeds: List[FeedConfig],
        context: Optional[RunContext] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> List[FetchResult]:
        """Fetch all feeds; results come back in configuration order.

        A failing feed never aborts the others. Once the context asks to
        stop, feeds that have not started are reported as skipped.
        """
        if not feeds:
            return []

        semaphore = asyncio.Semaphore(self.parallel_feeds)

        async def fetch_bounded(feed: FeedConfig, active_session) -> FetchResult:
            async with semaphore:
                if context is not None and context.should_stop:
                    return FetchResult(
                        feed_id=feed.id, feed_url=feed.url, success=False,
                        status="skipped: stopped", skipped=True,
                    )
                return await self.fetch_feed(feed, active_session)

        with PerformanceLogger(self.logger, f"fetch of {len(feeds)} feeds") as perf:
            if session is not None:
                results = await asyncio.gather(*(fetch_bounded(f, session) for f in feeds))
            else:
                async with self.get_session() as own_session:
                    results = await asyncio.gather(*(fetch_bounded(f, own_session) for f in feeds))

        successful = sum(1 for r in results if r.success)
        total_items = sum(r.item_count for r in results if r.success)
        self.logger.info(
            f"Feed fetch complete: {successful}/{len(results)} feeds successful, "
            f"{total_items} total items in {perf.duration:.2f}s"
        )
        return list(results)

    async def fetch_feed(self, feed: FeedConfig, session: aiohttp.ClientSession) -> FetchResult:
        """Fetch and parse a single feed, updating its state."""
        if not feed.enabled:
            return FetchResult(
                feed_id=feed.id, feed_url=feed.url, success=False,
                status="skipped: disabled", skipped=True,
            )

        lock = self._feed_locks.setdefault(feed.id, asyncio.Lock())
        async with lock:
            return await self._fetch_locked(feed, session)

    async def _fetch_locked(self, feed: FeedConfig, session: aiohttp.ClientSession) -> FetchResult:
        start = utc_now()
        state = self.state_repo.get_state(feed.id)

        if self.backoff_enabled and state is not None and state.is_in_backoff(start):
            self.logger.debug(f"Feed {feed.id} in backoff until {state.backoff_until}")
            return FetchResult(
                feed_id=feed.id, feed_url=feed.url, success=False,
                status="skipped: backoff", skipped=True, fetch_time=start,
            )

        cached = self._from_cache(feed, start)
        if cached is not None:
            return cached

        headers = dict(feed.headers)
        if state is not None:
            if state.fetch_token:
                headers["If-None-Match"] = state.fetch_token
            if state.last_modified:
                headers["If-Modified-Since"] = state.last_modified

        timeout = feed.timeout or self.request_timeout
        self.logger.debug(f"Fetching feed {feed.id}: {feed.url}")

        try:
            async with session.get(
                feed.url, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                http_status = response.status
                etag = response.headers.get("ETag")
                last_modified = response.headers.get("Last-Modified")

                if http_status == 304:
                    self.state_repo.record_success(
                        feed.id, feed.url, fetched_at=start, status=304,
                        fetch_token=etag, last_modified=last_modified,
                    )
                    return FetchResult(
                        feed_id=feed.id, feed_url=feed.url, success=True,
                        status="not modified", http_status=304, fetch_time=start,
                        duration_ms=self._elapsed_ms(start),
                    )

                if not 200 <= http_status < 300:
                    retry_after = None
                    if http_status in RETRY_AFTER_STATUSES:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    error = FeedFetchError(
                        f"HTTP {http_status}: {response.reason}",
                        feed_url=feed.url,
                        error_code=ErrorCode.FEED_HTTP_ERROR,
                    )
                    return self._failure(
                        feed, state, start, http_status, str(error), f"http {http_status}", retry_after
                    )

                body = await response.read()

        except asyncio.TimeoutError:
            error = FeedFetchError(
                f"Request timeout after {timeout}s",
                feed_url=feed.url,
                error_code=ErrorCode.FEED_FETCH_TIMEOUT,
            )
            return self._failure(feed, state, start, 0, str(error), "timeout")
        except aiohttp.ClientError as e:
            error = FeedFetchError(f"Network error: {e}", feed_url=feed.url)
            return self._failure(feed, state, start, 0, str(error), "network error")

        try:
            parsed = self.parser.parse(body, feed.url)
        except FeedParseError as e:
            return self._failure(feed, state, start, http_status, str(e), "parse error")

        if self.cache is not None and feed.cache_ttl > 0:
            self.cache.store(
                feed.url, body, ttl=feed.cache_ttl,
                headers={k: v for k, v in (("ETag", etag), ("Last-Modified", last_modified)) if v},
            )

        self.state_repo.record_success(
            feed.id, feed.url, fetched_at=start, status=http_status,
            fetch_token=etag, last_modified=last_modified,
        )

        items = self._limit_items(feed, parsed)
        self.logger.info(
            f"Fetched {len(items)} items from {feed.display_name} in {self._elapsed_ms(start)}ms"
        )
        return FetchResult(
            feed_id=feed.id, feed_url=feed.url, success=True, items=items,
            status="ok", http_status=http_status, fetch_time=start,
            duration_ms=self._elapsed_ms(start),
        )

    def forget_validators(self, feed_id: int) -> None:
        """Make the next network fetch of a feed unconditional."""
        self.state_repo.clear_validators(feed_id)

    def _from_cache(self, feed: FeedConfig, start: datetime) -> Optional[FetchResult]:
        """Serve a fresh cached payload; None means go to the network."""
        if self.cache is None or feed.cache_ttl <= 0:
            return None

        entry = self.cache.get_cached(feed.url)
        if entry is None:
            return None

        try:
            parsed = self.parser.parse(entry.body, feed.url)
        except FeedParseError as e:
            self.logger.warning(f"Discarding unparseable cache entry for {feed.url}: {e}")
            self.cache.invalidate(feed.url)
            return None

        items = self._limit_items(feed, parsed)
        self.logger.debug(f"Cache hit for feed {feed.id}: {len(items)} items")
        return FetchResult(
            feed_id=feed.id, feed_url=feed.url, success=True, items=items,
            status="cache hit", from_cache=True, fetch_time=start,
            duration_ms=self._elapsed_ms(start),
        )

    def _failure(
        self,
        feed: FeedConfig,
        state: Optional[FeedState],
        start: datetime,
        http_status: int,
        error: str,
        status: str,
        retry_after: Optional[float] = None,
    ) -> FetchResult:
        failures = (state.failure_count if state else 0) + 1
        delay = retry_after if retry_after is not None else calculate_delay(failures, self.backoff_config)
        backoff_until = start + timedelta(seconds=delay)

        self.state_repo.record_failure(
            feed.id, feed.url, status=http_status, error=error,
            backoff_until=backoff_until, attempted_at=start,
        )
        self.logger.warning(
            f"Feed fetch failed for {feed.url}: {error} "
            f"(failure #{failures}, backing off {delay:.0f}s)"
        )
        return FetchResult(
            feed_id=feed.id, feed_url=feed.url, success=False, status=status,
            http_status=http_status, error=error, fetch_time=start,
            duration_ms=self._elapsed_ms(start),
        )

    @staticmethod
    def _limit_items(feed: FeedConfig, parsed: ParsedFeed) -> List[CandidateItem]:
        max_items = feed.parser_options.max_items
        return parsed.items[:max_items] if max_items else list(parsed.items)

    @staticmethod
    def _elapsed_ms(start: datetime) -> int:
        return int((utc_now() - start).total_seconds() * 1000)
