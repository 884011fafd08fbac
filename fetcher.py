#!/usr/bin/env python3
"""
Fetch scheduler.

Dispatches one task per enabled source, all concurrently. Each task fetches
its source by type, stores new items right away and reports how many it
fetched and inserted. A source that fails is counted and logged; it never
cancels or delays its siblings. ``scheduled_fetch`` retries the whole run
with exponential backoff when the run itself fails.
"""

from asyncio import gather, sleep, CancelledError
from time import time
from typing import Callable, List, Optional, Tuple

from config import config, get_logger
from errors import FeedParseError, SchedulerError, StorageError, TransportError, UnknownSourceTypeError
from favicon import FaviconResolver
from hot_topics import HotTopicFetcher, default_limit_for, get_hot_topic_fetcher
from models import DatabaseQueue, FeedItem, FetchSummary, HOT_TOPIC_TYPES, Source, SourceType
from normalizer import parse_feed
from telemetry import trace_span
from transport import HttpClient, Transport
from utils import RetryHelper

logger = get_logger("fetcher")

HotTopicFactory = Callable[[str, dict], HotTopicFetcher]


def _configured_limit(source: Source) -> Optional[int]:
    """Positive item limit from the source config, or None when absent or unusable."""
    raw = source.config.get('limit') if isinstance(source.config, dict) else None
    if raw is None:
        return None
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid limit {raw!r} for source {source.name}")
        return None
    return limit if limit > 0 else None


class FeedFetcher:
    """Fetches every enabled source and stores what it finds.

    Collaborators can be injected; ``initialize`` builds whatever was not.
    """

    def __init__(self, db: Optional[DatabaseQueue] = None, transport: Optional[Transport] = None,
                 favicons: Optional[FaviconResolver] = None,
                 hot_topic_factory: Optional[HotTopicFactory] = None) -> None:
        self.db = db
        self.transport = transport
        self.favicons = favicons
        self.hot_topic_factory = hot_topic_factory
        self._client: Optional[HttpClient] = None
        self._owns_db = False

    async def initialize(self) -> None:
        """Start storage and build the HTTP stack when not injected."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            self._owns_db = True
        await self.db.start()
        if self.transport is None:
            self._client = HttpClient()
            self.transport = Transport(self._client)
        if self.favicons is None:
            self.favicons = FaviconResolver(self.transport.client)
        if self.hot_topic_factory is None:
            client = self.transport.client
            self.hot_topic_factory = lambda source_type, source_config: get_hot_topic_fetcher(
                source_type, client, source_config)
        logger.info("FeedFetcher initialized")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._owns_db and self.db is not None:
            await self.db.stop()

    # Per-source fetching

    async def fetch_source(self, source: Source) -> List[FeedItem]:
        """Items for one source, dispatched on its type."""
        try:
            source_type = SourceType.parse(source.type)
        except ValueError:
            raise UnknownSourceTypeError(f"Unknown source type '{source.type}' for {source.name}")

        if source_type == SourceType.RSS:
            return await self._fetch_rss(source)
        if source_type in HOT_TOPIC_TYPES:
            return await self._fetch_hot_topics(source, source_type.value)
        # Forum sources have no fetcher yet
        logger.info(f"Forum source {source.name} has no fetcher; nothing to fetch")
        return []

    async def _fetch_rss(self, source: Source) -> List[FeedItem]:
        if not source.url:
            raise FeedParseError(f"RSS source {source.name} has no URL")

        favicon_url = await self._ensure_favicon(source)
        if self.transport.is_rsshub(source.url):
            fetched = await self.transport.fetch_rsshub(source.url)
        else:
            fetched = await self.transport.fetch_proxied_first(source.url)

        result = parse_feed(fetched.content, source.name, favicon_url=favicon_url, source_id=source.id)
        if not result.ok:
            raise FeedParseError(f"Could not parse feed for {source.name}: {result.error}")
        logger.debug(f"{source.name}: {len(result.items)} items via {fetched.strategy}")
        return result.items

    async def _fetch_hot_topics(self, source: Source, source_type: str) -> List[FeedItem]:
        fetcher = self.hot_topic_factory(source_type, source.config or {})
        items = await fetcher.fetch(_configured_limit(source) or default_limit_for(source_type))
        for item in items:
            item.source_id = source.id
            item.source_name = source.name
            if source.favicon_url and not item.favicon_url:
                item.favicon_url = source.favicon_url
        return items

    async def _ensure_favicon(self, source: Source) -> Optional[str]:
        """Cached favicon, resolving and storing it once when missing."""
        if source.favicon_url or self.favicons is None:
            return source.favicon_url
        resolved = await self.favicons.resolve(source.url)
        if not resolved:
            return None
        try:
            source.favicon_url = await self.db.execute('set_source_favicon', source_id=source.id,
                                                       favicon_url=resolved)
        except StorageError as e:
            logger.warning(f"Could not cache favicon for {source.name}: {e}")
            return resolved
        return source.favicon_url

    @trace_span(
        "fetcher.fetch_and_store",
        tracer_name="fetcher",
        attr_from_args=lambda self, source: {"source.name": source.name, "source.type": source.type},
    )
    async def _fetch_and_store(self, source: Source) -> Tuple[int, int]:
        items = await self.fetch_source(source)
        inserted = await self.db.execute('save_items', items=items) if items else 0
        logger.info(f"✓ {source.name}: fetched {len(items)} items, {inserted} new")
        return len(items), inserted

    # Whole runs

    @trace_span(
        "fetcher.fetch_all_sources",
        tracer_name="fetcher",
        attr_from_result=lambda summary: {
            "fetch.sources_succeeded": summary.success,
            "fetch.sources_failed": summary.failed,
            "fetch.new_items": summary.new_items,
        },
    )
    async def fetch_all_sources(self) -> FetchSummary:
        """Fetch every enabled source concurrently and aggregate the outcome.

        Raises only when the run as a whole cannot proceed (e.g. storage is
        unavailable); individual source failures are counted.
        """
        sources: List[Source] = await self.db.execute('list_enabled_sources')
        logger.info(f"Starting fetch for {len(sources)} enabled sources")

        results = await gather(*(self._fetch_and_store(s) for s in sources), return_exceptions=True)

        summary = FetchSummary()
        for source, result in zip(sources, results):
            if isinstance(result, CancelledError):
                raise result
            if isinstance(result, BaseException):
                summary.failed += 1
                logger.warning(f"✗ {source.name} failed: {result}")
                continue
            fetched, inserted = result
            summary.success += 1
            summary.total_items += fetched
            summary.new_items += inserted

        logger.info(
            f"Fetch completed: {summary.success} succeeded, {summary.failed} failed, "
            f"{summary.total_items} items fetched, {summary.new_items} new"
        )
        return summary

    async def scheduled_fetch(self, max_retries: Optional[int] = None) -> FetchSummary:
        """Run fetch_all_sources, retrying the whole run with exponential backoff."""
        retry = RetryHelper(max_retries=max_retries or config.FETCH_MAX_RETRIES,
                            base_delay=config.FETCH_RETRY_BASE)
        last_error: Optional[Exception] = None
        for attempt in range(retry.max_retries):
            try:
                return await self.fetch_all_sources()
            except (StorageError, OSError, RuntimeError, ValueError) as e:
                last_error = e
                logger.error(f"Fetch attempt {attempt + 1}/{retry.max_retries} failed: {e}")
                if attempt + 1 < retry.max_retries:
                    logger.info(f"Retrying in {retry.calculate_delay(attempt):.0f} seconds")
                    await retry.sleep_for_attempt(attempt)
        raise SchedulerError(f"Failed to fetch after {retry.max_retries} attempts: {last_error}") from last_error

    async def fetch_source_by_id(self, source_id: str) -> int:
        """Fetch and store one source. Returns the number of items fetched."""
        source: Optional[Source] = await self.db.execute('get_source', source_id=source_id)
        if source is None:
            raise ValueError(f"Source with id {source_id} not found")
        if not source.enabled:
            raise ValueError(f"Source {source.name} is disabled")
        fetched, _ = await self._fetch_and_store(source)
        return fetched

    async def fetch_sources_by_type(self, source_type: str) -> int:
        """Fetch all enabled sources of one type; failures are logged and skipped."""
        sources: List[Source] = await self.db.execute('list_sources_by_type',
                                                      source_type=SourceType.parse(source_type).value)
        total = 0
        for source in sources:
            try:
                fetched, _ = await self._fetch_and_store(source)
                total += fetched
            except (TransportError, StorageError, FeedParseError, ValueError, OSError) as e:
                logger.warning(f"Failed to fetch source {source.name}: {e}")
        return total

    async def update_missing_favicons(self) -> int:
        """Resolve favicons for RSS sources without one. Returns how many were stored."""
        sources: List[Source] = await self.db.execute('list_sources')
        pending = [s for s in sources if s.type == SourceType.RSS.value and s.url and not s.favicon_url]
        if not pending:
            return 0
        resolver = self.favicons or FaviconResolver(self.transport.client)
        resolved = await resolver.resolve_many([s.url for s in pending])
        updated = 0
        for source in pending:
            favicon_url = resolved.get(source.url)
            if favicon_url:
                await self.db.execute('set_source_favicon', source_id=source.id, favicon_url=favicon_url)
                updated += 1
        logger.info(f"Updated favicons for {updated}/{len(pending)} sources")
        return updated

    async def run_forever(self, interval_minutes: Optional[int] = None) -> None:
        """Fetch on a fixed interval, expiring old items after each run."""
        interval = (interval_minutes or config.FETCH_INTERVAL_MINUTES) * 60
        while True:
            started = time()
            try:
                await self.scheduled_fetch()
            except SchedulerError as e:
                logger.error(str(e))
            try:
                await self.db.execute('expire_old_items', expiration_days=config.ITEM_RETENTION_DAYS)
            except StorageError as e:
                logger.error(f"Error during database maintenance: {e}")
            remaining = max(0.0, interval - (time() - started))
            logger.info(f"Sleeping for {remaining:.0f} seconds until next run")
            await sleep(remaining)
