#!/usr/bin/env python3
"""
Feed discovery: find a working feed address for an arbitrary site URL.

The candidate list is the URL itself followed by the site origin joined
with each conventional feed path. Candidates are checked in batches; all
candidates in a batch run concurrently, batches run one after another, and
the winner is the first valid candidate in list order.
"""

from asyncio import gather
from typing import List, Optional

from config import config, get_logger
from errors import TransportError
from models import DiscoveryResult
from normalizer import parse_feed
from telemetry import trace_span
from utils import url_origin

logger = get_logger("discovery")

FEED_PATHS = (
    '/feed',
    '/rss',
    '/feed.xml',
    '/rss.xml',
    '/atom.xml',
    '/index.xml',
    '/feed/',
    '/rss/',
    '/?feed=rss2',
    '/?feed=atom',
    '/feeds/posts/default',
    '/blog/feed',
)

EMPTY_FEED_WARNING = "Feed found, but no entries could be read from it yet"


def build_candidates(url: str) -> List[str]:
    """The URL itself, then origin + each conventional path, without duplicates."""
    candidates = [url]
    origin = url_origin(url)
    for feed_path in FEED_PATHS:
        candidate = f"{origin}{feed_path}"
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


class FeedDiscovery:
    """Probe candidate feed addresses through a Transport."""

    def __init__(self, transport, batch_size: Optional[int] = None):
        self.transport = transport
        self.batch_size = max(1, batch_size or config.DISCOVERY_BATCH_SIZE)

    async def check_candidate(self, url: str) -> DiscoveryResult:
        """Fetch and parse one candidate.

        A candidate is valid once the document carries a channel title. A
        valid feed with no readable entries is still accepted, with a warning.
        """
        try:
            fetched = await self.transport.fetch_proxied_first(url)
        except TransportError as e:
            return DiscoveryResult(found=False, url=url, error=str(e), blocked=e.blocked)

        result = parse_feed(fetched.content, source_name=url)
        if not result.ok:
            return DiscoveryResult(found=False, url=url, error=result.error)
        if not result.metadata or not result.metadata.title:
            return DiscoveryResult(found=False, url=url, error="Feed has no title")

        warning = None if result.items else EMPTY_FEED_WARNING
        return DiscoveryResult(
            found=True,
            url=url,
            metadata=result.metadata,
            warning=warning,
            item_count=len(result.items),
        )

    @trace_span(
        "discovery.discover",
        tracer_name="discovery",
        attr_from_args=lambda self, url: {"discovery.url": url},
    attr_from_result=lambda result: {"discovery.found": result.found, "discovery.attempts": len(result.attempted_paths)},
    )
    async def discover(self, url: str) -> DiscoveryResult:
        """Return the first valid candidate, or every attempted path on failure."""
        candidates = build_candidates(url)
        attempted: List[str] = []
        blocked = False

        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start:start + self.batch_size]
            attempted.extend(batch)
            logger.debug(f"Discovery batch {start // self.batch_size + 1}: {batch}")
            results = await gather(*(self.check_candidate(c) for c in batch), return_exceptions=True)

            for candidate, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning(f"Discovery check for {candidate} raised: {result}")
                    continue
                blocked = blocked or result.blocked
                if result.found:
                    result.attempted_paths = list(attempted)
                    logger.info(f"Discovered feed for {url} at {candidate}")
                    return result

        logger.info(f"No feed found for {url} after {len(attempted)} candidates")
        return DiscoveryResult(
            found=False,
            attempted_paths=attempted,
            error=f"No feed found after trying {len(attempted)} addresses",
            blocked=blocked,
        )
