#!/usr/bin/env python3
"""
Favicon resolution for sources.

Tries the Google favicon service, the DuckDuckGo icon service and finally
``https://<domain>/favicon.ico``, each with a short HEAD probe. Resolution
never raises; ``None`` means nothing answered.
"""

from asyncio import gather, TimeoutError as AsyncTimeoutError
from typing import Dict, List, Optional

from aiohttp import ClientError

from config import config, get_logger
from utils import format_client_error, url_hostname

logger = get_logger("favicon")

FAVICON_SERVICES = (
    ("google", "https://www.google.com/s2/favicons?domain={domain}&sz=64"),
    ("duckduckgo", "https://icons.duckduckgo.com/ip3/{domain}.ico"),
    ("direct", "https://{domain}/favicon.ico"),
)


class FaviconResolver:
    def __init__(self, client, timeout: Optional[float] = None, batch_size: Optional[int] = None):
        self.client = client
        self.timeout = timeout or config.FAVICON_TIMEOUT
        self.batch_size = batch_size or config.FAVICON_BATCH_SIZE

    def candidates(self, url: str) -> List[str]:
        domain = url_hostname(url)
        if not domain:
            return []
        return [template.format(domain=domain) for _, template in FAVICON_SERVICES]

    async def resolve(self, url: str) -> Optional[str]:
        """First favicon URL that answers a HEAD probe with 2xx."""
        for candidate in self.candidates(url):
            try:
                response = await self.client.get(candidate, timeout=self.timeout, method="HEAD")
            except (AsyncTimeoutError, ClientError, OSError, ValueError) as e:
                logger.debug(f"Favicon probe {candidate} failed: {format_client_error(e)}")
                continue
            if response.ok:
                logger.debug(f"Resolved favicon for {url}: {candidate}")
                return candidate
        logger.info(f"No favicon found for {url}")
        return None

    async def resolve_many(self, urls: List[str]) -> Dict[str, Optional[str]]:
        """Resolve several URLs, ``batch_size`` at a time."""
        results: Dict[str, Optional[str]] = {}
        for start in range(0, len(urls), self.batch_size):
            batch = urls[start:start + self.batch_size]
            resolved = await gather(*(self.resolve(u) for u in batch))
            results.update(zip(batch, resolved))
        return results
