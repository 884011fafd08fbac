#!/usr/bin/env python3
"""
Validation service: decide whether user input points at a usable feed.

Input is normalised (trimmed, https:// added when no scheme is given) and
checked for a well-formed URL. RSSHub addresses are validated through the
RSSHub relay path. Other addresses go through feed discovery, or, with
discovery disabled, through a single proxied-first fetch and parse.
Failures come back as a ValidationResult carrying a specific message, never
as an exception.
"""

from typing import Optional

from config import get_logger
from discovery import EMPTY_FEED_WARNING, FeedDiscovery
from errors import TransportError
from models import ValidationResult
from normalizer import parse_feed
from telemetry import trace_span
from utils import normalize_url, validate_url

logger = get_logger("validation")

FORMAT_ERROR = "Invalid URL format. Enter a full feed address, for example https://example.com/feed"
BLOCKED_ERROR = "The site blocked the request with anti-bot protection. Try again later or use an RSSHub/mirror address"
TIMEOUT_ERROR = "The site did not respond in time. Check the address or try again later"
NOT_FOUND_ERROR = "The address returned HTTP 404. Check that the feed path is correct"
NOT_A_FEED_ERROR = "The address responded, but the content is not an RSS or Atom feed"
NO_TITLE_ERROR = "The feed has no title and cannot be used as a source"


def describe_transport_failure(error: TransportError) -> str:
    """Turn an exhausted cascade into a message a person can act on."""
    if error.blocked:
        return BLOCKED_ERROR
    for attempt in error.attempts:
        message = attempt.error or ""
        if "DNS lookup failed for" in message:
            host = message.split("DNS lookup failed for", 1)[1].split(",")[0].strip()
            return f"The domain {host} could not be resolved. Check the spelling of the address"
    if error.timed_out:
        return TIMEOUT_ERROR
    direct = next((a for a in error.attempts if a.strategy == "direct"), None)
    if direct is not None and direct.error == "HTTP 404":
        return NOT_FOUND_ERROR
    return f"The feed could not be fetched: {error}"


class FeedValidator:
    """Orchestrates transport, normalizer and discovery for one input."""

    def __init__(self, transport, discovery: Optional[FeedDiscovery] = None):
        self.transport = transport
        self.discovery = discovery or FeedDiscovery(transport)

    @trace_span(
        "validation.validate",
        tracer_name="validation",
        attr_from_args=lambda self, raw, auto_discover=True: {
            "validation.input": raw if isinstance(raw, str) else "",
            "validation.auto_discover": bool(auto_discover),
        },
        attr_from_result=lambda result: {"validation.valid": result.valid},
    )
    async def validate(self, raw: str, auto_discover: bool = True) -> ValidationResult:
        url = normalize_url(raw)
        if url and url != (raw or "").strip():
            logger.info(f"Added https:// prefix: {url}")
        ok, reason = validate_url(url)
        if not ok:
            logger.info(f"Rejected malformed input {raw!r}: {reason}")
            return ValidationResult(valid=False, error=FORMAT_ERROR)

        if self.transport.is_rsshub(url):
            return await self._validate_rsshub(url)
        if auto_discover:
            return await self._validate_with_discovery(url)
        return await self._validate_single(url)

    async def _validate_rsshub(self, url: str) -> ValidationResult:
        try:
            fetched = await self.transport.fetch_rsshub(url)
        except TransportError as e:
            logger.info(f"RSSHub validation failed for {url}: {e}")
            return ValidationResult(valid=False, url=url, error=describe_transport_failure(e))
        return self._result_from_content(url, fetched.content)

    async def _validate_with_discovery(self, url: str) -> ValidationResult:
        found = await self.discovery.discover(url)
        if not found.found:
            error = BLOCKED_ERROR if found.blocked else (
                f"No feed was found at this address (tried {len(found.attempted_paths)} locations). "
                "Enter the feed URL directly"
            )
            return ValidationResult(valid=False, attempted_paths=found.attempted_paths, error=error)
        return ValidationResult(
            valid=True,
            url=found.url,
            metadata=found.metadata,
            warning=found.warning,
            attempted_paths=found.attempted_paths,
            is_url_changed=found.url != url,
        )

    async def _validate_single(self, url: str) -> ValidationResult:
        try:
            fetched = await self.transport.fetch_proxied_first(url)
        except TransportError as e:
            logger.info(f"Validation fetch failed for {url}: {e}")
            return ValidationResult(valid=False, url=url, error=describe_transport_failure(e))
        return self._result_from_content(url, fetched.content)

    def _result_from_content(self, url: str, content: str) -> ValidationResult:
        result = parse_feed(content, source_name=url)
        if not result.ok:
            return ValidationResult(valid=False, url=url, error=NOT_A_FEED_ERROR)
        if not result.metadata or not result.metadata.title:
            return ValidationResult(valid=False, url=url, error=NO_TITLE_ERROR)
        warning = None if result.items else EMPTY_FEED_WARNING
        return ValidationResult(
            valid=True,
            url=url,
            metadata=result.metadata,
            warning=warning,
        )
