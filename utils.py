#!/usr/bin/env python3
"""
Utility classes and functions shared by the acquisition modules.

URL normalisation, HTML-to-text cleaning, truncation, client error
formatting and retry backoff live here.
"""

from asyncio import sleep, TimeoutError as AsyncTimeoutError
from typing import Optional, Tuple
import re
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientResponseError, ClientConnectorError
from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

_WHITESPACE_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]*>")


def normalize_url(raw: str) -> str:
    """Trim user input and prepend https:// when no http(s) scheme is present."""
    if not raw or not isinstance(raw, str):
        return ""
    url = raw.strip()
    if not url:
        return ""
    if not re.match(r"^https?://", url, re.I):
        url = f"https://{url}"
    return url


def validate_url(url: str) -> Tuple[bool, Optional[str]]:
    """Check that a string is an absolute http(s) URL with a usable host.

    Returns:
        (True, None) when valid, otherwise (False, reason).
    """
    if not url or not isinstance(url, str):
        return False, "URL is empty"
    try:
        parts = urlsplit(url)
        # Accessing port validates it
        parts.port
    except ValueError as e:
        return False, f"URL could not be parsed: {e}"
    if parts.scheme not in ("http", "https"):
        return False, f"Unsupported URL scheme '{parts.scheme}'"
    host = parts.hostname or ""
    if not host or " " in parts.netloc or not re.match(r"^[\w.\-\[\]:]+$", host, re.UNICODE):
        return False, "URL has no valid host name"
    return True, None


def url_origin(url: str) -> str:
    """Return scheme://host[:port] for an absolute URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def url_hostname(url: str) -> str:
    """Hostname of a URL or bare domain, lower-cased, without a leading www."""
    candidate = url.strip()
    if not re.match(r"^[a-z][a-z0-9+.\-]*://", candidate, re.I):
        candidate = f"https://{candidate}"
    host = (urlsplit(candidate).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)].rstrip() + suffix


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def clean_html_to_text(html_content: str) -> str:
    """Strip markup from an HTML fragment and return collapsed plain text.

    Script, style and similar elements are dropped together with their
    contents. Block-level boundaries become spaces so words from adjacent
    paragraphs do not run together.
    """
    if not html_content:
        return ""
    if "<" not in html_content and "&" not in html_content:
        return collapse_whitespace(html_content)

    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(["script", "style", "iframe", "noscript", "object", "embed", "form", "head"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    # Escaped markup inside CDATA survives get_text as literal tags
    text = _TAG_RE.sub(" ", text)
    return collapse_whitespace(text)


def format_client_error(error: BaseException) -> str:
    """Describe a network failure in one short, user-readable line."""
    if isinstance(error, AsyncTimeoutError):
        return "request timed out"
    if isinstance(error, ClientResponseError):
        return f"HTTP {error.status}: {error.message}"
    if isinstance(error, ClientConnectorError):
        os_error = getattr(error, "os_error", None)
        if os_error is not None and "Name or service not known" in str(os_error):
            return f"DNS lookup failed for {error.host}"
        if os_error is not None and getattr(os_error, "errno", None) in (-2, -3, -5, 8, 11001):
            return f"DNS lookup failed for {error.host}"
        return f"connection to {error.host} failed: {os_error or error}"
    if isinstance(error, ClientError):
        text = str(error).strip()
        return f"{type(error).__name__}: {text}" if text else type(error).__name__
    text = str(error).strip()
    return text or type(error).__name__


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 2.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows 0-based ``attempt``."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)
