#!/usr/bin/env python3
"""
Content normalizer: turns raw RSS/Atom/RSSHub text into FeedItem lists.

``parse_feed`` never raises. A document feedparser cannot recognise comes
back as ``ParseResult(ok=False, error=...)`` with no items, so callers that
only care whether a feed exists can still inspect the metadata.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from io import BytesIO
from time import time
from typing import Any, List, Optional, Union
import re

import feedparser

from config import config, get_logger
from models import FeedItem, FeedMetadata, ParseResult, SourceType
from utils import clean_html_to_text, collapse_whitespace, truncate_string

logger = get_logger("normalizer")

# Checked in order; the first field that yields a timestamp wins
DATE_FIELDS = ('published', 'updated', 'created')
EXTRA_DATE_FIELDS = ('modified', 'date', 'pubDate', 'pubdate', 'issued', 'dc_date')

_CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def parse_feed(content: Union[str, bytes, None], source_name: str, favicon_url: Optional[str] = None,
               source_type: str = SourceType.RSS.value, max_summary: Optional[int] = None,
               source_id: Optional[str] = None) -> ParseResult:
    """Decode a feed document into normalized items.

    Args:
        content: Raw document text (or bytes) as returned by the transport
        source_name: Label stored on every item
        favicon_url: Carried through unchanged onto every item
        source_type: Stored on every item
        max_summary: Summary length cap (defaults to SUMMARY_MAX_LENGTH)
        source_id: Owning source id, if any

    Returns:
        ParseResult with items in document order. Entries without a title
        are skipped.
    """
    if not content:
        return ParseResult(ok=False, error="Empty document")

    limit = max_summary or config.SUMMARY_MAX_LENGTH
    data = content.encode('utf-8') if isinstance(content, str) else content
    try:
        # A stream keeps feedparser from treating short strings as URLs or file names
        feed = feedparser.parse(BytesIO(data))
    except Exception as e:  # feedparser raises assorted SAX/encoding errors
        logger.debug(f"feedparser failed for {source_name}: {e}")
        return ParseResult(ok=False, error=f"Could not parse feed: {e}")

    version = getattr(feed, 'version', '') or ''
    entries = feed.get('entries') or []
    if not version and not entries:
        reason = feed.get('bozo_exception')
        message = f"Not a recognisable RSS or Atom document ({reason})" if reason else "Not a recognisable RSS or Atom document"
        return ParseResult(ok=False, error=message)

    if feed.get('bozo') and feed.get('bozo_exception') is not None:
        logger.debug(f"Feed parsing warning for {source_name}: {feed.bozo_exception}")

    channel = feed.get('feed') or {}
    metadata = FeedMetadata(
        title=collapse_whitespace(channel.get('title', '') or ''),
        description=clean_html_to_text(channel.get('subtitle', '') or channel.get('description', '') or ''),
        link=channel.get('link') or None,
    )

    items: List[FeedItem] = []
    skipped = 0
    for entry in entries:
        title = collapse_whitespace(_get_entry_value(entry, 'title') or '')
        if not title:
            skipped += 1
            continue
        items.append(FeedItem(
            title=title,
            link=_extract_link(entry),
            publish_time=parse_entry_date(entry),
            summary=extract_summary(entry, title, limit),
            tags=extract_tags(entry),
            source_name=source_name,
            source_type=source_type,
            favicon_url=favicon_url,
            source_id=source_id,
        ))

    if skipped:
        logger.debug(f"Skipped {skipped} untitled entries from {source_name}")
    logger.debug(f"Parsed {len(items)} items from {source_name} ({version or 'unknown format'})")
    return ParseResult(items=items, metadata=metadata, ok=True)


def parse_metadata(content: Union[str, bytes, None]) -> Optional[FeedMetadata]:
    """Channel metadata only, or None when the document is not a feed."""
    result = parse_feed(content, source_name="")
    return result.metadata if result.ok else None


def extract_summary(entry, title: str, max_length: int) -> str:
    """Plain-text summary: snippet, then content, then summary, then the title."""
    candidates = (_snippet(entry), _content_text(entry), _summary_text(entry))
    for text in candidates:
        if text:
            return truncate_string(text, max_length)
    return truncate_string(title, max_length)


def _snippet(entry) -> str:
    """A summary the feed already declares as plain text."""
    detail = _get_entry_value(entry, 'summary_detail') or {}
    if detail.get('type') == 'text/plain' and detail.get('value'):
        # feedparser can still hand back escaped markup for text/plain
        return clean_html_to_text(detail['value'])
    return ''


def _content_text(entry) -> str:
    for content_item in _get_entry_value(entry, 'content') or []:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value:
            text = clean_html_to_text(value)
            if text:
                return text
    return ''


def _summary_text(entry) -> str:
    raw = _get_entry_value(entry, 'summary') or _get_entry_value(entry, 'description') or ''
    return clean_html_to_text(raw)


def extract_tags(entry) -> List[str]:
    tags: List[str] = []
    for tag in _get_entry_value(entry, 'tags') or []:
        term = (tag.get('term') or tag.get('label') or '') if hasattr(tag, 'get') else ''
        term = collapse_whitespace(str(term))
        if term and term not in tags:
            tags.append(term)
    return tags


def _extract_link(entry) -> Optional[str]:
    link = _get_entry_value(entry, 'link')
    if link:
        return str(link).strip()
    for candidate in _get_entry_value(entry, 'links') or []:
        href = candidate.get('href') if hasattr(candidate, 'get') else None
        if href:
            return str(href).strip()
    entry_id = _get_entry_value(entry, 'id')
    if isinstance(entry_id, str) and entry_id.startswith(('http://', 'https://')):
        return entry_id.strip()
    return None


def parse_entry_date(entry) -> int:
    """Unix timestamp from the first usable date field, else the current time."""
    for field in DATE_FIELDS + EXTRA_DATE_FIELDS:
        timestamp = _date_value_to_timestamp(_get_entry_value(entry, f"{field}_parsed"))
        if timestamp:
            return timestamp
        timestamp = _date_value_to_timestamp(_get_entry_value(entry, field))
        if timestamp:
            return timestamp
    return int(time())


def _get_entry_value(entry, field: str) -> Any:
    """Fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        try:
            value = getter(field)
        except (KeyError, AttributeError):
            value = None
        if value is not None:
            return value
    return getattr(entry, field, None)


def _date_value_to_timestamp(value: Any) -> Optional[int]:
    if value in (None, ''):
        return None

    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    if isinstance(value, (list, tuple)):
        try:
            # feedparser *_parsed values are UTC struct_time
            return int(timegm(tuple(value)))
        except (OverflowError, ValueError, TypeError):
            return None

    if isinstance(value, str):
        return _parse_date_string(value.strip())

    return None


def _parse_date_string(date_str: str) -> Optional[int]:
    if not date_str:
        return None
    for parser in (_parse_with_feedparser, _parse_with_email_utils, _parse_with_custom_formats):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return int(timegm(time_struct))
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    cleaned = re.sub(r"\s+", " ", date_str)
    for fmt in _CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(cleaned, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None
