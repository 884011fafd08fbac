#!/usr/bin/env python3
"""Common error types shared across modules.

Kept free of project imports so any module can raise or catch them.
"""

from typing import List, Optional, Any


class TransportError(Exception):
    """Raised when every strategy of a fetch cascade has failed.

    Attributes:
        attempts: Ordered list of attempt records (one per strategy tried).
        blocked: True when at least one attempt hit a bot-challenge page.
    """

    def __init__(self, message: str = "All fetch strategies failed", attempts: Optional[List[Any]] = None):
        super().__init__(message)
        self.attempts = list(attempts or [])

    @property
    def blocked(self) -> bool:
        return any(getattr(a, "blocked", False) for a in self.attempts)

    @property
    def timed_out(self) -> bool:
        return bool(self.attempts) and all("timed out" in (getattr(a, "error", "") or "") for a in self.attempts)


class FeedParseError(Exception):
    """Raised by callers that require decodable feed content and did not get it."""


class SchedulerError(Exception):
    """Raised when a whole fetch run keeps failing after every retry."""


class UnknownSourceTypeError(ValueError):
    """Raised for a source whose type has no fetcher."""


class StorageError(Exception):
    """Raised by DatabaseQueue.execute when an operation failed in the worker."""


__all__ = ["TransportError", "FeedParseError", "SchedulerError", "UnknownSourceTypeError", "StorageError"]
