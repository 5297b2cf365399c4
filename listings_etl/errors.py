"""Error taxonomy shared by the scraping and reconciliation pipeline."""
from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

REMOVAL_MARKERS = ("listing is no longer available", "物件は売却済みです")
REMOVAL_PATTERN = re.compile(r"property (has been|was) (sold|removed)", re.IGNORECASE)
# At least one of these appears on every live detail page.
LIVE_PAGE_MARKERS = ("detail_price", "property-details")


class ErrorType(str, Enum):
    """Failure categories used for logging and retry decisions."""

    NETWORK = "network"
    PARSER = "parser"
    STORAGE = "storage"
    VALIDATION = "validation"
    LISTING_REMOVED = "listing_removed"
    QUEUE = "queue"
    UNKNOWN = "unknown"


class ScraperError(Exception):
    """Structured pipeline error.

    Parameters
    ----------
    message : str
        Human readable description
    error_type : ErrorType
        Failure category
    retriable : bool
        Whether re-running the same job may succeed
    context : dict, optional
        Extra details (listing id, url, path) for logs
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        retriable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.retriable = retriable
        self.context = context or {}

    @classmethod
    def network(cls, message: str, **context: Any) -> "ScraperError":
        return cls(message, ErrorType.NETWORK, retriable=True, context=context)

    @classmethod
    def parser(cls, message: str, **context: Any) -> "ScraperError":
        return cls(message, ErrorType.PARSER, retriable=False, context=context)

    @classmethod
    def validation(cls, message: str, **context: Any) -> "ScraperError":
        return cls(message, ErrorType.VALIDATION, retriable=False, context=context)

    @classmethod
    def listing_removed(cls, message: str, **context: Any) -> "ScraperError":
        return cls(message, ErrorType.LISTING_REMOVED, retriable=False, context=context)


class StoreError(ScraperError):
    """Raised when a required store file is missing or unreadable."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, ErrorType.STORAGE, retriable=False, context=context)


class QueueUnavailableError(ScraperError):
    """Raised by callers that need a queue but received none."""

    def __init__(self, message: str = "Queue not initialized", **context: Any) -> None:
        super().__init__(message, ErrorType.QUEUE, retriable=True, context=context)


def classify_error(exc: BaseException) -> ScraperError:
    """Wrap an arbitrary exception into a :class:`ScraperError`.

    Timeouts and connection problems are considered retriable network
    failures; everything else is reported as unknown.
    """
    if isinstance(exc, ScraperError):
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)) or any(
        word in lowered for word in ("timeout", "network", "connection")
    ):
        return ScraperError.network(message)
    return ScraperError(message)


def is_listing_removed(html: Optional[str], status: Optional[int]) -> bool:
    """Return True when the response indicates the listing no longer exists."""
    if status == 404:
        return True
    if not html:
        return False
    if any(marker in html for marker in REMOVAL_MARKERS) or REMOVAL_PATTERN.search(html):
        return True
    return not any(marker in html for marker in LIVE_PAGE_MARKERS)
