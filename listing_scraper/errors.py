"""
Error taxonomy for the listing scraper.

Only run-level failures are raised. Per-entity problems (invalid pages,
bot-detection hits) are reported as ``FailureReason`` values so the crawl
keeps going.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

from listing_scraper.data_models.models import FailureReason

if TYPE_CHECKING:
    from listing_scraper.data_models.models import CrawlSummary


class ErrorType(str, Enum):
    """Types of failures that can occur during a crawl"""
    PAGINATION = "pagination"
    NAVIGATION = "navigation"
    SELECTOR_TIMEOUT = "selector_timeout"
    VALIDATION = "validation"
    BOT_DETECTED = "bot_detected"
    CONSECUTIVE_FAILURES = "consecutive_failures"


class ScraperError(Exception):
    """Base exception for listing scraper errors"""

    def __init__(self, message: str, error_type: ErrorType, url: Optional[str] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.url = url
        self.phase = phase
        # Filled in by the orchestrator when the error ends a run
        self.summary: Optional["CrawlSummary"] = None

    def to_reason(self) -> FailureReason:
        return FailureReason(
            error_type=self.error_type.value,
            url=self.url,
            phase=self.phase,
            message=self.message,
        )


class PaginationError(ScraperError):
    """Malformed pagination pattern or URL"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, ErrorType.PAGINATION, url=url, phase="pagination")


class NavigationError(ScraperError):
    """Navigation failed after all retries, or the page was dead"""

    def __init__(self, message: str, url: Optional[str] = None, phase: Optional[str] = "navigation"):
        super().__init__(message, ErrorType.NAVIGATION, url=url, phase=phase)


class SelectorTimeoutError(ScraperError):
    """A required selector never appeared"""

    def __init__(self, message: str, selector: str, url: Optional[str] = None, phase: Optional[str] = None):
        super().__init__(message, ErrorType.SELECTOR_TIMEOUT, url=url, phase=phase)
        self.selector = selector


class ConsecutiveFailureLimitExceeded(ScraperError):
    """Too many entity extractions failed in a row"""

    def __init__(self, failures: int, limit: int, url: Optional[str] = None):
        super().__init__(
            f"{failures} consecutive entity failures (limit {limit})",
            ErrorType.CONSECUTIVE_FAILURES,
            url=url,
            phase="extracting",
        )
        self.failures = failures
        self.limit = limit


def failure_reason(error_type: ErrorType, message: str, url: Optional[str] = None, phase: Optional[str] = None) -> FailureReason:
    """Build a reported (not raised) failure such as a validation miss or bot hit."""
    return FailureReason(error_type=error_type.value, url=url, phase=phase, message=message)
