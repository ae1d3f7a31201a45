from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Validity(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    PARTIAL_VALID = "partial_valid"


class TerminationReason(str, Enum):
    """Why a crawl reached its terminal state"""
    NO_NEXT_PAGE = "no_next_page"
    LAST_PAGE_MARKER = "last_page_marker"
    CONTENT_UNCHANGED = "content_unchanged"
    URL_FILTERED = "url_filtered"
    NO_ENTITY_LINKS = "no_entity_links"
    MAX_PAGES = "max_pages"
    MAX_ENTITIES = "max_entities"
    NAVIGATION_ERROR = "navigation_error"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    # Fatal outcomes, the run raised
    PAGINATION_ERROR = "pagination_error"
    SELECTOR_TIMEOUT = "selector_timeout"
    CONSECUTIVE_FAILURES = "consecutive_failures"


class FailureReason(BaseModel):
    """Structured failure emitted instead of log-only errors"""
    model_config = ConfigDict(frozen=True)

    error_type: str
    message: str
    url: Optional[str] = None
    phase: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class EntityLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    page_number: int


class ExtractionResult(BaseModel):
    """A validated record for one entity detail page"""
    model_config = ConfigDict(frozen=True)

    url: str
    extracted_date: str = Field(description="YYYY-MM-DD")
    fields: Dict[str, Union[str, List[Any]]] = Field(default_factory=dict)
    validity: Validity = Validity.VALID
    source_page: Optional[int] = None
    title: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Flat dictionary as written by the storage layer."""
        record: Dict[str, Any] = {
            "extractedDate": self.extracted_date,
            "url": self.url,
        }
        record.update(self.fields)
        record["validity"] = self.validity.value
        if self.source_page is not None:
            record["sourcePage"] = self.source_page
        return record


class PageValidation(BaseModel):
    title: str = ""
    has_error: bool = False
    content_length: int = 0
    meaningful_length: int = 0
    has_domain_keywords: bool = False
    has_tracking_boilerplate: bool = False
    is_iframe_shell: bool = False
    min_content_length: int = 100

    @property
    def is_valid(self) -> bool:
        return (
            not self.has_error
            and not self.is_iframe_shell
            and self.meaningful_length >= self.min_content_length
        )

    @property
    def is_borderline(self) -> bool:
        return self.has_tracking_boilerplate and not self.has_domain_keywords

    @property
    def is_remediable(self) -> bool:
        # Error pages never recover by scrolling
        if self.has_error:
            return False
        return self.is_borderline or (not self.is_valid and (self.has_tracking_boilerplate or self.is_iframe_shell))


@dataclass(frozen=True)
class Found:
    value: Any
    selector: str


@dataclass(frozen=True)
class NotFound:
    selector: str


@dataclass(frozen=True)
class FieldError:
    selector: str
    reason: str


FieldOutcome = Union[Found, NotFound, FieldError]


class BotDetectionReport(BaseModel):
    indicators: Dict[str, bool] = Field(default_factory=dict)
    content_length: int = 0
    final_url: Optional[str] = None

    @property
    def detected(self) -> bool:
        return any(self.indicators.values())

    @property
    def triggered(self) -> List[str]:
        return [name for name, hit in self.indicators.items() if hit]


class ExtractionAttempt(BaseModel):
    """Outcome of one entity extraction: a record or the reason there is none"""
    result: Optional[ExtractionResult] = None
    failure: Optional[FailureReason] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class Fingerprint(BaseModel):
    """Browser identity shared by every session of one run"""
    model_config = ConfigDict(frozen=True)

    user_agent: str
    platform: str
    viewport_width: int
    viewport_height: int
    screen_width: int
    screen_height: int
    device_scale_factor: float = 1.0
    hardware_concurrency: int = 8
    device_memory: int = 8
    timezone_id: str = "Asia/Singapore"
    locale: str = "en-US"
    languages: List[str] = Field(default_factory=lambda: ["en-US", "en"])
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris OpenGL Engine"
    color_depth: int = 24
    max_touch_points: int = 0
    do_not_track: Optional[str] = None
    battery_charging: bool = True
    battery_level: float = 1.0
    audio_noise: float = 0.0001

    def to_context_options(self, extra_headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Keyword arguments for ``browser.new_context``."""
        options: Dict[str, Any] = {
            "user_agent": self.user_agent,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "screen": {"width": self.screen_width, "height": self.screen_height},
            "device_scale_factor": self.device_scale_factor,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "color_scheme": "light",
            "java_script_enabled": True,
        }
        if extra_headers:
            options["extra_http_headers"] = dict(extra_headers)
        return options


class CrawlSummary(BaseModel):
    total_pages_processed: int = 0
    total_records_extracted: int = 0
    termination_reason: Optional[TerminationReason] = None
    failure_counts: Dict[str, int] = Field(default_factory=dict)

    def record_failure(self, reason: FailureReason) -> None:
        self.failure_counts[reason.error_type] = self.failure_counts.get(reason.error_type, 0) + 1
