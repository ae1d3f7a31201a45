"""
Data models shared across the listing scraper
"""

from .models import (
    BotDetectionReport,
    CrawlSummary,
    EntityLink,
    ExtractionAttempt,
    ExtractionResult,
    FailureReason,
    FieldError,
    FieldOutcome,
    Fingerprint,
    Found,
    NotFound,
    PageValidation,
    TerminationReason,
    Validity,
)

__all__ = [
    'BotDetectionReport',
    'CrawlSummary',
    'EntityLink',
    'ExtractionAttempt',
    'ExtractionResult',
    'FailureReason',
    'FieldError',
    'FieldOutcome',
    'Fingerprint',
    'Found',
    'NotFound',
    'PageValidation',
    'TerminationReason',
    'Validity',
]
