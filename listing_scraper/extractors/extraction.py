"""
Extraction pipeline for entity detail pages.

validity gate -> (one remediation pass) -> field fallback chains -> acceptance.
Failures come back as ``ExtractionAttempt.failure``; nothing here raises for a
bad page.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from bs4 import BeautifulSoup
from loguru import logger
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from listing_scraper.config import SiteConfig
from listing_scraper.data_models.models import ExtractionAttempt, ExtractionResult, Validity
from listing_scraper.errors import ErrorType, SelectorTimeoutError, failure_reason
from listing_scraper.extractors.card_extraction import extract_cards
from listing_scraper.extractors.field_extraction import (
    extract_contacts,
    extract_name,
    extract_specialty,
    extract_table_rows,
)
from listing_scraper.extractors.page_validation import REMEDIATION_JS, validate_html


class ExtractionPipeline:
    """Turns a loaded detail page into an ExtractionResult, or a failure reason"""

    def __init__(self, config: SiteConfig, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.selectors = config.selectors
        self.timing = config.timing
        self._sleep = sleep

    async def extract(self, page, url: str, source_page: Optional[int] = None) -> Optional[ExtractionResult]:
        attempt = await self.run(page, url, source_page)
        return attempt.result

    async def run(self, page, url: str, source_page: Optional[int] = None) -> ExtractionAttempt:
        log = logger.bind(phase='extracting', url=url)
        try:
            if page.is_closed():
                return self._failed(ErrorType.NAVIGATION, "Page closed before extraction", url)

            if self.selectors.detail_ready:
                try:
                    await page.wait_for_selector(self.selectors.detail_ready, timeout=self.timing.selector_timeout_ms)
                except PlaywrightTimeoutError:
                    error = SelectorTimeoutError(
                        f"Detail selector {self.selectors.detail_ready!r} did not appear",
                        selector=self.selectors.detail_ready, url=url, phase='extracting',
                    )
                    log.warning(f"⏱️ {error.message}")
                    return ExtractionAttempt(failure=error.to_reason())

            html, title = await self._snapshot(page)
            validation = validate_html(html, title, self.config.validation)

            if validation.is_remediable:
                log.info(f"🔧 Borderline page (tracking={validation.has_tracking_boilerplate}, "
                         f"meaningful={validation.meaningful_length}), trying one remediation pass")
                await self._remediate(page)
                html, title = await self._snapshot(page)
                validation = validate_html(html, title, self.config.validation)

            if not validation.is_valid:
                return self._failed(
                    ErrorType.VALIDATION,
                    f"Invalid page (error={validation.has_error}, meaningful_chars={validation.meaningful_length}, "
                    f"iframe_shell={validation.is_iframe_shell})",
                    url,
                )

            return self._build(html, title, url, source_page)

        except PlaywrightError as e:
            return self._failed(ErrorType.NAVIGATION, f"Page failed during extraction: {e}", url)

    async def extract_cards(self, page, url: str, source_page: Optional[int] = None) -> List[ExtractionResult]:
        """Scraper-only mode: every entity card on one page becomes a record"""
        cards = self.selectors.cards
        if cards is None:
            logger.warning("No card selectors configured, nothing to extract")
            return []
        try:
            html, title = await self._snapshot(page)
        except PlaywrightError as e:
            logger.warning(f"Could not read {url}: {e}")
            return []

        try:
            entries = extract_cards(BeautifulSoup(html, 'lxml'), cards, url)
        except ValueError as e:
            logger.warning(f"Card selectors failed on {url}: {e}")
            return []

        today = date.today().isoformat()
        results = []
        for entry in entries:
            fields = {
                'name': entry['name'],
                'specialty': entry['position'] or '',
                'contact': entry['contact'],
            }
            if entry['website']:
                fields['website'] = entry['website']
            results.append(ExtractionResult(
                url=url, extracted_date=today, fields=fields, validity=Validity.VALID,
                source_page=source_page, title=title,
            ))
        logger.info(f"🗂️ {len(results)} cards extracted from {url}")
        return results

    async def _snapshot(self, page) -> Tuple[str, str]:
        return await page.content(), await page.title()

    async def _remediate(self, page) -> None:
        try:
            await page.evaluate(REMEDIATION_JS)
        except PlaywrightError as e:
            logger.debug(f"Remediation script failed: {e}")
        await self._sleep(self.timing.remediation_wait_ms / 1000)

    def _build(self, html: str, title: str, url: str, source_page: Optional[int]) -> ExtractionAttempt:
        soup = BeautifulSoup(html, 'lxml')
        name = extract_name(soup, title, self.selectors.entity_name)
        specialty = extract_specialty(soup, self.selectors.specialty)
        contacts = extract_contacts(soup, self.selectors.contact_links, url)
        attributes = extract_table_rows(soup, self.selectors.table_rows)

        if not (name or specialty or contacts):
            return self._failed(ErrorType.VALIDATION, "No name, specialty or contacts found", url)

        result = ExtractionResult(
            url=url,
            extracted_date=date.today().isoformat(),
            fields={
                'name': name or '',
                'specialty': specialty or '',
                'contact': contacts,
                'attributes': attributes,
            },
            validity=Validity.VALID if name else Validity.PARTIAL_VALID,
            source_page=source_page,
            title=title,
        )
        logger.info(f"✅ Extracted {name or '(no name)'} | {specialty or '-'} | {len(contacts)} contacts")
        return ExtractionAttempt(result=result)

    @staticmethod
    def _failed(error_type: ErrorType, message: str, url: str) -> ExtractionAttempt:
        reason = failure_reason(error_type, message, url=url, phase='extracting')
        logger.bind(phase='extracting', url=url).warning(f"❌ {message}: {url}")
        return ExtractionAttempt(failure=reason)
