"""
Crawl orchestrator.

One sequential worker walks the listing pages of a site:

    LISTING(n) -> EXTRACTING(i of N) -> PAGINATING -> LISTING(n+1) | TERMINAL

Every accepted record is handed to ``persist`` as soon as it is extracted.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from loguru import logger
from playwright.async_api import Error as PlaywrightError

from listing_scraper.browser.browser_manager import BrowserHandle, BrowserSessionManager
from listing_scraper.config import PaginationType, SiteConfig
from listing_scraper.data_models.models import (
    CrawlSummary,
    EntityLink,
    ExtractionAttempt,
    ExtractionResult,
    Fingerprint,
    TerminationReason,
)
from listing_scraper.errors import (
    ConsecutiveFailureLimitExceeded,
    ErrorType,
    NavigationError,
    PaginationError,
    ScraperError,
    SelectorTimeoutError,
    failure_reason,
)
from listing_scraper.extractors.extraction import ExtractionPipeline
from listing_scraper.pagination.strategy import PaginationStrategy
from listing_scraper.utils.anti_detection import FingerprintGenerator
from listing_scraper.utils.human_behavior import (
    detect_bot_protection,
    handle_bot_detection,
    human_delay,
    simulate_human_interaction,
)
from listing_scraper.utils.url_filters import is_url_excluded, normalize_url, should_crawl_url

Persist = Callable[[ExtractionResult], Union[None, Awaitable[None]]]

FATAL_REASONS = {
    PaginationError: TerminationReason.PAGINATION_ERROR,
    NavigationError: TerminationReason.NAVIGATION_ERROR,
    SelectorTimeoutError: TerminationReason.SELECTOR_TIMEOUT,
    ConsecutiveFailureLimitExceeded: TerminationReason.CONSECUTIVE_FAILURES,
}


class CrawlState(str, Enum):
    LISTING = "listing"
    EXTRACTING = "extracting"
    PAGINATING = "paginating"
    TERMINAL = "terminal"


class CrawlOrchestrator:
    """Drives listing -> entity extraction -> pagination for one site"""

    def __init__(self, config: SiteConfig, persist: Persist,
                 sessions: Optional[BrowserSessionManager] = None,
                 pipeline: Optional[ExtractionPipeline] = None,
                 strategy: Optional[PaginationStrategy] = None,
                 fingerprint: Optional[Fingerprint] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.persist = persist
        self._sleep = sleep
        self._rng = rng or random.Random()

        if fingerprint is None and config.crawler.enable_anti_detection:
            fingerprint = FingerprintGenerator(self._rng).generate()
        self.fingerprint = fingerprint

        self.sessions = sessions or BrowserSessionManager(config, fingerprint)
        self.pipeline = pipeline or ExtractionPipeline(config, sleep=sleep)
        self.strategy = strategy or PaginationStrategy(config)

        self.state = CrawlState.LISTING
        self.summary = CrawlSummary()
        self.visited: Set[str] = set()
        self._entities_attempted = 0
        self._consecutive_failures = 0
        self._cancel_requested = False

    def request_cancel(self) -> None:
        """Stop at the next entity boundary; the in-flight extraction finishes"""
        if not self._cancel_requested:
            logger.warning("🛑 Cancellation requested, finishing the current entity")
        self._cancel_requested = True

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    async def run(self) -> CrawlSummary:
        logger.info(f"🚀 Crawling {self.config.name} from {self.config.start_url} "
                    f"({self.config.pagination.type.value} pagination, {self.config.crawler.browser_policy.value} browsers)")
        try:
            await self.sessions.start()
            async with self.sessions.listing_session() as listing:
                reason = await self._crawl(listing)
            self._terminate(reason)
            return self.summary
        except ScraperError as e:
            self.summary.record_failure(e.to_reason())
            self._terminate(FATAL_REASONS.get(type(e), TerminationReason.NAVIGATION_ERROR))
            e.summary = self.summary
            logger.bind(phase=e.phase, url=e.url).error(f"💥 Crawl aborted: {e}")
            raise
        finally:
            await self.sessions.stop()

    async def scrape_urls(self, urls: List[str]) -> CrawlSummary:
        """Scraper-only mode: extract entity cards from each given page, no pagination"""
        logger.info(f"🗂️ Scraper-only run over {len(urls)} pages")
        reason = TerminationReason.COMPLETED
        try:
            await self.sessions.start()
            for index, url in enumerate(urls, start=1):
                if self._cancel_requested:
                    reason = TerminationReason.CANCELLED
                    break
                if index > 1:
                    await self._request_gap(self.config.timing.entity_interval_ms)
                try:
                    async with self.sessions.entity_page() as page:
                        await self.sessions.safe_goto(page, url, phase='extracting')
                        await self._pause(self.config.timing.post_navigation_wait_ms)
                        results = await self.pipeline.extract_cards(page, url, index)
                except (NavigationError, PlaywrightError) as e:
                    reason_value = e.to_reason() if isinstance(e, ScraperError) else failure_reason(
                        ErrorType.NAVIGATION, str(e), url=url, phase='extracting')
                    self.summary.record_failure(reason_value)
                    logger.warning(f"⚠️ Skipping {url}: {e}")
                    continue

                self.summary.total_pages_processed += 1
                for result in results:
                    await self._persist(result)
                    self.summary.total_records_extracted += 1
            self._terminate(reason)
            return self.summary
        finally:
            await self.sessions.stop()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _crawl(self, listing: BrowserHandle) -> TerminationReason:
        url = self.config.start_url
        page_number = self.strategy.current_page(url)
        first_page_number = page_number
        first_page = True
        navigate = True

        while True:
            self.state = CrawlState.LISTING
            if self._cancel_requested:
                return TerminationReason.CANCELLED

            if navigate:
                try:
                    await self._load_listing(listing, url)
                except NavigationError as e:
                    if first_page:
                        raise
                    self.summary.record_failure(e.to_reason())
                    logger.error(f"❌ Could not load listing page {page_number}: {e}")
                    return TerminationReason.NAVIGATION_ERROR

            links = await self._collect_links(listing.page, page_number, first_page)
            if not links:
                return TerminationReason.NO_ENTITY_LINKS
            self.summary.total_pages_processed += 1

            self.state = CrawlState.EXTRACTING
            stop_reason = await self._extract_all(links, page_number)
            if stop_reason is not None:
                return stop_reason

            self.state = CrawlState.PAGINATING
            if self._cancel_requested:
                return TerminationReason.CANCELLED
            if self.strategy.exceeds_max_pages(page_number + 1, first_page_number):
                logger.info(f"Reached max pages ({self.config.pagination.max_pages})")
                return TerminationReason.MAX_PAGES
            if await self.strategy.is_last_page(listing.page):
                return TerminationReason.LAST_PAGE_MARKER
            if not await self.strategy.has_next(listing.page):
                return TerminationReason.NO_NEXT_PAGE

            if self.strategy.type == PaginationType.AJAX:
                if not await self.strategy.handle_ajax_pagination(listing.page):
                    return TerminationReason.CONTENT_UNCHANGED
                page_number = self.strategy.current_page(url)
                navigate = False
            else:
                next_url = self.strategy.next_page_url(url, first_page_number)
                if next_url is None:
                    return TerminationReason.MAX_PAGES
                if not should_crawl_url(next_url, self.config.allowed_url_patterns, self.config.excluded_url_patterns):
                    logger.info(f"Next page {next_url} is outside the allowed URL patterns")
                    return TerminationReason.URL_FILTERED
                url = next_url
                page_number = self.strategy.current_page(next_url)
                navigate = True

            first_page = False
            logger.info(f"📄 Moving to listing page {page_number}")
            await self._request_gap(self.config.timing.page_interval_ms)

    async def _load_listing(self, listing: BrowserHandle, url: str) -> None:
        if not await self.sessions.is_alive(listing.page):
            logger.warning("Listing browser is dead, relaunching")
            await self.sessions.relaunch(listing)
        await self.sessions.safe_goto(listing.page, url, phase='listing')
        await self._pause(self.config.timing.post_navigation_wait_ms)

    async def _collect_links(self, page, page_number: int, first_page: bool) -> List[EntityLink]:
        selector = self.config.selectors.listing_links
        try:
            await page.wait_for_selector(selector, timeout=self.config.timing.selector_timeout_ms)
            hrefs = await self.strategy.snapshot_links(page)
        except PlaywrightError as e:
            logger.debug(f"Listing selector {selector!r} unavailable on page {page_number}: {e}")
            hrefs = []

        if not hrefs:
            if first_page:
                raise SelectorTimeoutError(
                    f"No entity links matching {selector!r} on the first listing page",
                    selector=selector, url=page.url, phase='listing',
                )
            logger.info(f"No entity links on page {page_number}, finishing")
            return []

        return [EntityLink(url=href, page_number=page_number) for href in hrefs]

    async def _extract_all(self, links: List[EntityLink], page_number: int) -> Optional[TerminationReason]:
        pending = [
            link for link in links
            if normalize_url(link.url) not in self.visited
            and not is_url_excluded(link.url, self.config.excluded_url_patterns)
        ]
        logger.info(f"🔗 Page {page_number}: {len(links)} entity links, {len(pending)} new")

        limit = self.config.crawler.consecutive_failure_limit
        max_entities = self.config.crawler.max_entities

        for index, link in enumerate(pending, start=1):
            if self._cancel_requested:
                return TerminationReason.CANCELLED
            if self._entities_attempted:
                await self._request_gap(self.config.timing.entity_interval_ms)

            logger.info(f"👤 [{page_number}:{index}/{len(pending)}] {link.url}")
            self.visited.add(normalize_url(link.url))
            self._entities_attempted += 1
            attempt = await self._extract_entity(link)

            if attempt.succeeded:
                await self._persist(attempt.result)
                self.summary.total_records_extracted += 1
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                if attempt.failure is not None:
                    self.summary.record_failure(attempt.failure)
                if self._consecutive_failures >= limit:
                    raise ConsecutiveFailureLimitExceeded(self._consecutive_failures, limit, url=link.url)

            if max_entities is not None and self._entities_attempted >= max_entities:
                logger.info(f"Reached max entities ({max_entities})")
                return TerminationReason.MAX_ENTITIES
        return None

    async def _extract_entity(self, link: EntityLink) -> ExtractionAttempt:
        crawler = self.config.crawler
        try:
            async with self.sessions.entity_page() as page:
                await self.sessions.safe_goto(page, link.url, phase='extracting')
                await self._pause(self.config.timing.post_navigation_wait_ms)

                if crawler.detect_bot_protection:
                    report = await detect_bot_protection(
                        page, link.url, self.config.validation.bot_min_content_length
                    )
                    if report.detected:
                        reason = failure_reason(
                            ErrorType.BOT_DETECTED,
                            f"Bot protection indicators: {', '.join(report.triggered)}",
                            url=link.url, phase='extracting',
                        )
                        self.summary.record_failure(reason)
                        logger.warning(f"🤖 {reason.message}, applying countermeasure")
                        await handle_bot_detection(page, self.config.timing.bot_wait_ms, sleep=self._sleep)

                if crawler.simulate_human:
                    await simulate_human_interaction(page, self._rng, sleep=self._sleep)

                return await self.pipeline.run(page, link.url, link.page_number)
        except NavigationError as e:
            logger.warning(f"⚠️ {e}")
            return ExtractionAttempt(failure=e.to_reason())
        except PlaywrightError as e:
            logger.warning(f"⚠️ Browser error on {link.url}: {e}")
            return ExtractionAttempt(failure=failure_reason(ErrorType.NAVIGATION, str(e), url=link.url, phase='extracting'))

    # ------------------------------------------------------------------

    async def _persist(self, result: ExtractionResult) -> None:
        outcome = self.persist(result)
        if inspect.isawaitable(outcome):
            await outcome

    async def _pause(self, milliseconds: int) -> None:
        if milliseconds > 0:
            await self._sleep(milliseconds / 1000)

    async def _request_gap(self, milliseconds: int) -> None:
        """Randomized pause between requests, centred on the configured interval"""
        if milliseconds > 0:
            await self._sleep(human_delay(milliseconds, rng=self._rng) / 1000)

    def _terminate(self, reason: TerminationReason) -> None:
        self.state = CrawlState.TERMINAL
        self.summary.termination_reason = reason
        logger.info(f"🏁 Crawl finished ({reason.value}): {self.summary.total_pages_processed} pages, "
                    f"{self.summary.total_records_extracted} records")
