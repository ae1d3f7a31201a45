"""
Pagination strategies for listing pages.

query: page number in a query parameter, e.g. ``?ssic=1&page=3``
path:  page number in a path segment, e.g. ``/doctors/page/3/``
ajax:  the listing is replaced in place after clicking a "next" control
"""

from __future__ import annotations

import asyncio
import re
from typing import List, Optional
from urllib.parse import parse_qsl, quote, unquote_plus, urlsplit, urlunsplit

from loguru import logger
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from listing_scraper.config import PaginationType, SiteConfig
from listing_scraper.errors import PaginationError
from listing_scraper.utils.url_filters import is_absolute_http_url

PAGE_PLACEHOLDER = '{page}'

# el.disabled, a "disabled" class on el, its <li> or the container, or aria-disabled="true"
NEXT_CONTROL_DISABLED_JS = """
(el, containerSelector) => {
    const isDisabled = (node) => !!node && (
        node.disabled === true ||
        (node.classList && node.classList.contains('disabled')) ||
        (node.getAttribute && node.getAttribute('aria-disabled') === 'true')
    );
    if (isDisabled(el)) return true;
    const li = el.closest('li');
    if (li && li.classList.contains('disabled')) return true;
    if (containerSelector) {
        const container = el.closest(containerSelector) || document.querySelector(containerSelector);
        if (isDisabled(container)) return true;
    }
    return false;
}
"""

LINK_HREFS_JS = "els => els.map(e => e.href).filter(Boolean)"


def _template_regex(template: str) -> re.Pattern:
    """Escape a pattern and turn its single {page} placeholder into a digit capture."""
    before, _, after = template.partition(PAGE_PLACEHOLDER)
    return re.compile(re.escape(before) + r'(\d+)' + re.escape(after))


def _trailing_path_regex(template: str) -> re.Pattern:
    """Like _template_regex, but only matches the last segment of a path, with or without a trailing slash."""
    before, _, after = template.partition(PAGE_PLACEHOLDER)
    return re.compile(re.escape(before) + r'(\d+)' + re.escape(after.rstrip('/')) + r'/?$')


class PaginationStrategy:
    """Computes page URLs and drives next-page controls for one site"""

    def __init__(self, config: SiteConfig):
        self.pagination = config.pagination
        self.selectors = config.selectors
        self.timing = config.timing
        self.type = self.pagination.type
        self.base_url = config.base_url
        self.start_page = self.pagination.start_page
        self._ajax_page = self.start_page

        if not is_absolute_http_url(self.base_url):
            raise PaginationError(f"Base URL is not an absolute http(s) URL: {self.base_url}", url=self.base_url)

        if self.type == PaginationType.QUERY:
            name, sep, value = self.pagination.query_pattern.partition('=')
            if not sep or not name.strip() or value.count(PAGE_PLACEHOLDER) != 1:
                raise PaginationError(f"Malformed query pattern: {self.pagination.query_pattern!r}")
            self.param_name = name.strip()
            self._value_template = value
            self._value_regex = _template_regex(value)
        elif self.type == PaginationType.PATH:
            pattern = self.pagination.path_pattern
            if pattern.count(PAGE_PLACEHOLDER) != 1:
                raise PaginationError(f"Malformed path pattern: {pattern!r}")
            self._path_regex = _trailing_path_regex(pattern)
        elif not self.selectors.next_button:
            raise PaginationError("AJAX pagination requires a next button selector")

    # ------------------------------------------------------------------
    # URL arithmetic
    # ------------------------------------------------------------------

    def current_page(self, url: str) -> int:
        if self.type == PaginationType.AJAX:
            return self._ajax_page

        if not is_absolute_http_url(url):
            raise PaginationError(f"Cannot read page number from malformed URL: {url!r}", url=url)
        parts = urlsplit(url)

        if self.type == PaginationType.QUERY:
            values = [v for k, v in parse_qsl(parts.query, keep_blank_values=True) if k == self.param_name]
            if not values:
                return self.start_page
            match = self._value_regex.fullmatch(values[-1])
            if not match:
                raise PaginationError(f"Non-numeric {self.param_name}={values[-1]!r} in {url}", url=url)
            return int(match.group(1))

        match = self._path_regex.search(parts.path)
        return int(match.group(1)) if match else self.start_page

    def page_url(self, page_number: int) -> str:
        if page_number < 0:
            raise PaginationError(f"Invalid page number: {page_number}")

        if self.type == PaginationType.AJAX:
            if page_number == self.start_page:
                return self.base_url
            raise PaginationError("AJAX pagination has no per-page URLs")

        parts = urlsplit(self.base_url)

        if self.type == PaginationType.QUERY:
            value = quote(self._value_template.replace(PAGE_PLACEHOLDER, str(page_number)), safe='')
            # Only the page parameter is rewritten, the rest of the query keeps its original encoding
            segments = []
            replaced = False
            for segment in parts.query.split('&') if parts.query else []:
                raw_key = segment.partition('=')[0]
                if unquote_plus(raw_key) == self.param_name:
                    if not replaced:
                        segments.append(f"{raw_key}={value}")
                        replaced = True
                    continue
                segments.append(segment)
            if not replaced:
                segments.append(f"{quote(self.param_name, safe='')}={value}")
            return urlunsplit((parts.scheme, parts.netloc, parts.path, '&'.join(segments), parts.fragment))

        path = parts.path
        existing = self._path_regex.search(path)
        if existing:
            path = path[:existing.start()] + path[existing.end():]
        if path.endswith('/'):
            path = path[:-1]
        path += self.pagination.path_pattern.replace(PAGE_PLACEHOLDER, str(page_number))
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))

    def next_page_url(self, url: str, first_page: Optional[int] = None) -> Optional[str]:
        """URL of the page after ``url``, or None when there is none to compute"""
        if self.type == PaginationType.AJAX:
            return None
        next_page = self.current_page(url) + 1
        if self.exceeds_max_pages(next_page, first_page):
            return None
        return self.page_url(next_page)

    def exceeds_max_pages(self, page_number: int, first_page: Optional[int] = None) -> bool:
        """max_pages counts from the page the crawl began on, start_page by default"""
        max_pages = self.pagination.max_pages
        first = self.start_page if first_page is None else first_page
        return max_pages is not None and page_number - first + 1 > max_pages

    # ------------------------------------------------------------------
    # Live page checks
    # ------------------------------------------------------------------

    async def has_next(self, page) -> bool:
        """False when the next control is missing or disabled"""
        if not self.selectors.next_button:
            # Nothing to check, the listing itself signals the end
            return True
        try:
            control = await page.query_selector(self.selectors.next_button)
            if control is None:
                logger.info("No next-page control found")
                return False
            disabled = await control.evaluate(NEXT_CONTROL_DISABLED_JS, self.selectors.next_button_container)
            if disabled:
                logger.info("Next-page control is disabled")
                return False
            return True
        except PlaywrightError as e:
            logger.warning(f"Could not inspect next-page control: {e}")
            return False

    async def is_last_page(self, page) -> bool:
        """Explicit last-page markers: next control text changed, or marker text in the body"""
        try:
            expected = self.pagination.next_button_text
            if expected and self.selectors.next_button:
                control = await page.query_selector(self.selectors.next_button)
                if control is not None:
                    text = (await control.inner_text()).strip()
                    if text and text.lower() != expected.strip().lower():
                        logger.info(f"Next control reads {text!r}, treating as last page")
                        return True

            markers = self.pagination.last_page_markers
            if markers:
                body = (await page.inner_text('body')).lower()
                for marker in markers:
                    if marker.lower() in body:
                        logger.info(f"Last-page marker found: {marker!r}")
                        return True
        except PlaywrightError as e:
            logger.debug(f"Last-page check failed: {e}")
        return False

    async def snapshot_links(self, page) -> List[str]:
        hrefs = await page.eval_on_selector_all(self.selectors.listing_links, LINK_HREFS_JS)
        return list(dict.fromkeys(hrefs))

    async def handle_ajax_pagination(self, page) -> bool:
        """
        Click-wait-verify: snapshot listing hrefs, click next, wait for the
        processing indicator to come and go, snapshot again. Success only if
        the set of hrefs changed.
        """
        if self.type != PaginationType.AJAX:
            raise PaginationError(f"handle_ajax_pagination called for {self.type.value} pagination")

        try:
            before = await self.snapshot_links(page)
            control = await page.query_selector(self.selectors.next_button)
            if control is None:
                logger.info("AJAX next control not found")
                return False
            await control.click(timeout=self.timing.selector_timeout_ms)
        except PlaywrightError as e:
            logger.warning(f"AJAX next click failed: {e}")
            return False

        await self._wait_for_settle(page)

        try:
            after = await self.snapshot_links(page)
        except PlaywrightError as e:
            logger.warning(f"Could not re-read listing after AJAX click: {e}")
            return False

        if set(after) == set(before):
            logger.warning("AJAX next clicked but the listing did not change")
            return False

        self._ajax_page += 1
        logger.info(f"📄 AJAX listing advanced to page {self._ajax_page} ({len(after)} links)")
        return True

    async def _wait_for_settle(self, page) -> None:
        indicator = self.selectors.processing_indicator
        settle_ms = self.timing.ajax_settle_timeout_ms
        fallback = self.timing.ajax_fallback_delay_ms / 1000

        if not indicator:
            await asyncio.sleep(fallback)
            return

        try:
            await page.wait_for_selector(indicator, state='attached', timeout=settle_ms)
        except PlaywrightTimeoutError:
            # The indicator may have come and gone before we looked
            await asyncio.sleep(fallback)
            return

        try:
            await page.wait_for_selector(indicator, state='detached', timeout=settle_ms)
        except PlaywrightTimeoutError:
            logger.debug(f"Processing indicator {indicator} still present after {settle_ms}ms")
            await asyncio.sleep(fallback)
