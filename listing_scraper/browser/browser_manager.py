"""
Browser Manager
Launches stealth Chromium sessions and owns their lifecycle.

Two lifecycle policies are supported for entity detail pages:
  - fresh:  a new browser per detail page, torn down right after
  - pooled: one browser serves ``browser_restart_count`` detail pages, then is retired
Both are used through the same scoped acquisition, ``async with manager.entity_page()``.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fake_useragent import UserAgent
from loguru import logger
from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, async_playwright

from listing_scraper.config import BrowserPolicy, SiteConfig
from listing_scraper.data_models.models import Fingerprint
from listing_scraper.errors import NavigationError
from listing_scraper.utils.anti_detection import STEALTH_BROWSER_ARGS, StealthInjector, build_stealth_headers


TRACKER_URL_PATTERN = re.compile(
    r'(doubleclick\.net|googlesyndication\.com|googleadservices\.com|google-analytics\.com'
    r'|googletagmanager\.com|adservice\.google\.|/pagead/|connect\.facebook\.net'
    r'|facebook\.com/tr|hotjar\.com|scorecardresearch\.com)',
    re.IGNORECASE,
)

SAME_SITE_MAP = {
    'no_restriction': 'None',
    'none': 'None',
    'lax': 'Lax',
    'strict': 'Strict',
    'unspecified': 'Lax',
}


def is_tracker_request(url: str) -> bool:
    return bool(TRACKER_URL_PATTERN.search(url))


async def _abort_trackers(route) -> None:
    if is_tracker_request(route.request.url):
        await route.abort()
    else:
        await route.continue_()


def convert_cookies_to_playwright(cookies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert browser-extension cookie exports to Playwright's add_cookies format."""
    converted = []
    for cookie in cookies:
        if not cookie.get('name') or 'value' not in cookie or not cookie.get('domain'):
            logger.warning(f"Skipping cookie without name/value/domain: {cookie.get('name')}")
            continue

        pw_cookie = {
            'name': cookie['name'],
            'value': str(cookie['value']),
            'domain': cookie['domain'],
            'path': cookie.get('path') or '/',
            'httpOnly': bool(cookie.get('httpOnly', False)),
            'secure': bool(cookie.get('secure', False)),
        }

        same_site = cookie.get('sameSite')
        if same_site:
            pw_cookie['sameSite'] = SAME_SITE_MAP.get(str(same_site).lower(), 'Lax')

        expires = cookie.get('expirationDate', cookie.get('expires'))
        if expires is not None and not cookie.get('session', False):
            pw_cookie['expires'] = float(expires)

        converted.append(pw_cookie)
    return converted


class BrowserHandle:
    """A launched browser with its single context and page"""

    def __init__(self, browser: Browser, context: BrowserContext, page: Page):
        self.browser = browser
        self.context = context
        self.page = page
        self.pages_served = 0
        self.closed = False


class BrowserSessionManager:
    """Manages browser launches, navigation retries and lifecycle policies"""

    def __init__(self, config: SiteConfig, fingerprint: Optional[Fingerprint] = None):
        self.config = config
        self.timing = config.timing
        self.crawler = config.crawler
        self.fingerprint = fingerprint
        self.injector = StealthInjector(fingerprint) if fingerprint and self.crawler.enable_anti_detection else None
        self.playwright = None
        self._pooled: Optional[BrowserHandle] = None
        self._ua: Optional[UserAgent] = None
        self.launch_count = 0

    async def start(self) -> None:
        if self.playwright is None:
            self.playwright = await async_playwright().start()

    async def stop(self) -> None:
        """Close the pooled browser and shut the Playwright driver down"""
        await self.close_all()
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None

    def _context_options(self) -> Dict[str, Any]:
        if self.injector is not None:
            return self.fingerprint.to_context_options(build_stealth_headers(self.fingerprint))

        if self._ua is None:
            self._ua = UserAgent()
        return {
            'user_agent': self._ua.random,
            'viewport': {'width': 1920, 'height': 1080},
            'locale': 'en-US',
            'timezone_id': 'Asia/Singapore',
        }

    async def launch(self, headless: Optional[bool] = None) -> BrowserHandle:
        """Launch a stealth browser with one context and one page"""
        await self.start()
        headless = self.crawler.headless if headless is None else headless

        browser = await self.playwright.chromium.launch(headless=headless, args=STEALTH_BROWSER_ARGS)
        try:
            context = await browser.new_context(**self._context_options())
            if self.injector is not None:
                await self.injector.apply(context)
            if self.config.cookies:
                await context.add_cookies(convert_cookies_to_playwright(self.config.cookies))
            if self.crawler.block_trackers:
                await context.route('**/*', _abort_trackers)

            page = await context.new_page()
            page.set_default_timeout(self.timing.selector_timeout_ms)
            page.set_default_navigation_timeout(self.timing.navigation_timeout_ms)
        except PlaywrightError:
            await browser.close()
            raise

        self.launch_count += 1
        logger.debug(f"Launched browser #{self.launch_count} (headless={headless})")
        if self.injector is not None and self.launch_count == 1:
            logger.debug(f"Stealth profile: {self.injector.report()}")
        return BrowserHandle(browser, context, page)

    async def close(self, handle: Optional[BrowserHandle]) -> None:
        """Close a handle; safe to call more than once"""
        if handle is None or handle.closed:
            return
        handle.closed = True
        for name, resource in (('page', handle.page), ('context', handle.context), ('browser', handle.browser)):
            try:
                await resource.close()
            except PlaywrightError as e:
                logger.warning(f"Cleanup warning while closing {name}: {e}")

    async def relaunch(self, handle: BrowserHandle) -> BrowserHandle:
        """Replace a dead handle's browser in place so scoped owners keep a valid reference"""
        await self.close(handle)
        fresh = await self.launch()
        handle.browser, handle.context, handle.page = fresh.browser, fresh.context, fresh.page
        handle.pages_served = 0
        handle.closed = False
        return handle

    @staticmethod
    async def is_alive(page: Optional[Page]) -> bool:
        if page is None:
            return False
        try:
            if page.is_closed():
                return False
            await page.evaluate("() => document.title")
            return True
        except PlaywrightError as e:
            logger.debug(f"Page liveness check failed: {e}")
            return False

    async def safe_goto(self, page: Page, url: str, wait_until: Optional[str] = None,
                        timeout_ms: Optional[int] = None, phase: str = 'navigation'):
        """
        Navigate with bounded retries and linear backoff.

        A dead page raises NavigationError straight away; retrying on a dead
        target cannot succeed.
        """
        attempts = self.timing.max_navigation_retries
        last_error: Optional[PlaywrightError] = None

        for attempt in range(1, attempts + 1):
            if not await self.is_alive(page):
                raise NavigationError(f"Page is dead, cannot navigate to {url}", url=url, phase=phase)
            try:
                return await page.goto(
                    url,
                    wait_until=wait_until or self.crawler.wait_until,
                    timeout=timeout_ms or self.timing.navigation_timeout_ms,
                )
            except PlaywrightError as e:
                last_error = e
                logger.warning(f"⚠️ Navigation to {url} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.timing.retry_backoff_ms * attempt / 1000)

        raise NavigationError(
            f"Navigation to {url} failed after {attempts} attempts: {last_error}", url=url, phase=phase
        ) from last_error

    @asynccontextmanager
    async def listing_session(self) -> AsyncIterator[BrowserHandle]:
        """Browser kept open across listing pages; always closed on exit"""
        handle = await self.launch()
        try:
            yield handle
        finally:
            await self.close(handle)

    @asynccontextmanager
    async def entity_page(self) -> AsyncIterator[Page]:
        """Scoped page for one entity detail page under the configured lifecycle policy"""
        if self.crawler.browser_policy == BrowserPolicy.FRESH:
            handle = await self.launch()
            try:
                yield handle.page
            finally:
                await self.close(handle)
            return

        handle = await self._acquire_pooled()
        try:
            yield handle.page
        finally:
            handle.pages_served += 1
            limit = self.crawler.browser_restart_count
            if handle.pages_served >= limit or not await self.is_alive(handle.page):
                logger.info(f"♻️ Retiring pooled browser after {handle.pages_served} pages")
                await self.close(handle)
                if self._pooled is handle:
                    self._pooled = None

    async def _acquire_pooled(self) -> BrowserHandle:
        if self._pooled is not None and not self._pooled.closed and await self.is_alive(self._pooled.page):
            return self._pooled
        if self._pooled is not None:
            await self.close(self._pooled)
        self._pooled = await self.launch()
        return self._pooled

    async def close_all(self) -> None:
        if self._pooled is not None:
            await self.close(self._pooled)
            self._pooled = None
