"""
Human behaviour simulation and heuristic bot-protection handling.

Everything here is best effort: failures are logged at debug level and never
interrupt an extraction.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from loguru import logger

from listing_scraper.data_models.models import BotDetectionReport

Point = Tuple[float, float]
Sleep = Callable[[float], Awaitable[Any]]

BLOCK_MARKERS = [
    'rate limit', 'too many requests', 'access denied', 'blocked', 'forbidden',
    'unusual traffic', 'are you a robot',
]
CHALLENGE_MARKERS = [
    'checking your browser', 'verify you are human', 'just a moment', 'attention required',
]
CHALLENGE_WIDGET_SELECTOR = (
    '[data-sitekey], iframe[src*="recaptcha"], iframe[src*="hcaptcha"], '
    '#challenge-form, #cf-challenge-running, .g-recaptcha, .h-captcha'
)
CONTINUE_CONTROL_SELECTORS = [
    'button:has-text("Load")',
    'button:has-text("Show")',
    'button:has-text("More")',
    'button:has-text("Continue")',
    'a:has-text("Continue")',
]


def generate_mouse_path(start: Point, end: Point, steps: int = 10, jitter: float = 5.0,
                        rng: Optional[random.Random] = None) -> List[Point]:
    """Waypoints from start to end with eased progress and jittered interior points."""
    rng = rng or random.Random()
    steps = max(1, steps)
    path = []
    for i in range(steps + 1):
        t = i / steps
        # ease-in-out, people accelerate then slow down near the target
        eased = t * t * (3 - 2 * t)
        x = start[0] + (end[0] - start[0]) * eased
        y = start[1] + (end[1] - start[1]) * eased
        if 0 < i < steps:
            x += rng.uniform(-jitter, jitter)
            y += rng.uniform(-jitter, jitter)
        path.append((x, y))
    return path


def plan_scroll(rng: Optional[random.Random] = None) -> Dict[str, int]:
    rng = rng or random.Random()
    return {
        'distance': rng.randint(100, 400),
        'duration_ms': rng.randint(200, 700),
        'steps': rng.randint(3, 8),
    }


def human_delay(base_ms: float, variation: float = 0.5, rng: Optional[random.Random] = None) -> float:
    """base * (1 ± variation/2), with an occasional long pause of 2-7 seconds."""
    rng = rng or random.Random()
    delay = base_ms * (1 + (rng.random() - 0.5) * variation)
    if rng.random() < 0.1:
        delay += rng.uniform(2000, 7000)
    return max(0.0, delay)


async def simulate_human_interaction(page, rng: Optional[random.Random] = None,
                                     sleep: Sleep = asyncio.sleep) -> bool:
    """Move the mouse, scroll a little and pause. Returns False if anything failed."""
    rng = rng or random.Random()
    try:
        viewport = page.viewport_size or {'width': 1920, 'height': 1080}
        width, height = viewport['width'], viewport['height']

        position = (rng.uniform(0, width), rng.uniform(0, height))
        for _ in range(rng.randint(1, 3)):
            target = (rng.uniform(0, width), rng.uniform(0, height))
            for x, y in generate_mouse_path(position, target, steps=rng.randint(5, 15), rng=rng):
                await page.mouse.move(x, y)
            position = target

        scroll = plan_scroll(rng)
        step_distance = scroll['distance'] / scroll['steps']
        for _ in range(scroll['steps']):
            await page.mouse.wheel(0, step_distance)
            await sleep(scroll['duration_ms'] / scroll['steps'] / 1000)

        await sleep(rng.uniform(300, 900) / 1000)
        return True
    except Exception as e:
        logger.debug(f"Human interaction simulation skipped: {e}")
        return False


def _host(url: Optional[str]) -> str:
    if not url:
        return ''
    host = urlsplit(url).netloc.lower()
    return host[4:] if host.startswith('www.') else host


def evaluate_bot_indicators(title: str, body_text: str, requested_url: Optional[str] = None,
                            final_url: Optional[str] = None, has_challenge_widget: bool = False,
                            min_content_length: int = 500) -> BotDetectionReport:
    """Heuristic check of a loaded page for block or challenge signals."""
    haystack = f"{title}\n{body_text}".lower()
    content_length = len(body_text.strip())

    redirected = bool(requested_url and final_url) and _host(requested_url) != _host(final_url)

    indicators = {
        'block_text': any(marker in haystack for marker in BLOCK_MARKERS),
        'challenge_text': any(marker in haystack for marker in CHALLENGE_MARKERS),
        'challenge_widget': has_challenge_widget,
        'minimal_content': content_length < min_content_length,
        'unexpected_redirect': redirected,
    }
    return BotDetectionReport(indicators=indicators, content_length=content_length, final_url=final_url)


async def detect_bot_protection(page, requested_url: Optional[str] = None,
                                min_content_length: int = 500) -> BotDetectionReport:
    try:
        html = await page.content()
        title = await page.title()
    except Exception as e:
        logger.debug(f"Bot detection could not read page: {e}")
        return BotDetectionReport()

    soup = BeautifulSoup(html, 'lxml')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    body = soup.body or soup
    body_text = body.get_text(' ', strip=True)

    return evaluate_bot_indicators(
        title=title or '',
        body_text=body_text,
        requested_url=requested_url,
        final_url=page.url,
        has_challenge_widget=soup.select_one(CHALLENGE_WIDGET_SELECTOR) is not None,
        min_content_length=min_content_length,
    )


async def handle_bot_detection(page, wait_ms: int = 5000, sleep: Sleep = asyncio.sleep) -> bool:
    """One bounded countermeasure: wait, scroll, click a continue-style control, wait."""
    try:
        await sleep(wait_ms / 1000)
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight / 2)")

        for selector in CONTINUE_CONTROL_SELECTORS:
            control = await page.query_selector(selector)
            if control and await control.is_visible():
                logger.debug(f"Bot countermeasure clicking {selector}")
                await control.click()
                break

        await sleep(wait_ms / 2000)
        return True
    except Exception as e:
        logger.debug(f"Bot countermeasure failed: {e}")
        return False
