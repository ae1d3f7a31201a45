"""
Page validity heuristics for entity detail pages.

Works on an HTML snapshot so the rules can be checked without a browser.
"""

from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup

from listing_scraper.config import ValidationConfig
from listing_scraper.data_models.models import PageValidation

# Found anywhere in the raw HTML (script bodies included)
TRACKING_MARKUP_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'google-analytics\.com',
        r'googletagmanager\.com',
        r'\bgtag\s*\(',
        r'\bdataLayer\b',
        r'\bfbq\s*\(',
        r'connect\.facebook\.net',
        r'doubleclick\.net',
        r'hotjar',
        r'\b_gaq\b',
    )
]

# Visible strings tracking snippets leave behind; not meaningful content
TRACKING_TEXT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'google tag manager',
        r'google analytics',
        r'facebook pixel',
        r'\bgtm-[a-z0-9]+\b',
        r'\bua-\d+-\d+\b',
        r'\bg-[a-z0-9]{6,}\b',
        r'(?:please )?enable javascript[^.]*\.?',
        r'javascript is (?:disabled|required)[^.]*\.?',
        r'\banalytics\b',
        r'\bpixel\b',
    )
]

ERROR_TITLE_MARKERS = ('error', '404')
ERROR_BODY_MARKERS = ('page not found', '404 not found')

NON_CONTENT_TAGS = ['script', 'style', 'noscript', 'template']

REMEDIATION_JS = """
() => {
    document.querySelectorAll('noscript').forEach((node) => node.remove());
    document.querySelectorAll('iframe').forEach((frame) => {
        const src = (frame.getAttribute('src') || '').toLowerCase();
        if (!src || /googletagmanager|doubleclick|facebook|analytics|hotjar/.test(src)) {
            frame.remove();
        }
    });
    window.scrollTo(0, document.body ? document.body.scrollHeight : 0);
}
"""


def strip_tracking_text(text: str) -> str:
    for pattern in TRACKING_TEXT_PATTERNS:
        text = pattern.sub(' ', text)
    return ' '.join(text.split())


def validate_html(html: str, title: Optional[str] = None,
                  config: Optional[ValidationConfig] = None) -> PageValidation:
    config = config or ValidationConfig()
    soup = BeautifulSoup(html or '', 'lxml')

    if title is None:
        title = soup.title.get_text(strip=True) if soup.title else ''

    has_tracking = any(p.search(html or '') for p in TRACKING_MARKUP_PATTERNS)

    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()
    body = soup.body or soup
    iframe_count = len(body.find_all('iframe'))
    raw_text = ' '.join(body.get_text(' ', strip=True).split())
    meaningful = strip_tracking_text(raw_text)

    if meaningful != raw_text:
        has_tracking = True

    lowered_title = title.lower()
    lowered_text = raw_text.lower()
    has_error = (
        any(marker in lowered_title for marker in ERROR_TITLE_MARKERS)
        or any(marker in lowered_text for marker in ERROR_BODY_MARKERS)
    )

    return PageValidation(
        title=title,
        has_error=has_error,
        content_length=len(raw_text),
        meaningful_length=len(meaningful),
        has_domain_keywords=any(k.lower() in lowered_text for k in config.domain_keywords),
        has_tracking_boilerplate=has_tracking,
        is_iframe_shell=iframe_count > 0 and len(meaningful) < config.min_content_length,
        min_content_length=config.min_content_length,
    )
