"""
Selector fallback chains over an HTML snapshot.

Each selector in a chain produces a ``FieldOutcome`` (Found / NotFound /
FieldError); ``resolve_chain`` takes the first Found. Boilerplate text and
broken selectors never stop a chain, they just yield NotFound / FieldError.
"""

from __future__ import annotations

import re
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from loguru import logger
from soupsieve import SelectorSyntaxError

from listing_scraper.data_models.models import FieldError, FieldOutcome, Found, NotFound

DEFAULT_NAME_SELECTORS = [
    '.doctor-banner .doctor-profile h1',
    '.doctor-profile h1',
    '.doctor-banner h1',
    '.doctor-name h1',
    '.profile-header h1',
    '.doctor-title',
    'h1:not(.page-title):not(.site-title)',
    'h1',
]

DEFAULT_SPECIALTY_SELECTORS = ['.doctor-specialty', '.specialty', '.speciality']

DEFAULT_CONTACT_SELECTORS = [
    '.clinic-item a',
    '.contact-info a',
    '.doctor-contact a',
    '.clinic-contacts a',
    'a[href^="tel:"]',
    'a[href^="mailto:"]',
]

BOILERPLATE_DENYLIST = {
    'view profile', 'click here', 'click to view', 'read more', 'learn more',
    'more info', 'more details', 'book appointment', 'book an appointment',
    'profile', 'home', 'back', 'next', 'previous',
}
NAME_STOPWORDS = {'view', 'profile', 'click', 'page', 'home'}

NAME_LABEL_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.DOTALL) for p in (
        r'\s*Specialt(?:y|ies)\b.*$',
        r'\s*Speciality\b.*$',
        r'\s*Languages?\s*(?:\(s\))?\s*spoken\b.*$',
        r'\s*View Profile\b.*$',
        r'\s*Click to View\b.*$',
        r'\s+Profile$',
    )
]

TITLE_NAME_PATTERN = re.compile(r"\b((?:A/Prof|Assoc Prof|Adj Prof|Prof|Dr)\.?\s+[A-Z][\w'’.-]*(?:\s+[A-Z][\w'’.-]*)*)")
HONORIFIC_PATTERN = re.compile(r"^(?:A/Prof|Assoc Prof|Adj Prof|Prof|Dr)\.?\s+[A-Z]", re.IGNORECASE)
PROPER_NAME_PATTERN = re.compile(r"^[A-Z][\w'’.-]+(?:\s+[A-Z][\w'’.()&-]*)+$")

PHONE_PATTERN = re.compile(r'(?<!\d)(?:\+65[\s-]?)?[689]\d{3}[\s-]?\d{4}(?!\d)')
EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
EMAIL_FALSE_POSITIVES = ('.png', '.jpg', '.jpeg', '.gif', '.svg', '.webp', '.css', '.js', 'example.com', '@2x', '@3x')

CONTACT_LINK_PREFIXES = ('tel:', 'mailto:', 'http')

Validator = Callable[[str], bool]
Cleaner = Callable[[str], str]


def collapse_whitespace(text: str) -> str:
    return ' '.join((text or '').split())


def is_boilerplate(text: str) -> bool:
    lowered = collapse_whitespace(text).lower().strip(' .:>»›')
    if not lowered:
        return True
    return (
        lowered in BOILERPLATE_DENYLIST
        or lowered.startswith('view profile')
        or lowered.startswith('click here')
    )


def clean_name(text: str) -> str:
    text = collapse_whitespace(text)
    for pattern in NAME_LABEL_PATTERNS:
        text = pattern.sub('', text)
    return text.strip(' ,-|')


def is_valid_name(text: str) -> bool:
    if not text or len(text) < 3 or len(text) > 150:
        return False
    if is_boilerplate(text):
        return False
    if HONORIFIC_PATTERN.match(text) or PROPER_NAME_PATTERN.match(text):
        return True
    words = {w.strip('.,:;').lower() for w in text.split()}
    return len(text) > 5 and not (words & NAME_STOPWORDS) and any(c.isalpha() for c in text)


def is_meaningful_text(text: str) -> bool:
    return bool(text) and not is_boilerplate(text)


def select(soup: BeautifulSoup, selector: str) -> List[Tag]:
    """``soup.select`` that raises ValueError for selectors bs4 cannot run."""
    try:
        return soup.select(selector)
    except (SelectorSyntaxError, NotImplementedError) as e:
        raise ValueError(f"unsupported selector {selector!r}: {e}") from e


def text_outcome(soup: BeautifulSoup, selector: str, validator: Validator,
                 cleaner: Cleaner = collapse_whitespace) -> FieldOutcome:
    """First element under ``selector`` whose cleaned text passes ``validator``."""
    try:
        elements = select(soup, selector)
    except ValueError as e:
        return FieldError(selector=selector, reason=str(e))
    for element in elements:
        text = cleaner(element.get_text(' ', strip=True))
        if validator(text):
            return Found(value=text, selector=selector)
    return NotFound(selector=selector)


def text_chain(soup: BeautifulSoup, selectors: Iterable[str], validator: Validator,
               cleaner: Cleaner = collapse_whitespace) -> Iterator[FieldOutcome]:
    for selector in selectors:
        outcome = text_outcome(soup, selector, validator, cleaner)
        if isinstance(outcome, FieldError):
            logger.debug(f"Selector skipped: {outcome.reason}")
        yield outcome


def resolve_chain(outcomes: Iterable[FieldOutcome]) -> Optional[Found]:
    """First Found in the chain; consumes the iterable lazily."""
    for outcome in outcomes:
        if isinstance(outcome, Found):
            return outcome
    return None


def _chain(configured: Sequence[str], defaults: Sequence[str]) -> List[str]:
    return list(dict.fromkeys([*configured, *defaults]))


def name_from_title(title: str) -> Optional[str]:
    if not title:
        return None
    match = TITLE_NAME_PATTERN.search(title)
    if match:
        return clean_name(match.group(1))
    # "Dr Tan Ah Kow | Some Clinic" style titles: try the leading segment
    head = clean_name(re.split(r'\s[|–-]\s', title, maxsplit=1)[0])
    return head if is_valid_name(head) and HONORIFIC_PATTERN.match(head) else None


def extract_name(soup: BeautifulSoup, title: str = '', selectors: Sequence[str] = ()) -> Optional[str]:
    found = resolve_chain(text_chain(soup, _chain(selectors, DEFAULT_NAME_SELECTORS), is_valid_name, clean_name))
    if found:
        return found.value
    return name_from_title(title)


def extract_specialty(soup: BeautifulSoup, selectors: Sequence[str] = ()) -> Optional[str]:
    found = resolve_chain(text_chain(soup, _chain(selectors, DEFAULT_SPECIALTY_SELECTORS), is_meaningful_text))
    return found.value if found else None


def contact_links(elements: Iterable[Tag], page_url: str = '') -> List[Dict[str, str]]:
    contacts: List[Dict[str, str]] = []
    seen = set()
    for element in elements:
        text = collapse_whitespace(element.get_text(' ', strip=True))
        href = (element.get('href') or '').strip()
        if href and not href.startswith(('tel:', 'mailto:')):
            href = urljoin(page_url, href)
        if not text or not href.startswith(CONTACT_LINK_PREFIXES) or href in seen:
            continue
        seen.add(href)
        contacts.append({'text': text, 'link': href})
    return contacts


def contact_outcome(soup: BeautifulSoup, selector: str, page_url: str = '') -> FieldOutcome:
    try:
        elements = select(soup, selector)
    except ValueError as e:
        return FieldError(selector=selector, reason=str(e))
    contacts = contact_links(elements, page_url)
    return Found(value=contacts, selector=selector) if contacts else NotFound(selector=selector)


def is_valid_email(email: str) -> bool:
    lowered = email.lower()
    return 5 <= len(email) <= 100 and not any(marker in lowered for marker in EMAIL_FALSE_POSITIVES)


def scan_text_for_contacts(text: str) -> List[Dict[str, str]]:
    """Last resort: phone numbers and emails found in plain text"""
    contacts: List[Dict[str, str]] = []
    seen = set()
    for match in PHONE_PATTERN.finditer(text):
        phone = collapse_whitespace(match.group(0))
        digits = re.sub(r'[^\d+]', '', phone)
        if digits not in seen:
            seen.add(digits)
            contacts.append({'text': phone, 'link': f"tel:{digits}"})
    for match in EMAIL_PATTERN.finditer(text):
        email = match.group(0)
        if is_valid_email(email) and email.lower() not in seen:
            seen.add(email.lower())
            contacts.append({'text': email, 'link': f"mailto:{email}"})
    return contacts


def extract_contacts(soup: BeautifulSoup, selectors: Sequence[str] = (), page_url: str = '') -> List[Dict[str, str]]:
    outcomes = (contact_outcome(soup, s, page_url) for s in _chain(selectors, DEFAULT_CONTACT_SELECTORS))
    found = resolve_chain(outcomes)
    if found:
        return found.value
    body = soup.body or soup
    return scan_text_for_contacts(body.get_text(' ', strip=True))


def pairs_from_rows(rows: Iterable[Sequence[str]]) -> List[Dict[str, str]]:
    """First two cells of each row as key/value; short rows and empty cells are dropped."""
    pairs = []
    for cells in rows:
        if len(cells) < 2:
            continue
        key, value = collapse_whitespace(cells[0]), collapse_whitespace(cells[1])
        if key and value:
            pairs.append({'key': key, 'value': value})
    return pairs


def extract_table_rows(soup: BeautifulSoup, row_selector: Optional[str]) -> List[Dict[str, str]]:
    if not row_selector:
        return []
    try:
        rows = select(soup, row_selector)
    except ValueError as e:
        logger.debug(f"Table rows skipped: {e}")
        return []
    return pairs_from_rows([td.get_text(' ', strip=True) for td in row.find_all('td')] for row in rows)
