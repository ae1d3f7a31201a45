"""
Card extraction for pages that list many entities at once (scraper-only mode).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from listing_scraper.config import CardSelectorConfig
from listing_scraper.extractors.field_extraction import (
    clean_name,
    collapse_whitespace,
    contact_links,
    is_valid_name,
    select,
)

# How far up from a name element to look for its phone links
ANCESTOR_SEARCH_DEPTH = 3


def _first_text(scope: Tag, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    element = scope.select_one(selector)
    if element is None:
        return None
    return collapse_whitespace(element.get_text(' ', strip=True)) or None


def _website(scope: Tag, selector: Optional[str], page_url: str) -> Optional[str]:
    if not selector:
        return None
    element = scope.select_one(selector)
    if element is None:
        return None
    links = contact_links([element], page_url)
    return links[0]['link'] if links else None


def _nearby_phone_links(element: Tag, selector: str, page_url: str) -> List[Dict[str, str]]:
    scope = element
    for _ in range(ANCESTOR_SEARCH_DEPTH + 1):
        links = contact_links(scope.select(selector), page_url)
        if links:
            return links
        if scope.parent is None or not isinstance(scope.parent, Tag):
            break
        scope = scope.parent
    return []


def extract_cards(soup: BeautifulSoup, cards: CardSelectorConfig, page_url: str = '') -> List[Dict[str, Any]]:
    """
    One dict per entity card: name, position, contact links and website.

    With a card selector each card is its own scope. Without one, names and
    positions are paired by index and phone links are searched near each name.
    """
    global_website = _website(soup, cards.website, page_url)
    records: List[Dict[str, Any]] = []

    if cards.card:
        for block in select(soup, cards.card):
            name = clean_name(_first_text(block, cards.name) or '')
            if not is_valid_name(name):
                continue
            records.append({
                'name': name,
                'position': _first_text(block, cards.position),
                'contact': contact_links(block.select(cards.phone_links), page_url),
                'website': _website(block, cards.website, page_url) or global_website,
            })
        return records

    names = select(soup, cards.name)
    positions = select(soup, cards.position) if cards.position else []
    for index, name_element in enumerate(names):
        name = clean_name(name_element.get_text(' ', strip=True))
        if not is_valid_name(name):
            continue
        position = None
        if index < len(positions):
            position = collapse_whitespace(positions[index].get_text(' ', strip=True)) or None
        records.append({
            'name': name,
            'position': position,
            'contact': _nearby_phone_links(name_element, cards.phone_links, page_url),
            'website': global_website,
        })
    return records
