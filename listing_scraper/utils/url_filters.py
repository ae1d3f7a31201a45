"""
URL helpers: wildcard allow/exclude patterns and normalization for the visited set.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Pattern
from urllib.parse import urlsplit, urlunsplit


@lru_cache(maxsize=256)
def wildcard_to_regex(pattern: str) -> Pattern[str]:
    """``https://site/*/page`` -> a regex matching the whole URL, ``*`` as ``.*``."""
    parts = [re.escape(chunk) for chunk in pattern.split("*")]
    return re.compile("^" + ".*".join(parts) + "$")


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    return any(wildcard_to_regex(p).match(url) for p in patterns)


def is_url_excluded(url: str, excluded_patterns: Iterable[str]) -> bool:
    return matches_any(url, excluded_patterns)


def is_url_allowed(url: str, allowed_patterns: Iterable[str]) -> bool:
    allowed = list(allowed_patterns)
    # No allow-list means everything is allowed
    if not allowed:
        return True
    return matches_any(url, allowed)


def should_crawl_url(url: str, allowed_patterns: Iterable[str], excluded_patterns: Iterable[str]) -> bool:
    """Exclusions win over the allow-list."""
    if is_url_excluded(url, excluded_patterns):
        return False
    return is_url_allowed(url, allowed_patterns)


def normalize_url(url: str) -> str:
    """Key for the visited set: lower-case scheme/host, no fragment, no trailing slash."""
    parts = urlsplit(url.strip())
    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def is_absolute_http_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)
