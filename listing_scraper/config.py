"""
Site configuration for the listing scraper.

A ``SiteConfig`` is built once at startup (JSON file + environment overrides)
and handed to every component; nothing reads configuration globally.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class PaginationType(str, Enum):
    QUERY = "query"
    PATH = "path"
    AJAX = "ajax"


class BrowserPolicy(str, Enum):
    FRESH = "fresh"
    POOLED = "pooled"


class _ConfigModel(BaseModel):
    # camelCase keys from JSON configs and snake_case from Python both work
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


def _as_chain(value: Union[None, str, List[str]]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [v for v in value if v and v.strip()]


class PaginationConfig(_ConfigModel):
    type: PaginationType = PaginationType.QUERY
    query_pattern: str = "page={page}"
    path_pattern: str = "/page/{page}/"
    base_url: Optional[str] = None
    start_page: int = Field(default=1, ge=0)
    max_pages: Optional[int] = Field(default=None, ge=1)
    next_button_text: Optional[str] = None
    last_page_markers: List[str] = Field(default_factory=list)


class CardSelectorConfig(_ConfigModel):
    """Selectors for listing pages that show many entities as cards"""
    card: Optional[str] = None
    name: str = "h3"
    position: Optional[str] = None
    phone_links: str = 'a[href^="tel:"]'
    website: Optional[str] = None


class SelectorConfig(_ConfigModel):
    listing_links: str
    next_button: Optional[str] = None
    next_button_container: Optional[str] = None
    processing_indicator: Optional[str] = None
    detail_ready: Optional[str] = None
    entity_name: List[str] = Field(default_factory=list)
    specialty: List[str] = Field(default_factory=list)
    contact_links: List[str] = Field(default_factory=list)
    table_rows: Optional[str] = ".panel-body tbody tr"
    cards: Optional[CardSelectorConfig] = None

    @field_validator("entity_name", "specialty", "contact_links", mode="before")
    @classmethod
    def _coerce_chain(cls, value):
        return _as_chain(value)


class TimingConfig(_ConfigModel):
    """All durations in milliseconds"""
    navigation_timeout_ms: int = 30000
    selector_timeout_ms: int = 10000
    ajax_settle_timeout_ms: int = 10000
    ajax_fallback_delay_ms: int = 2000
    post_navigation_wait_ms: int = 1000
    entity_interval_ms: int = 5000
    page_interval_ms: int = 10000
    remediation_wait_ms: int = 3000
    bot_wait_ms: int = 5000
    max_navigation_retries: int = Field(default=3, ge=1)
    retry_backoff_ms: int = 2000


class CrawlerConfig(_ConfigModel):
    headless: bool = True
    browser_policy: BrowserPolicy = BrowserPolicy.FRESH
    browser_restart_count: int = Field(default=3, ge=1)
    consecutive_failure_limit: int = Field(default=5, ge=1)
    max_entities: Optional[int] = None
    enable_anti_detection: bool = True
    block_trackers: bool = True
    simulate_human: bool = True
    detect_bot_protection: bool = True
    wait_until: str = "networkidle"

    @field_validator("max_entities", mode="before")
    @classmethod
    def _unlimited(cls, value):
        # -1 (and 0) mean "no limit", as in maxRequestsPerCrawl
        if value is None:
            return None
        value = int(value)
        return value if value > 0 else None


class ValidationConfig(_ConfigModel):
    min_content_length: int = 100
    bot_min_content_length: int = 500
    domain_keywords: List[str] = Field(default_factory=lambda: [
        "dr.", "doctor", "specialist", "specialty", "physician", "clinic", "prof.",
    ])


# Flat keys of older site configs -> nested location
LEGACY_KEYS = {
    'siteName': ('name',),
    'paginationType': ('pagination', 'type'),
    'queryPattern': ('pagination', 'query_pattern'),
    'pathPattern': ('pagination', 'path_pattern'),
    'paginationBaseUrl': ('pagination', 'base_url'),
    'startPage': ('pagination', 'start_page'),
    'maxPages': ('pagination', 'max_pages'),
    'specialistLinksSelector': ('selectors', 'listing_links'),
    'nextButtonSelector': ('selectors', 'next_button'),
    'nextButtonContainerSelector': ('selectors', 'next_button_container'),
    'doctorNameSelector': ('selectors', 'entity_name'),
    'specialtySelector': ('selectors', 'specialty'),
    'contactLinksSelector': ('selectors', 'contact_links'),
    'maxRequestsPerCrawl': ('crawler', 'max_entities'),
    'headless': ('crawler', 'headless'),
}
LEGACY_CARD_KEYS = {
    'doctorCards': 'card',
    'doctorName': 'name',
    'position': 'position',
    'phoneLinks': 'phone_links',
    'Website': 'website',
}


class SiteConfig(_ConfigModel):
    name: str
    start_url: str
    allowed_url_patterns: List[str] = Field(default_factory=list)
    excluded_url_patterns: List[str] = Field(default_factory=list)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    selectors: SelectorConfig
    timing: TimingConfig = Field(default_factory=TimingConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    cookies: List[Dict[str, Any]] = Field(default_factory=list)
    output_filename: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _nest_legacy_keys(cls, data):
        if not isinstance(data, dict) or not any(key in data for key in (*LEGACY_KEYS, 'customSelectors')):
            return data
        data = dict(data)
        for legacy, location in LEGACY_KEYS.items():
            value = data.pop(legacy, None)
            if value is None or value == '':
                continue
            if len(location) == 1:
                data.setdefault(location[0], value)
                continue
            section, field = location
            nested = dict(data.get(section) or {})
            nested.setdefault(field, value)
            data[section] = nested

        custom = data.pop('customSelectors', None)
        if custom:
            selectors = dict(data.get('selectors') or {})
            selectors.setdefault('cards', {
                LEGACY_CARD_KEYS[key]: value for key, value in custom.items() if key in LEGACY_CARD_KEYS
            })
            data['selectors'] = selectors
        return data

    @property
    def base_url(self) -> str:
        return self.pagination.base_url or self.start_url

    def with_overrides(self, overrides: Dict[str, Any]) -> "SiteConfig":
        """Return a new config with dotted-key overrides applied, e.g. ``{"crawler.headless": False}``."""
        data = self.model_dump()
        for dotted_key, value in overrides.items():
            if value is None:
                continue
            target = data
            *parents, leaf = dotted_key.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = value
        return SiteConfig.model_validate(data)


def environment_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect overrides from TARGET_PAGE_URL, MAX_REQUESTS, HEADFUL and BROWSER_POLICY."""
    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    target_url = env.get("TARGET_PAGE_URL")
    if target_url:
        overrides["start_url"] = target_url

    max_requests = env.get("MAX_REQUESTS")
    if max_requests:
        try:
            overrides["crawler.max_entities"] = int(max_requests)
        except ValueError:
            logger.warning(f"Ignoring non-numeric MAX_REQUESTS={max_requests!r}")

    if env.get("HEADFUL", "0") == "1":
        overrides["crawler.headless"] = False

    policy = env.get("BROWSER_POLICY")
    if policy:
        overrides["crawler.browser_policy"] = policy.lower()

    return overrides


def is_hosted_environment(environ: Optional[Dict[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return any(key.startswith("APIFY_") for key in env)


def resolve_input_path(config_path: Optional[Union[str, Path]] = None,
                       environ: Optional[Dict[str, str]] = None) -> Path:
    """Pick the config file: explicit path first, then the hosted runner's input record."""
    env = os.environ if environ is None else environ
    if config_path:
        return Path(config_path)
    if is_hosted_environment(env):
        if env.get("APIFY_INPUT_PATH"):
            return Path(env["APIFY_INPUT_PATH"])
        storage_dir = Path(env.get("APIFY_LOCAL_STORAGE_DIR", "./storage"))
        return storage_dir / "key_value_stores" / "default" / "INPUT.json"
    raise FileNotFoundError("No site config given and no hosted input available")


def load_site_config(config_path: Optional[Union[str, Path]] = None,
                     overrides: Optional[Dict[str, Any]] = None) -> SiteConfig:
    """Load a SiteConfig from JSON, then apply environment and explicit overrides."""
    load_dotenv()

    path = resolve_input_path(config_path)
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    config = SiteConfig.model_validate(raw)

    merged = environment_overrides()
    merged.update(overrides or {})
    if merged:
        logger.info(f"Applying config overrides: {sorted(merged)}")
        config = config.with_overrides(merged)

    for problem in validate_config(config):
        logger.warning(f"Config: {problem}")

    return config


def validate_config(config: SiteConfig) -> List[str]:
    """
    Sanity-check a config beyond what the schema enforces.
    Returns a list of human readable problems (empty when fine).
    """
    problems = []

    if not config.start_url.startswith(("http://", "https://")):
        problems.append(f"start_url is not an http(s) URL: {config.start_url}")

    pagination = config.pagination
    if pagination.type == PaginationType.AJAX and not config.selectors.next_button:
        problems.append("ajax pagination needs selectors.next_button")
    if pagination.type == PaginationType.QUERY and "{page}" not in pagination.query_pattern:
        problems.append(f"query_pattern has no {{page}} placeholder: {pagination.query_pattern}")
    if pagination.type == PaginationType.PATH and "{page}" not in pagination.path_pattern:
        problems.append(f"path_pattern has no {{page}} placeholder: {pagination.path_pattern}")

    if config.crawler.browser_policy == BrowserPolicy.POOLED and config.crawler.browser_restart_count < 1:
        problems.append("browser_restart_count must be positive for the pooled policy")

    return problems


def get_config_summary(config: SiteConfig) -> Dict[str, Any]:
    """Return a summary of the current configuration (no cookie values)"""
    return {
        "site": config.name,
        "start_url": config.start_url,
        "pagination_type": config.pagination.type.value,
        "max_pages": config.pagination.max_pages,
        "max_entities": config.crawler.max_entities,
        "browser_policy": config.crawler.browser_policy.value,
        "browser_restart_count": config.crawler.browser_restart_count,
        "headless": config.crawler.headless,
        "anti_detection": config.crawler.enable_anti_detection,
        "cookies_loaded": len(config.cookies),
    }
