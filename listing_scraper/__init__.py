"""
Listing Scraper - paginated listing site crawler on a stealth headless browser
"""

from .config import SiteConfig, load_site_config
from .crawler import CrawlOrchestrator
from .data_models.models import CrawlSummary, ExtractionResult

__all__ = ['CrawlOrchestrator', 'CrawlSummary', 'ExtractionResult', 'SiteConfig', 'load_site_config']
