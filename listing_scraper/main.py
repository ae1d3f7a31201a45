"""
Command line entry point for the listing scraper.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from listing_scraper.config import get_config_summary, load_site_config
from listing_scraper.crawler import CrawlOrchestrator
from listing_scraper.errors import ScraperError
from listing_scraper.storage.storage import JsonFileStorage, default_output_filename

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Listing Scraper - Extract entity records from paginated listing sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m listing_scraper.main --config sites/mtalvernia.json
  python -m listing_scraper.main --config sites/mtalvernia.json --max-entities 20 --headful
  python -m listing_scraper.main --config sites/mtalvernia.json --scrape-urls https://x.test/team https://x.test/team/2
        """
    )
    parser.add_argument('--config', '-c', help='Site config JSON (defaults to hosted runner input)')
    parser.add_argument('--start-url', help='Override the start URL')
    parser.add_argument('--max-entities', type=int, help='Stop after this many entities (-1 for no limit)')
    parser.add_argument('--max-pages', type=int, help='Stop after this many listing pages')
    parser.add_argument('--headful', action='store_true', help='Show the browser window')
    parser.add_argument('--browser-policy', choices=['fresh', 'pooled'], help='Browser lifecycle for detail pages')
    parser.add_argument('--no-anti-detection', action='store_true', help='Disable fingerprinting and stealth scripts')
    parser.add_argument('--output', '-o', help='Output JSON file')
    parser.add_argument('--scrape-urls', nargs='+', metavar='URL',
                        help='Scraper-only mode: extract entity cards from these pages, no pagination')
    parser.add_argument('--log-level', default='INFO', help='Log level (default: INFO)')
    parser.add_argument('--log-file', help='Also write logs to this file (rotated at 10 MB)')
    return parser


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        logger.add(log_file, level='DEBUG', rotation='10 MB', retention=5, serialize=True)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        'start_url': args.start_url,
        'crawler.max_entities': args.max_entities,
        'pagination.max_pages': args.max_pages,
        'crawler.browser_policy': args.browser_policy,
    }
    if args.headful:
        overrides['crawler.headless'] = False
    if args.no_anti_detection:
        overrides['crawler.enable_anti_detection'] = False
    return {key: value for key, value in overrides.items() if value is not None}


def _install_signal_handlers(orchestrator: CrawlOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_cancel)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: orchestrator.request_cancel())


async def run(args: argparse.Namespace) -> int:
    config = load_site_config(args.config, build_overrides(args))
    logger.info(f"⚙️ {json.dumps(get_config_summary(config))}")

    output = Path(args.output or default_output_filename(config.name, config.output_filename))
    storage = JsonFileStorage(output, site_name=config.name, source_url=config.start_url)
    storage.create_backup_if_exists()

    orchestrator = CrawlOrchestrator(config, storage.persist)
    _install_signal_handlers(orchestrator)

    try:
        if args.scrape_urls:
            summary = await orchestrator.scrape_urls(args.scrape_urls)
        else:
            summary = await orchestrator.run()
    except ScraperError as e:
        if e.summary is not None:
            print(json.dumps(e.summary.model_dump(mode='json'), indent=2))
        logger.error(f"❌ {e}")
        return EXIT_FAILED

    print(json.dumps(summary.model_dump(mode='json'), indent=2))
    logger.info(f"💾 {storage.get_storage_stats()}")
    return EXIT_CANCELLED if orchestrator.cancelled else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.warning("👋 Scraping interrupted by user")
        return EXIT_CANCELLED
    except FileNotFoundError as e:
        logger.error(f"❌ {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
