from __future__ import annotations

import json
import os
import re
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from listing_scraper.data_models.models import ExtractionResult


def default_output_filename(site_name: str, output_filename: Optional[str] = None) -> str:
    """Configured name (``.json`` appended if missing) or ``<site>-scraped-data-<date>.json``"""
    if output_filename:
        return output_filename if output_filename.endswith('.json') else f"{output_filename}.json"
    slug = re.sub(r'[^a-z0-9]+', '-', site_name.lower()).strip('-') or 'site'
    return f"{slug}-scraped-data-{date.today().isoformat()}.json"


class JsonFileStorage:
    """Incremental JSON file writer, one document per crawl run"""

    def __init__(self, path: Union[str, Path], site_name: str, source_url: str, max_backups: int = 5):
        self.path = Path(path)
        self.site_name = site_name
        self.source_url = source_url
        self.max_backups = max_backups
        self.records: List[Dict[str, Any]] = []
        self.started_at = datetime.now().isoformat()

    def create_backup_if_exists(self) -> Optional[Path]:
        """Copy an existing output aside before it gets overwritten, keeping the newest backups"""
        if not self.path.exists():
            return None

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        backup = self.path.with_name(f"{self.path.stem}_backup_{timestamp}{self.path.suffix}")
        shutil.copy2(self.path, backup)
        logger.info(f"📦 Backed up existing output to {backup}")

        backups = sorted(self.path.parent.glob(f"{self.path.stem}_backup_*{self.path.suffix}"))
        for stale in backups[:-self.max_backups] if self.max_backups > 0 else backups:
            stale.unlink()
            logger.debug(f"Removed old backup {stale}")
        return backup

    def document(self) -> Dict[str, Any]:
        return {
            'siteName': self.site_name,
            'extractedDate': date.today().isoformat(),
            'totalRecords': len(self.records),
            'records': self.records,
            'metadata': {
                'crawledAt': self.started_at,
                'sourceUrl': self.source_url,
            },
        }

    def persist(self, result: ExtractionResult) -> None:
        """Append one record and rewrite the file so a crash never loses saved records"""
        self.records.append(result.to_record())
        self._write()
        logger.debug(f"Saved record {len(self.records)} to {self.path}")

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self.document(), f, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write {self.path}: {e}")
            raise

    def load(self) -> Dict[str, Any]:
        with open(self.path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def get_storage_stats(self) -> Dict[str, Any]:
        validity: Dict[str, int] = {}
        for record in self.records:
            key = record.get('validity', 'unknown')
            validity[key] = validity.get(key, 0) + 1
        return {
            'path': str(self.path),
            'total_records': len(self.records),
            'validity_distribution': validity,
            'with_contacts': sum(1 for r in self.records if r.get('contact')),
        }
