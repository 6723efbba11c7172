"""Final dataset generation from the accumulated page records."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pages_worker.models import PageRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2  # current data format version


def export_records(records: Iterable[PageRecord], finished_at: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Keep complete records (at least one category) and stamp the batch."""
    finished = (finished_at or datetime.now(timezone.utc)).isoformat()
    items: List[Dict[str, Any]] = []
    for record in records:
        if not record.categories:
            continue
        entry = record.to_dict()
        entry["#version"] = SCHEMA_VERSION
        entry["#finished_at"] = finished
        items.append(entry)
    return items


def write_jsonl(items: Iterable[Dict[str, Any]], path: str) -> str:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with output.open("w", encoding="utf-8") as fh:
        for item in items:
            fh.write(json.dumps(item, ensure_ascii=False) + "\n")
            count += 1
    logger.info("Wrote %d records to %s", count, output)
    return str(output)
