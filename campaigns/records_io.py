#!/usr/bin/env python3
"""
Input loading and report writing for batch registration runs.

Input:  CSV with a header row, or a JSON array of objects
Output: <output_dir>/report_<stamp>.csv plus audit_<stamp>.jsonl
"""

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.deduplicator import REQUIRED_FIELDS, RecordDeduplicator, has_field
from core.errors import SchemaError, ValidationError
from core.models import SubmissionState

logger = logging.getLogger(__name__)

REPORT_FIELDS = [
    "identifier",
    "final_status",
    "attempts_made",
    "last_detail",
    "confirmation_id",
    "completed_at",
]


def load_records(path: str) -> List[Dict[str, Any]]:
    """
    Read raw input rows.

    Raises:
        FileNotFoundError: input file missing
        ValueError: unsupported or malformed file
        SchemaError: the first row lacks a required column or value
    """
    filepath = Path(path)
    if not filepath.exists():
        raise FileNotFoundError(f"Input file not found: {filepath}")

    suffix = filepath.suffix.lower()
    if suffix == ".json":
        with open(filepath, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list) or not all(isinstance(row, dict) for row in data):
            raise ValueError(f"{filepath}: expected a JSON array of objects")
        rows = data
    elif suffix == ".csv":
        with open(filepath, newline="", encoding="utf-8-sig") as f:
            rows = [dict(row) for row in csv.DictReader(f)]
    else:
        raise ValueError(f"Unsupported input format: {suffix or filepath.name} (use .csv or .json)")

    if not rows:
        logger.warning(f"[Input] {filepath} contains no records")
        return rows

    missing = [name for name in REQUIRED_FIELDS if not has_field(rows[0], name)]
    if missing:
        raise SchemaError(f"first record lacks required field(s): {', '.join(missing)}", field_name=missing[0])

    # Columns exist for every CSV row, so the first row's values decide too
    try:
        RecordDeduplicator().normalize(rows[0])
    except ValidationError as e:
        raise SchemaError(f"first record is incomplete: {e.message}", field_name=e.field_name)

    logger.info(f"[Input] Loaded {len(rows)} rows from {filepath}")
    return rows


class ReportWriter:
    """
    Appends report rows (CSV) and attempt histories (JSON lines).

    Used as the ResultAggregator sink; each write() appends one flushed chunk.
    """

    def __init__(self, output_dir: str = "./results", run_id: Optional[str] = None):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.report_path = self.output_dir / f"report_{self.run_id}.csv"
        self.audit_path = self.output_dir / f"audit_{self.run_id}.jsonl"
        self.rows_written = 0

        if not self.report_path.exists():
            with open(self.report_path, "w", newline="", encoding="utf-8") as f:
                csv.DictWriter(f, fieldnames=REPORT_FIELDS).writeheader()

    def write(self, states: List[SubmissionState]):
        with open(self.report_path, "a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=REPORT_FIELDS)
            writer.writerows(state.to_report_row() for state in states)

        with open(self.audit_path, "a", encoding="utf-8") as f:
            for state in states:
                f.write(json.dumps(state.to_audit_dict(), ensure_ascii=False) + "\n")

        self.rows_written += len(states)

    def close(self):
        logger.info(f"[Report] {self.rows_written} rows -> {self.report_path}")
