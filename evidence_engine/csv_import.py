"""
Bulk import of operator-supplied CSV files into evidence records.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import IO, Any, Dict, List, Optional, Union

import pandas as pd

from .change_detector import detect_price_change
from .grading import assign_grade
from .interfaces import EvidenceStore
from .models import ConnectorConfig, EvidenceRecord, to_utc, utcnow
from .orchestrator import RecordIdGenerator

logger = logging.getLogger(__name__)

TEMPLATE_COLUMNS = [
    "Item Name", "Category", "Region", "Metric", "Value", "Unit", "Date (YYYY-MM-DD)", "Tags", "Notes",
]
TEMPLATE_SAMPLE = [
    "Sample Tile 60x60", "material_cost", "Dubai", "Price per SQM", "125.50", "sqm", "2026-02-01",
    "ceramics, flooring", "Premium finish",
]
MAX_REPORTED_ERRORS = 10

# first non-empty column wins
COLUMN_ALIASES = {
    "title": ("Item Name", "Title", "Name"),
    "category": ("Category", "category"),
    "geography": ("Region", "Geography"),
    "metric": ("Metric", "metric"),
    "value": ("Value", "Price", "Cost"),
    "unit": ("Unit", "unit"),
    "date": ("Date (YYYY-MM-DD)", "Date", "date"),
    "tags": ("Tags", "tags"),
    "notes": ("Notes", "notes"),
}


@dataclass
class CsvImportResult:
    total_rows: int = 0
    success_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)


def write_csv_template(path_or_buf: Union[str, IO[str], None] = None) -> Optional[str]:
    """Write the upload template; returns the CSV text when no target is given."""
    frame = pd.DataFrame([TEMPLATE_SAMPLE], columns=TEMPLATE_COLUMNS)
    return frame.to_csv(path_or_buf, index=False)


def _pick(row: Dict[str, str], name: str) -> str:
    for column in COLUMN_ALIASES[name]:
        value = (row.get(column) or "").strip()
        if value:
            return value
    return ""


def _parse_value(raw: str) -> Optional[float]:
    try:
        value = float(raw.replace(",", ""))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


class CsvImporter:
    """
    Example
    -------
    importer = CsvImporter(store, source)
    result = await importer.import_file("prices.csv")
    """

    def __init__(self, store: EvidenceStore, source: ConnectorConfig, *, record_ids: Optional[RecordIdGenerator] = None) -> None:
        self.store = store
        self.source = source
        self.grade = assign_grade(source.source_id)
        self.record_ids = record_ids or RecordIdGenerator(prefix="EV-CSV")

    def build_record(self, row: Dict[str, str]) -> EvidenceRecord:
        """Map one CSV row to a record. Raises ValueError for unusable rows."""
        title = _pick(row, "title")
        if not title:
            raise ValueError("Missing Item Name/Title")
        value = _parse_value(_pick(row, "value"))
        if value is None:
            raise ValueError("Invalid or missing numeric Value")

        metric = _pick(row, "metric") or title
        capture_date = utcnow()
        date_raw = _pick(row, "date")
        if date_raw:
            parsed = pd.to_datetime(date_raw, errors="coerce")
            if not pd.isna(parsed):
                capture_date = to_utc(parsed.to_pydatetime())

        tags = [t.strip() for t in _pick(row, "tags").split(",") if t.strip()]
        notes = _pick(row, "notes")
        summary = f"Uploaded Data: {notes}" if notes else f"Bulk uploaded value for {title}"
        row_context = json.dumps({k: v for k, v in row.items() if v})[:200]

        return EvidenceRecord(
            record_id=self.record_ids(),
            source_id=self.source.source_id,
            source_url=self.source.source_url,
            category=(_pick(row, "category") or self.source.category)[:64],
            geography=_pick(row, "geography") or self.source.geography,
            item_name=title[:255],
            price_typical=value,
            unit=(_pick(row, "unit") or "unit")[:32],
            currency=self.source.currency,
            capture_date=capture_date,
            reliability_grade=self.grade,
            confidence_score=90 if self.grade == "A" else 70,
            extracted_snippet=summary[:500],
            publisher=self.source.source_name,
            title=metric[:512],
            tags=tags,
            notes=f"Uploaded via CSV bulk tool. Row context: {row_context}",
        )

    async def import_frame(self, frame: pd.DataFrame) -> CsvImportResult:
        if frame.empty:
            raise ValueError("No data found in rows")

        result = CsvImportResult(total_rows=len(frame))
        rows = frame.fillna("").astype(str).to_dict(orient="records")
        for index, row in enumerate(rows):
            line = index + 2  # header is line 1
            try:
                record = self.build_record(row)
                record.id = await self.store.create_evidence_record(record)
            except Exception as e:
                result.errors.append(f"Row {line}: {e}")
                result.skipped_count += 1
                continue

            try:
                await detect_price_change(self.store, record)
            except Exception as e:
                logger.warning(f"Change detection failed for CSV row {line} ('{record.item_name}'): {e}")
            result.success_count += 1

        logger.info(
            "CSV import for %s: %d/%d rows imported, %d skipped",
            self.source.source_id, result.success_count, result.total_rows, result.skipped_count,
        )
        result.errors = result.errors[:MAX_REPORTED_ERRORS]
        return result

    async def import_file(self, path_or_buf: Any) -> CsvImportResult:
        frame = pd.read_csv(path_or_buf, dtype=str, keep_default_na=False, skipinitialspace=True)
        return await self.import_frame(frame)
