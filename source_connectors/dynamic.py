"""
Registry-driven connector: any configured URL, read through structured
text extraction instead of per-site rules.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from evidence_engine.grading import assign_grade, compute_confidence
from evidence_engine.models import ExtractedEvidence, NormalizedEvidence, RawPayload, to_utc, utcnow

from .base import BaseSourceConnector, html_to_text, snippet

logger = logging.getLogger(__name__)

MAX_ITEMS = 15
MAX_TITLE_CHARS = 255
PROMPT_CONTENT_CHARS = 8000
MIN_CONTENT_CHARS = 50

SOURCE_TYPE_CATEGORY: Dict[str, str] = {
    "supplier_catalog": "material_cost",
    "manufacturer_catalog": "material_cost",
    "retailer_listing": "material_cost",
    "developer_brochure": "competitor_project",
    "industry_report": "market_trend",
    "trade_publication": "market_trend",
    "government_tender": "project_award",
    "other": "other",
}

SCHEMA_HINT = """Return a JSON object {"items": [...]} where each item has these exact fields:
- title: string (item/product/project name)
- rawText: string (relevant text snippet, max 500 chars)
- publishedDate: string|null (ISO date if found, null otherwise)
- metric: string (what is being measured, e.g. "Marble Tile 60x60 price")
- value: number|null (numeric value in AED if found, null otherwise)
- unit: string|null (e.g. "sqm", "sqft", "piece", "unit", null if not applicable)

Rules:
- Extract up to 15 items maximum
- Only extract items with real data (titles, prices, descriptions)
- Do NOT invent data; if no items are found, return {"items": []}
- Do NOT output confidence, grade, or scoring fields"""


def category_for(source_type: Optional[str], default: str = "other") -> str:
    if not source_type:
        return default
    return SOURCE_TYPE_CATEGORY.get(source_type, "other")


def _parse_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return to_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def items_from_response(parsed: Any) -> List[Dict[str, Any]]:
    """Accept a bare array or an object wrapping one under ``items``/``data``."""
    if isinstance(parsed, dict):
        parsed = parsed.get("items") or parsed.get("data") or []
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict) and isinstance(item.get("title"), str) and item["title"].strip()]


class DynamicConnector(BaseSourceConnector):
    kind = "dynamic"

    def __init__(self, config, context=None) -> None:
        if config.source_type:
            config.category = category_for(config.source_type)
        super().__init__(config, context)

    page_label = "source content"

    def prompt_context(self, raw: RawPayload) -> List[str]:
        return []

    def build_prompt(self, raw: RawPayload, text: str) -> str:
        lines = [
            f"Extract evidence items from this {self.source_name} {self.page_label}.",
            f"Category: {self.config.category}",
            f"Geography: {self.config.geography}",
            *self.prompt_context(raw),
        ]
        if self.config.last_successful_fetch:
            since = self.config.last_successful_fetch.date().isoformat()
            lines.append(f"Focus on content published or updated after {since}.")
        if self.config.extraction_hints:
            lines.append(f"EXTRACTION HINTS: {self.config.extraction_hints}")
        lines.append("")
        lines.append(f"Content (truncated to {PROMPT_CONTENT_CHARS} chars):")
        lines.append(text[:PROMPT_CONTENT_CHARS])
        return "\n".join(lines)

    def page_text(self, raw: RawPayload) -> str:
        if raw.raw_html:
            return html_to_text(raw.raw_html)
        if raw.rendered_text:
            return raw.rendered_text
        if raw.raw_json is not None:
            return json.dumps(raw.raw_json)
        return ""

    async def extract(self, raw: RawPayload) -> List[ExtractedEvidence]:
        extractor = self.context.extractor if self.context else None
        if extractor is None or not extractor.available:
            logger.debug("%s: no text extractor configured, skipping %s", self.source_id, raw.url)
            return []

        text = self.page_text(raw)
        if len(text) < MIN_CONTENT_CHARS:
            return []

        try:
            parsed = await extractor.extract_structured(self.build_prompt(raw, text), SCHEMA_HINT)
        except ValueError as e:
            logger.warning(f"{self.source_id}: malformed extraction output for {raw.url}: {e}")
            return []
        except Exception as e:
            # unavailable or timed out; the page simply yields nothing
            logger.warning(f"{self.source_id}: text extraction failed for {raw.url}: {type(e).__name__}: {e}")
            return []

        evidence: List[ExtractedEvidence] = []
        for item in items_from_response(parsed)[:MAX_ITEMS]:
            title = item["title"].strip()[:MAX_TITLE_CHARS]
            raw_text = str(item.get("rawText") or item.get("description") or title)
            evidence.append(ExtractedEvidence(
                title=f"{self.source_name} - {title}",
                raw_text=snippet(raw_text) or title,
                published_date=_parse_date(item.get("publishedDate")),
                category=self.config.category,
                geography=self.config.geography,
                source_url=raw.url,
                hints={
                    "metric": str(item.get("metric") or title)[:MAX_TITLE_CHARS],
                    "value": _finite_number(item.get("value")),
                    "unit": item.get("unit") if isinstance(item.get("unit"), str) else None,
                },
            ))
        logger.debug("%s: extracted %d item(s) from %s", self.source_id, len(evidence), raw.url)
        return evidence

    async def normalize(self, evidence: ExtractedEvidence) -> NormalizedEvidence:
        grade = assign_grade(self.source_id)
        hints = evidence.hints
        return NormalizedEvidence(
            metric=hints.get("metric") or evidence.title,
            value=hints.get("value"),
            unit=hints.get("unit") or self.default_unit,
            confidence=compute_confidence(grade, evidence.published_date, utcnow()),
            grade=grade,
            summary=snippet(evidence.raw_text),
            tags=self.tags_for(evidence),
        )
