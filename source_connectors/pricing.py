"""
Price and date parsing helpers for rule-based connectors.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional

AED_PRICE_RE = re.compile(r"(?:AED|Dhs?\.?)\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE)
TRAILING_PRICE_RE = re.compile(
    r"([\d,]+(?:\.\d{1,2})?)\s*(?:AED|Dhs?\.?|per\s+(?:sqm|sqft|m²|unit|piece|set|roll))",
    re.IGNORECASE,
)
SQFT_RE = re.compile(r"(?:per\s+)?(?:sq\.?\s*ft\.?|sqft|square\s+f(?:oo|ee)t)", re.IGNORECASE)
SQM_RE = re.compile(r"(?:per\s+)?(?:sq\.?\s*m\.?|sqm|m²|square\s+met(?:er|re))", re.IGNORECASE)

UNIT_CONTEXT_CHARS = 30
MAX_PRICE = 100_000_000

REPORT_DATE_RES = (
    re.compile(r"(?:Published|Date|Updated)[:\s]*(\d{1,2}\s+[A-Za-z]+\s+\d{4})", re.IGNORECASE),
    re.compile(r"(\d{4}-\d{2}-\d{2})"),
    re.compile(r"(\d{1,2}\s+[A-Za-z]+\s+\d{4})"),
)
DATE_FORMATS = ("%d %B %Y", "%d %b %Y", "%Y-%m-%d")


class Price(NamedTuple):
    value: float
    unit: str


def extract_prices(text: str) -> List[Price]:
    """Distinct AED prices in *text*, in match order, with a unit guessed from nearby words."""
    prices: List[Price] = []
    seen = set()
    for regex in (AED_PRICE_RE, TRAILING_PRICE_RE):
        for m in regex.finditer(text):
            try:
                value = float(m.group(1).replace(",", ""))
            except ValueError:
                continue
            if not 0 < value < MAX_PRICE or value in seen:
                continue
            seen.add(value)
            context = text[max(0, m.start() - UNIT_CONTEXT_CHARS):m.end() + UNIT_CONTEXT_CHARS]
            if SQM_RE.search(context):
                unit = "sqm"
            elif SQFT_RE.search(context):
                unit = "sqft"
            else:
                unit = "unit"
            prices.append(Price(value, unit))
    return prices


def parse_report_date(text: str) -> Optional[datetime]:
    for regex in REPORT_DATE_RES:
        m = regex.search(text)
        if not m:
            continue
        raw = " ".join(m.group(1).split())
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
    return None
