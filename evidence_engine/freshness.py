"""Evidence freshness buckets used by benchmark weighting."""

from __future__ import annotations

from datetime import datetime
from typing import NamedTuple, Optional

from .models import to_utc, utcnow


class Freshness(NamedTuple):
    status: str
    weight: float
    badge: str
    age_days: int


FRESH_DAYS = 90
AGING_DAYS = 365


def compute_freshness(capture_date: datetime, reference: Optional[datetime] = None) -> Freshness:
    age = (to_utc(reference or utcnow()) - to_utc(capture_date)).days
    if age <= FRESH_DAYS:
        return Freshness("fresh", 1.0, "green", age)
    if age <= AGING_DAYS:
        return Freshness("aging", 0.75, "amber", age)
    return Freshness("stale", 0.5, "red", age)
