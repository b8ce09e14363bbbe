"""
Reliability grading and confidence scoring.

Grades come from source identity only; confidence is the grade's base score
plus a recency adjustment, clamped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .models import to_utc

GRADE_A_SOURCES: FrozenSet[str] = frozenset({
    "emaar-properties",
    "damac-properties",
    "nakheel-properties",
    "rics-market-reports",
    "jll-mena-research",
    "dubai-statistics-center",
})

GRADE_B_SOURCES: FrozenSet[str] = frozenset({
    "rak-ceramics-uae",
    "porcelanosa-uae",
    "hafele-uae",
    "gems-building-materials",
    "dragon-mart-dubai",
})

GRADE_C_SOURCES: FrozenSet[str] = frozenset({
    "dera-interiors",
})

BASE_CONFIDENCE: Dict[str, float] = {"A": 0.85, "B": 0.70, "C": 0.55}

RECENT_DAYS = 90
STALE_DAYS = 365
RECENCY_BONUS = 0.10
STALE_PENALTY = 0.15

CONFIDENCE_FLOOR = 0.20
CONFIDENCE_CAP = 1.0


def assign_grade(source_id: str) -> str:
    """Pure allowlist lookup; unknown sources get the lowest tier."""
    if source_id in GRADE_A_SOURCES:
        return "A"
    if source_id in GRADE_B_SOURCES:
        return "B"
    return "C"


def recency_adjustment(published: Optional[datetime], fetched_at: datetime) -> float:
    if published is None:
        return -STALE_PENALTY
    days = (to_utc(fetched_at) - to_utc(published)).days
    if days <= RECENT_DAYS:
        return RECENCY_BONUS
    if days > STALE_DAYS:
        return -STALE_PENALTY
    return 0.0


def compute_confidence(grade: str, published: Optional[datetime], fetched_at: datetime) -> float:
    """Confidence in [CONFIDENCE_FLOOR, CONFIDENCE_CAP] for any grade/date pair."""
    base = BASE_CONFIDENCE.get(grade, BASE_CONFIDENCE["C"])
    score = base + recency_adjustment(published, fetched_at)
    return round(max(CONFIDENCE_FLOOR, min(CONFIDENCE_CAP, score)), 4)
