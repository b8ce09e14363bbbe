# tests/test_grading.py
"""
Tests for reliability grading, confidence scoring and evidence freshness.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from evidence_engine.freshness import compute_freshness
from evidence_engine.grading import (
    CONFIDENCE_CAP,
    CONFIDENCE_FLOOR,
    assign_grade,
    compute_confidence,
)

FETCHED = datetime(2026, 3, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Grades
# ---------------------------------------------------------------------------

class TestAssignGrade:

    @pytest.mark.parametrize("source_id", ["emaar-properties", "rics-market-reports", "dubai-statistics-center"])
    def test_grade_a_sources(self, source_id):
        assert assign_grade(source_id) == "A"

    @pytest.mark.parametrize("source_id", ["rak-ceramics-uae", "hafele-uae", "dragon-mart-dubai"])
    def test_grade_b_sources(self, source_id):
        assert assign_grade(source_id) == "B"

    def test_unknown_source_gets_lowest_grade(self):
        assert assign_grade("someone-new") == "C"
        assert assign_grade("") == "C"

    def test_grade_is_identity_only(self):
        assert assign_grade("dera-interiors") == assign_grade("dera-interiors") == "C"


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestComputeConfidence:

    def test_recent_publication_gets_bonus(self):
        published = FETCHED - timedelta(days=10)
        assert compute_confidence("A", published, FETCHED) == pytest.approx(0.95)

    def test_ninety_days_is_still_recent(self):
        published = FETCHED - timedelta(days=90)
        assert compute_confidence("B", published, FETCHED) == pytest.approx(0.80)

    def test_mid_age_has_no_adjustment(self):
        published = FETCHED - timedelta(days=200)
        assert compute_confidence("B", published, FETCHED) == pytest.approx(0.70)

    def test_old_publication_is_penalised(self):
        published = FETCHED - timedelta(days=400)
        assert compute_confidence("C", published, FETCHED) == pytest.approx(0.40)

    def test_missing_date_is_penalised(self):
        assert compute_confidence("A", None, FETCHED) == pytest.approx(0.70)

    def test_naive_dates_are_utc(self):
        naive = (FETCHED - timedelta(days=5)).replace(tzinfo=None)
        assert compute_confidence("C", naive, FETCHED) == pytest.approx(0.65)

    @pytest.mark.parametrize("grade", ["A", "B", "C", "Z"])
    @pytest.mark.parametrize("days", [None, -30, 0, 89, 91, 364, 366, 5000])
    def test_always_within_bounds(self, grade, days):
        published = None if days is None else FETCHED - timedelta(days=days)
        score = compute_confidence(grade, published, FETCHED)
        assert CONFIDENCE_FLOOR <= score <= CONFIDENCE_CAP


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------

class TestFreshness:

    def test_fresh(self):
        f = compute_freshness(FETCHED - timedelta(days=30), FETCHED)
        assert (f.status, f.weight, f.badge) == ("fresh", 1.0, "green")

    def test_aging(self):
        f = compute_freshness(FETCHED - timedelta(days=200), FETCHED)
        assert (f.status, f.weight) == ("aging", 0.75)

    def test_stale(self):
        f = compute_freshness(FETCHED - timedelta(days=400), FETCHED)
        assert (f.status, f.weight, f.age_days) == ("stale", 0.5, 400)
