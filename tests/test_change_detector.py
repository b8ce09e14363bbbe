# tests/test_change_detector.py
"""
Tests for price change detection and the insights it raises.
"""
from __future__ import annotations

import pytest

from evidence_engine.change_detector import classify_severity, detect_price_change

from conftest import make_record


async def seed(store, *records):
    for record in records:
        record.id = await store.create_evidence_record(record)


class TestClassifySeverity:

    @pytest.mark.parametrize("pct,expected", [
        (0.0, None),
        (0.5, "minor"),
        (4.99, "minor"),
        (5.0, "notable"),
        (-7.0, "notable"),
        (10.0, "significant"),
        (-25.0, "significant"),
    ])
    def test_tiers(self, pct, expected):
        assert classify_severity(pct) == expected


class TestDetectPriceChange:

    async def test_notable_increase(self, store):
        previous = make_record(price=100.0, days_ago=10)
        current = make_record(price=107.0)
        await seed(store, previous, current)

        outcome = await detect_price_change(store, current)

        assert outcome is not None
        assert outcome.event.change_pct == pytest.approx(7.0)
        assert outcome.event.change_direction == "increased"
        assert outcome.event.severity == "notable"
        insight = store.insights[0]
        assert insight.severity == "warning"
        assert insight.insight_type == "cost_pressure"
        assert insight.title == "Price Spike Detected: Porcelain Tile 60x60"

    async def test_significant_decrease(self, store):
        previous = make_record(price=200.0, days_ago=3)
        current = make_record(price=150.0)
        await seed(store, previous, current)

        outcome = await detect_price_change(store, current)

        assert outcome.event.change_pct == pytest.approx(-25.0)
        assert outcome.event.change_direction == "decreased"
        assert outcome.event.severity == "significant"
        assert store.insights[0].severity == "critical"
        assert store.insights[0].insight_type == "market_opportunity"

    async def test_minor_change_has_no_insight(self, store):
        await seed(store, make_record(price=100.0, days_ago=1))
        current = make_record(price=102.0)
        await seed(store, current)

        outcome = await detect_price_change(store, current)

        assert outcome.event.severity == "minor"
        assert outcome.insight_id is None
        assert store.insights == []
        assert len(store.price_changes) == 1

    async def test_equal_price_is_not_a_change(self, store):
        await seed(store, make_record(price=100.0, days_ago=5))
        current = make_record(price=100.0)
        await seed(store, current)

        assert await detect_price_change(store, current) is None
        assert store.price_changes == []

    async def test_uses_latest_previous_record(self, store):
        await seed(store, make_record(price=50.0, days_ago=30), make_record(price=100.0, days_ago=2))
        current = make_record(price=110.0)
        await seed(store, current)

        outcome = await detect_price_change(store, current)
        assert outcome.event.previous_price == 100.0

    async def test_other_source_is_ignored(self, store):
        await seed(store, make_record(price=50.0, days_ago=2, source_id="porcelanosa-uae"))
        current = make_record(price=110.0)
        await seed(store, current)

        assert await detect_price_change(store, current) is None

    @pytest.mark.parametrize("previous_price", [None, 0.0])
    async def test_unusable_previous_price(self, store, previous_price):
        await seed(store, make_record(price=previous_price, days_ago=2))
        current = make_record(price=110.0)
        await seed(store, current)

        assert await detect_price_change(store, current) is None

    async def test_unpriced_record_is_skipped(self, store):
        await seed(store, make_record(price=100.0, days_ago=2))
        current = make_record(price=None)
        assert await detect_price_change(store, current) is None

    async def test_first_observation(self, store):
        current = make_record(price=100.0)
        await seed(store, current)
        assert await detect_price_change(store, current) is None
