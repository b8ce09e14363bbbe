# tests/test_orchestrator.py
"""
Tests for the ingestion orchestrator.

Covers:
  1. Concurrency cap and result ordering
  2. Failure isolation between connectors
  3. Deduplication and record construction
  4. Normalization fallback and extraction failures
  5. Run bookkeeping, health rows and downstream hooks
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest

from evidence_engine.models import ErrorType, NormalizedEvidence, RawPayload
from evidence_engine.orchestrator import (
    FALLBACK_CONFIDENCE,
    IngestionOrchestrator,
    RecordIdGenerator,
    run_ingestion,
    run_with_concurrency_limit,
)

from conftest import NOW, FakeConnector, failed_payload

TILE = {"title": "Porcelain Tile 60x60", "value": 120.0}
GROUT = {"title": "Epoxy Grout 5kg", "value": 85.0}


def orchestrator(store, **kwargs) -> IngestionOrchestrator:
    kwargs.setdefault("downstream", {})
    return IngestionOrchestrator(store, **kwargs)


# ---------------------------------------------------------------------------
# 1. Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:

    async def test_never_more_than_limit_in_flight(self):
        in_flight = peak = 0

        async def task(i):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return i

        results = await run_with_concurrency_limit([lambda i=i: task(i) for i in range(10)], 3)
        assert peak == 3
        assert results == list(range(10))

    async def test_empty_task_list(self):
        assert await run_with_concurrency_limit([], 3) == []

    async def test_connectors_respect_max_concurrent(self, store):
        in_flight = peak = 0

        async def on_fetch():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        connectors = [FakeConnector(f"src-{i}", items=[TILE], on_fetch=on_fetch) for i in range(7)]
        report = await orchestrator(store, max_concurrent=2).run(connectors)

        assert peak <= 2
        assert [r.source_id for r in report.per_source] == [f"src-{i}" for i in range(7)]


# ---------------------------------------------------------------------------
# 2. Failure isolation
# ---------------------------------------------------------------------------

class TestFailureIsolation:

    async def test_one_http_failure_does_not_block_others(self, store):
        bad = FakeConnector("bad", payload=failed_payload("https://bad.example.com/"))
        good = FakeConnector("good", items=[TILE, GROUT])
        report = await orchestrator(store).run([bad, good])

        assert report.status == "completed"
        assert report.sources_attempted == 2
        assert report.sources_succeeded == 1
        assert report.sources_failed == 1
        assert report.evidence_created == 2
        bad_result = report.per_source[0]
        assert bad_result.status == "failed"
        assert bad_result.error_type == ErrorType.HTTP_ERROR
        assert [e.source_id for e in report.errors] == ["bad"]

    async def test_status_code_without_error_is_a_failure(self, store):
        payload = RawPayload(url="https://x.example.com/", status_code=500)
        report = await orchestrator(store).run([FakeConnector("x", payload=payload)])

        result = report.per_source[0]
        assert result.status == "failed"
        assert result.error == "HTTP 500"
        assert result.error_type == ErrorType.HTTP_ERROR

    async def test_all_failed_marks_run_failed(self, store):
        connectors = [FakeConnector(f"s{i}", payload=failed_payload(f"https://s{i}.example.com/")) for i in range(2)]
        report = await orchestrator(store).run(connectors)
        assert report.status == "failed"

    async def test_empty_run_is_completed(self, store):
        report = await orchestrator(store).run([])
        assert report.status == "completed"
        assert report.sources_attempted == 0

    async def test_crashing_fetch_is_contained(self, store):
        async def boom():
            raise RuntimeError("socket exploded")

        report = await orchestrator(store).run([
            FakeConnector("crash", on_fetch=boom),
            FakeConnector("fine", items=[TILE]),
        ])
        crash = report.per_source[0]
        assert crash.status == "failed"
        assert crash.error_type == ErrorType.UNKNOWN
        assert "socket exploded" in crash.error
        assert report.per_source[1].evidence_created == 1


# ---------------------------------------------------------------------------
# 3. Dedup and records
# ---------------------------------------------------------------------------

class TestDeduplication:

    async def test_second_run_same_day_skips(self, store):
        orch = orchestrator(store)
        first = await orch.run([FakeConnector("rak-ceramics-uae", items=[TILE])])
        second = await orch.run([FakeConnector("rak-ceramics-uae", items=[TILE])])

        assert first.evidence_created == 1
        assert second.evidence_created == 0
        assert second.evidence_skipped == 1
        assert len(store.evidence) == 1

    async def test_duplicate_within_one_page(self, store):
        report = await orchestrator(store).run([FakeConnector("a", items=[TILE, TILE])])
        assert report.evidence_created == 1
        assert report.evidence_skipped == 1

    async def test_different_day_is_not_duplicate(self, store):
        yesterday = NOW - timedelta(days=1)
        items = [TILE, {**TILE, "published": yesterday}]
        report = await orchestrator(store).run([FakeConnector("a", items=items)])
        assert report.evidence_created == 2

    async def test_different_source_url_is_not_duplicate(self, store):
        items = [TILE, {**TILE, "url": "https://a.example.com/tiles/porcelain"}]
        report = await orchestrator(store).run([FakeConnector("a", items=items)])

        assert report.evidence_created == 2
        assert report.evidence_skipped == 0
        assert {r.source_url for r in store.evidence} == {
            "https://a.example.com/", "https://a.example.com/tiles/porcelain",
        }

    async def test_different_item_name_is_not_duplicate(self, store):
        items = [TILE, {**TILE, "title": "Porcelain Tile 60x120"}]
        report = await orchestrator(store).run([FakeConnector("a", items=items)])

        assert report.evidence_created == 2
        assert report.evidence_skipped == 0
        assert [r.item_name for r in store.evidence] == ["Porcelain Tile 60x60", "Porcelain Tile 60x120"]

    async def test_record_fields(self, store):
        ids = RecordIdGenerator(prefix="EV")
        report = await orchestrator(store, record_ids=ids).run([FakeConnector("a", items=[TILE])])
        record = store.evidence[0]

        assert record.record_id.startswith("EV-")
        assert record.record_id.endswith("000001")
        assert record.item_name == "Porcelain Tile 60x60"
        assert record.price_typical == 120.0
        assert record.unit == "sqm"
        assert record.currency == "AED"
        assert record.confidence_score == 70
        assert record.reliability_grade == "B"
        assert record.publisher == "Source a"
        assert record.run_id == report.run_id
        assert record.capture_date == NOW

    def test_record_ids_are_unique(self):
        ids = RecordIdGenerator()
        assert len({ids() for _ in range(100)}) == 100


# ---------------------------------------------------------------------------
# 4. Item-level failures
# ---------------------------------------------------------------------------

class TestItemFailures:

    async def test_normalize_exception_uses_fallback(self, store):
        def broken(evidence):
            raise ValueError("no price")

        report = await orchestrator(store).run([FakeConnector("a", items=[TILE], normalize=broken)])
        record = store.evidence[0]

        assert report.per_source[0].status == "success"
        assert record.reliability_grade == "C"
        assert record.confidence_score == round(FALLBACK_CONFIDENCE * 100)
        assert record.price_typical is None
        assert record.unit == "unit"

    async def test_invalid_normalized_output_uses_fallback(self, store):
        def out_of_range(evidence):
            return NormalizedEvidence.model_construct(
                metric=evidence.title, value=1.0, unit="sqm", confidence=7.5, grade="A",
                summary=evidence.raw_text, tags=[],
            )

        await orchestrator(store).run([FakeConnector("a", items=[TILE], normalize=out_of_range)])
        assert store.evidence[0].confidence_score == 20

    async def test_extract_exception_fails_connector(self, store):
        report = await orchestrator(store).run([
            FakeConnector("a", extract_error=RuntimeError("layout changed")),
            FakeConnector("b", items=[TILE]),
        ])
        result = report.per_source[0]

        assert result.status == "failed"
        assert result.error_type == ErrorType.EXTRACTION
        assert "layout changed" in result.error
        assert report.per_source[1].status == "success"

    async def test_persist_failure_marks_partial(self, store):
        calls = {"n": 0}
        original = store.create_evidence_record

        async def flaky_create(record):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("disk full")
            return await original(record)

        store.create_evidence_record = flaky_create
        report = await orchestrator(store).run([FakeConnector("a", items=[TILE, GROUT])])
        result = report.per_source[0]

        assert result.status == "partial"
        assert result.evidence_failed == 1
        assert result.evidence_created == 1
        assert result.error_type == ErrorType.PERSISTENCE


# ---------------------------------------------------------------------------
# 5. Bookkeeping and downstream
# ---------------------------------------------------------------------------

class TestBookkeeping:

    async def test_health_and_run_rows(self, store):
        report = await orchestrator(store).run(
            [FakeConnector("a", items=[TILE]), FakeConnector("b", payload=failed_payload("https://b.example.com/"))],
            triggered_by="api",
            actor_id=7,
        )
        assert len(store.health) == 2
        assert {h.source_id: h.status for h in store.health} == {"a": "success", "b": "failed"}
        assert store.runs[0].run_id == report.run_id
        assert store.runs[0].triggered_by == "api"
        assert store.runs[0].actor_id == 7
        assert report.run_id.startswith("ING-")

    async def test_run_summary_is_logged(self, store, caplog):
        caplog.set_level(logging.INFO, logger="evidence_engine.orchestrator")
        report = await orchestrator(store).run([FakeConnector("a", items=[TILE, TILE])])

        assert f"Ingestion run {report.run_id} completed: 1/1 sources ok, 1 created, 1 duplicates" in caplog.text

    async def test_source_state_updated(self, store):
        good = FakeConnector("a", items=[TILE])
        bad = FakeConnector("b", payload=failed_payload("https://b.example.com/"))
        bad.config.consecutive_failures = 2
        await orchestrator(store).run([good, bad])

        assert good.config.last_successful_fetch is not None
        assert good.config.consecutive_failures == 0
        assert bad.config.consecutive_failures == 3
        assert bad.config.last_error == "HTTP 503"
        assert store.source_state["b"]["consecutive_failures"] == 3

    async def test_downstream_failure_does_not_change_status(self, store):
        async def broken_hook(store, report):
            raise RuntimeError("benchmarks offline")

        async def ok_hook(store, report):
            return {"ran": True}

        report = await orchestrator(store, downstream={"bench": broken_hook, "other": ok_hook}).run(
            [FakeConnector("a", items=[TILE])]
        )
        assert report.status == "completed"
        assert report.downstream["bench"] == {"error": "benchmarks offline", "error_type": "downstream"}
        assert report.downstream["other"] == {"ran": True}

    async def test_downstream_skipped_when_nothing_created(self, store):
        called = []

        async def hook(store, report):
            called.append(report.run_id)

        await orchestrator(store, downstream={"h": hook}).run([FakeConnector("a", items=[])])
        assert called == []

    async def test_default_downstream_runs_analytics(self, store):
        report = await run_ingestion([FakeConnector("a", items=[TILE, GROUT])], store=store)
        assert set(report.downstream) == {"benchmarks", "trends"}
        assert "error" not in report.downstream["benchmarks"]

    async def test_price_change_detected_across_runs(self, store):
        orch = orchestrator(store)
        earlier = NOW - timedelta(days=7)
        await orch.run([FakeConnector("a", items=[{**TILE, "published": earlier, "value": 100.0}])])
        await orch.run([FakeConnector("a", items=[{**TILE, "value": 112.0}])])

        assert len(store.price_changes) == 1
        event = store.price_changes[0]
        assert event.severity == "significant"
        assert event.change_direction == "increased"
        assert len(store.insights) == 1
