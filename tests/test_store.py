# tests/test_store.py
"""
Tests for the SQLite evidence store.

Covers:
  1. Evidence insert, lookup and duplicate checks
  2. Previous-observation lookup ordering
  3. Source state round trip
  4. A full ingestion run persisted to SQLite
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from evidence_engine.infra.db import Database
from evidence_engine.infra.store import SqliteEvidenceStore
from evidence_engine.models import ConnectorConfig, day_key
from evidence_engine.orchestrator import IngestionOrchestrator

from conftest import NOW, FakeConnector, failed_payload, make_record


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SqliteEvidenceStore(Database(str(tmp_path / "db" / "evidence.db")))
    await store.connect()
    yield store
    await store.close()


# ---------------------------------------------------------------------------
# 1. Evidence rows
# ---------------------------------------------------------------------------

class TestEvidence:

    async def test_insert_and_fetch(self, sqlite_store):
        record = make_record(price=145.0)
        record.tags = ["tiles", "flooring"]
        record_id = await sqlite_store.create_evidence_record(record)

        stored = await sqlite_store.get_evidence_record_by_id(record_id)
        assert stored.id == record_id
        assert stored.item_name == record.item_name
        assert stored.price_typical == 145.0
        assert stored.tags == ["tiles", "flooring"]
        assert stored.capture_date == NOW

    async def test_missing_id(self, sqlite_store):
        assert await sqlite_store.get_evidence_record_by_id(999) is None

    async def test_exists_uses_utc_day(self, sqlite_store):
        record = make_record()
        await sqlite_store.create_evidence_record(record)

        assert await sqlite_store.evidence_exists(record.source_url, record.item_name, day_key(NOW))
        assert not await sqlite_store.evidence_exists(record.source_url, record.item_name, "2026-02-28")
        assert not await sqlite_store.evidence_exists(record.source_url, "Other", day_key(NOW))

    async def test_list_by_category_in_date_order(self, sqlite_store):
        await sqlite_store.create_evidence_record(make_record("B", 2.0, days_ago=1))
        await sqlite_store.create_evidence_record(make_record("A", 1.0, days_ago=5))
        await sqlite_store.create_evidence_record(make_record("C", 3.0, category="fitout_rate"))

        assert [r.item_name for r in await sqlite_store.list_evidence("material_cost")] == ["A", "B"]
        assert len(await sqlite_store.list_evidence()) == 3


# ---------------------------------------------------------------------------
# 2. Previous observation
# ---------------------------------------------------------------------------

class TestPrevious:

    async def test_latest_strictly_earlier(self, sqlite_store):
        await sqlite_store.create_evidence_record(make_record(price=90.0, days_ago=10))
        await sqlite_store.create_evidence_record(make_record(price=95.0, days_ago=3))
        await sqlite_store.create_evidence_record(make_record(price=99.0, days_ago=0))

        previous = await sqlite_store.get_previous_evidence_record("Porcelain Tile 60x60", "rak-ceramics-uae", NOW)
        assert previous.price_typical == 95.0

    async def test_none_before_first(self, sqlite_store):
        await sqlite_store.create_evidence_record(make_record(days_ago=0))
        assert await sqlite_store.get_previous_evidence_record(
            "Porcelain Tile 60x60", "rak-ceramics-uae", NOW - timedelta(days=1)
        ) is None


# ---------------------------------------------------------------------------
# 3. Source state
# ---------------------------------------------------------------------------

class TestSourceState:

    async def test_round_trip(self, sqlite_store):
        config = ConnectorConfig(source_id="a", source_name="A", source_url="https://a.example.com/")
        assert await sqlite_store.load_source_state(config) is config

        config.last_successful_fetch = NOW
        config.consecutive_failures = 2
        config.last_error = "HTTP 503"
        await sqlite_store.save_source_state(config)
        config.consecutive_failures = 0
        config.last_error = None
        await sqlite_store.save_source_state(config)

        fresh = ConnectorConfig(source_id="a", source_name="A", source_url="https://a.example.com/")
        loaded = await sqlite_store.load_source_state(fresh)
        assert loaded.last_successful_fetch == NOW
        assert loaded.consecutive_failures == 0
        assert loaded.last_error is None

    async def test_reopen_keeps_schema_and_data(self, tmp_path):
        path = str(tmp_path / "evidence.db")
        first = SqliteEvidenceStore(Database(path))
        await first.connect()
        await first.create_evidence_record(make_record())
        await first.close()

        second = SqliteEvidenceStore(Database(f"sqlite+aiosqlite:///{path}"))
        await second.connect()
        try:
            assert len(await second.list_evidence()) == 1
        finally:
            await second.close()


# ---------------------------------------------------------------------------
# 4. End to end
# ---------------------------------------------------------------------------

class TestRunPersistence:

    async def test_run_rows(self, sqlite_store):
        orchestrator = IngestionOrchestrator(sqlite_store, downstream={})
        report = await orchestrator.run([
            FakeConnector("a", items=[{"title": "Tile", "value": 100.0}]),
            FakeConnector("b", payload=failed_payload("https://b.example.com/")),
        ])

        run = await sqlite_store.db.fetch_one("SELECT * FROM ingestion_runs WHERE run_id = ?", (report.run_id,))
        assert run["status"] == "completed"
        assert run["evidence_created"] == 1

        health = await sqlite_store.db.fetch_all("SELECT source_id, status, error_type FROM connector_health ORDER BY source_id")
        assert [tuple(h) for h in health] == [("a", "success", None), ("b", "failed", "http_error")]

        state = await sqlite_store.db.fetch_one("SELECT * FROM source_state WHERE source_id = 'b'")
        assert state["consecutive_failures"] == 1

    async def test_analytics_rows(self, sqlite_store):
        orchestrator = IngestionOrchestrator(sqlite_store)
        items = [{"title": f"Tile {i}", "value": 100.0 + i} for i in range(3)]
        report = await orchestrator.run([FakeConnector("a", items=items)])

        assert report.downstream["benchmarks"]["proposals_created"] == 1
        rows = await sqlite_store.db.fetch_all("SELECT benchmark_key, recommendation FROM benchmark_proposals")
        assert [tuple(r) for r in rows] == [("material_cost:sqm", "reject")]
