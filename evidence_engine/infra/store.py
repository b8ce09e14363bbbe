"""
Evidence stores: SQLite-backed for real runs, in-memory for dry runs and tests.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..interfaces import EvidenceStore
from ..models import (
    BenchmarkProposal,
    ConnectorConfig,
    ConnectorHealthRecord,
    EvidenceRecord,
    IngestionRunReport,
    PriceChangeEvent,
    ProjectInsight,
    TrendSnapshot,
    day_key,
    to_utc,
    utcnow,
)
from .db import Database

logger = logging.getLogger(__name__)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="microseconds")


class SqliteEvidenceStore(EvidenceStore):
    """EvidenceStore over the aiosqlite ``Database`` wrapper.

    No uniqueness constraint backs the duplicate key; two concurrent writers
    can both pass ``evidence_exists`` for the same key.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def connect(self) -> None:
        await self.db.connect()

    async def close(self) -> None:
        await self.db.close()

    # ---------------------------------------------- #
    # Evidence
    async def create_evidence_record(self, record: EvidenceRecord) -> int:
        return await self.db.insert("evidence_records", {
            "record_id": record.record_id,
            "source_id": record.source_id,
            "source_url": record.source_url,
            "category": record.category,
            "geography": record.geography,
            "item_name": record.item_name,
            "price_typical": record.price_typical,
            "unit": record.unit,
            "currency": record.currency,
            "capture_date": iso(record.capture_date),
            "capture_day": day_key(record.capture_date),
            "reliability_grade": record.reliability_grade,
            "confidence_score": record.confidence_score,
            "extracted_snippet": record.extracted_snippet,
            "publisher": record.publisher,
            "title": record.title,
            "tags": json.dumps(record.tags),
            "notes": record.notes,
            "run_id": record.run_id,
            "created_at": iso(record.created_at),
        })

    @staticmethod
    def _row_to_record(row: Any) -> EvidenceRecord:
        data = dict(row)
        data.pop("capture_day", None)
        data["tags"] = json.loads(data["tags"]) if data.get("tags") else []
        data["extracted_snippet"] = data.get("extracted_snippet") or ""
        data["publisher"] = data.get("publisher") or ""
        data["title"] = data.get("title") or ""
        return EvidenceRecord.model_validate(data)

    async def get_evidence_record_by_id(self, record_id: int) -> Optional[EvidenceRecord]:
        row = await self.db.fetch_one("SELECT * FROM evidence_records WHERE id = ?", (record_id,))
        return self._row_to_record(row) if row else None

    async def evidence_exists(self, source_url: str, item_name: str, capture_day: str) -> bool:
        row = await self.db.fetch_one(
            "SELECT 1 FROM evidence_records WHERE source_url = ? AND item_name = ? AND capture_day = ? LIMIT 1",
            (source_url, item_name, capture_day),
        )
        return row is not None

    async def get_previous_evidence_record(
        self, item_name: str, source_id: str, before: datetime
    ) -> Optional[EvidenceRecord]:
        row = await self.db.fetch_one(
            """
            SELECT * FROM evidence_records
            WHERE item_name = ? AND source_id = ? AND capture_date < ?
            ORDER BY capture_date DESC, id DESC
            LIMIT 1
            """,
            (item_name, source_id, iso(before)),
        )
        return self._row_to_record(row) if row else None

    async def list_evidence(self, category: Optional[str] = None) -> List[EvidenceRecord]:
        if category:
            rows = await self.db.fetch_all(
                "SELECT * FROM evidence_records WHERE category = ? ORDER BY capture_date", (category,)
            )
        else:
            rows = await self.db.fetch_all("SELECT * FROM evidence_records ORDER BY capture_date")
        return [self._row_to_record(r) for r in rows]

    # ---------------------------------------------- #
    # Run bookkeeping
    async def insert_connector_health(self, record: ConnectorHealthRecord) -> int:
        return await self.db.insert("connector_health", {
            "run_id": record.run_id,
            "source_id": record.source_id,
            "source_name": record.source_name,
            "status": record.status,
            "http_status": record.http_status,
            "response_time_ms": record.response_time_ms,
            "content_length": record.content_length,
            "records_extracted": record.records_extracted,
            "records_inserted": record.records_inserted,
            "duplicates_skipped": record.duplicates_skipped,
            "error_message": record.error_message,
            "error_type": record.error_type.value if record.error_type else None,
            "created_at": iso(record.created_at),
        })

    async def insert_ingestion_run(self, report: IngestionRunReport) -> int:
        return await self.db.insert("ingestion_runs", {
            "run_id": report.run_id,
            "triggered_by": report.triggered_by,
            "actor_id": report.actor_id,
            "status": report.status,
            "sources_attempted": report.sources_attempted,
            "sources_succeeded": report.sources_succeeded,
            "sources_failed": report.sources_failed,
            "evidence_extracted": report.evidence_extracted,
            "evidence_created": report.evidence_created,
            "evidence_skipped": report.evidence_skipped,
            "errors": json.dumps([e.model_dump(mode="json") for e in report.errors]),
            "per_source": json.dumps([r.model_dump(mode="json") for r in report.per_source]),
            "downstream": json.dumps(report.downstream, default=str),
            "started_at": iso(report.started_at),
            "completed_at": iso(report.completed_at),
            "duration_ms": report.duration_ms,
        })

    # ---------------------------------------------- #
    # Analytics outputs
    async def insert_trend_snapshot(self, snapshot: TrendSnapshot) -> int:
        return await self.db.insert("trend_snapshots", {
            "metric": snapshot.metric,
            "category": snapshot.category,
            "geography": snapshot.geography,
            "direction": snapshot.direction,
            "confidence": snapshot.confidence,
            "data_point_count": snapshot.data_point_count,
            "current_ma": snapshot.current_ma,
            "previous_ma": snapshot.previous_ma,
            "percent_change": snapshot.percent_change,
            "payload": snapshot.model_dump_json(),
            "created_at": iso(utcnow()),
        })

    async def create_price_change_event(self, event: PriceChangeEvent) -> int:
        return await self.db.insert("price_change_events", {
            "item_name": event.item_name,
            "category": event.category,
            "source_id": event.source_id,
            "previous_price": event.previous_price,
            "new_price": event.new_price,
            "change_pct": event.change_pct,
            "change_direction": event.change_direction,
            "severity": event.severity,
            "detected_at": iso(event.detected_at),
        })

    async def insert_project_insight(self, insight: ProjectInsight) -> int:
        return await self.db.insert("project_insights", {
            "insight_type": insight.insight_type,
            "severity": insight.severity,
            "title": insight.title,
            "body": insight.body,
            "actionable_recommendation": insight.actionable_recommendation,
            "confidence_score": insight.confidence_score,
            "data_points": json.dumps(insight.data_points),
            "trigger_condition": insight.trigger_condition,
            "created_at": iso(insight.created_at),
        })

    async def insert_benchmark_proposal(self, proposal: BenchmarkProposal) -> int:
        return await self.db.insert("benchmark_proposals", {
            "benchmark_key": proposal.benchmark_key,
            "run_id": proposal.run_id,
            "recommendation": proposal.recommendation,
            "confidence_score": proposal.confidence_score,
            "payload": proposal.model_dump_json(),
            "created_at": iso(utcnow()),
        })

    # ---------------------------------------------- #
    # Source bookkeeping
    async def load_source_state(self, config: ConnectorConfig) -> ConnectorConfig:
        row = await self.db.fetch_one("SELECT * FROM source_state WHERE source_id = ?", (config.source_id,))
        if row is None:
            return config
        last = row["last_successful_fetch"]
        return config.model_copy(update={
            "last_successful_fetch": datetime.fromisoformat(last) if last else None,
            "consecutive_failures": row["consecutive_failures"],
            "last_error": row["last_error"],
        })

    async def save_source_state(self, config: ConnectorConfig) -> None:
        await self.db.upsert(
            "source_state",
            {
                "source_id": config.source_id,
                "last_successful_fetch": iso(config.last_successful_fetch),
                "consecutive_failures": config.consecutive_failures,
                "last_error": config.last_error,
            },
            pk_columns=["source_id"],
        )


class InMemoryEvidenceStore(EvidenceStore):
    """Process-local store; every table is a list."""

    def __init__(self) -> None:
        self.evidence: List[EvidenceRecord] = []
        self.health: List[ConnectorHealthRecord] = []
        self.runs: List[IngestionRunReport] = []
        self.trends: List[TrendSnapshot] = []
        self.price_changes: List[PriceChangeEvent] = []
        self.insights: List[ProjectInsight] = []
        self.proposals: List[BenchmarkProposal] = []
        self.source_state: Dict[str, Dict[str, Any]] = {}

    async def create_evidence_record(self, record: EvidenceRecord) -> int:
        stored = record.model_copy(update={"id": len(self.evidence) + 1})
        self.evidence.append(stored)
        return stored.id

    async def get_evidence_record_by_id(self, record_id: int) -> Optional[EvidenceRecord]:
        for record in self.evidence:
            if record.id == record_id:
                return record
        return None

    async def evidence_exists(self, source_url: str, item_name: str, capture_day: str) -> bool:
        return any(
            r.source_url == source_url and r.item_name == item_name and day_key(r.capture_date) == capture_day
            for r in self.evidence
        )

    async def get_previous_evidence_record(
        self, item_name: str, source_id: str, before: datetime
    ) -> Optional[EvidenceRecord]:
        before = to_utc(before)
        candidates = [
            r for r in self.evidence
            if r.item_name == item_name and r.source_id == source_id and to_utc(r.capture_date) < before
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (to_utc(r.capture_date), r.id or 0))

    async def list_evidence(self, category: Optional[str] = None) -> List[EvidenceRecord]:
        rows = [r for r in self.evidence if category is None or r.category == category]
        return sorted(rows, key=lambda r: to_utc(r.capture_date))

    async def insert_connector_health(self, record: ConnectorHealthRecord) -> int:
        self.health.append(record)
        return len(self.health)

    async def insert_ingestion_run(self, report: IngestionRunReport) -> int:
        self.runs.append(report)
        return len(self.runs)

    async def insert_trend_snapshot(self, snapshot: TrendSnapshot) -> int:
        self.trends.append(snapshot)
        return len(self.trends)

    async def create_price_change_event(self, event: PriceChangeEvent) -> int:
        self.price_changes.append(event)
        return len(self.price_changes)

    async def insert_project_insight(self, insight: ProjectInsight) -> int:
        self.insights.append(insight)
        return len(self.insights)

    async def insert_benchmark_proposal(self, proposal: BenchmarkProposal) -> int:
        self.proposals.append(proposal)
        return len(self.proposals)

    async def load_source_state(self, config: ConnectorConfig) -> ConnectorConfig:
        state = self.source_state.get(config.source_id)
        return config.model_copy(update=state) if state else config

    async def save_source_state(self, config: ConnectorConfig) -> None:
        self.source_state[config.source_id] = {
            "last_successful_fetch": config.last_successful_fetch,
            "consecutive_failures": config.consecutive_failures,
            "last_error": config.last_error,
        }
