"""Shared fixtures and fakes for the evidence engine test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from evidence_engine.infra.store import InMemoryEvidenceStore
from evidence_engine.interfaces import Connector, TextExtractor
from evidence_engine.models import (
    ConnectorConfig,
    EvidenceRecord,
    ErrorType,
    ExtractedEvidence,
    NormalizedEvidence,
    RawPayload,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers requested delays."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class FakeExtractor(TextExtractor):
    def __init__(self, response: Any = None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.prompts: List[str] = []

    async def extract_structured(self, prompt: str, schema_hint: str = "") -> Any:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


class FakeConnector(Connector):
    """Connector whose stages are driven by plain callables."""

    kind = "fake"

    def __init__(
        self,
        source_id: str,
        *,
        items: Optional[List[Dict[str, Any]]] = None,
        payload: Optional[RawPayload] = None,
        extract_error: Optional[Exception] = None,
        normalize: Optional[Callable[[ExtractedEvidence], Any]] = None,
        on_fetch: Optional[Callable[[], Any]] = None,
    ) -> None:
        super().__init__(ConnectorConfig(
            source_id=source_id,
            source_name=f"Source {source_id}",
            source_url=f"https://{source_id}.example.com/",
        ))
        self.items = items or []
        self.payload = payload
        self.extract_error = extract_error
        self._normalize = normalize
        self.on_fetch = on_fetch

    async def fetch(self) -> RawPayload:
        if self.on_fetch is not None:
            await self.on_fetch()
        if self.payload is not None:
            return self.payload
        return RawPayload(url=self.config.source_url, status_code=200, raw_html="<html></html>",
                          fetched_at=NOW, content_length=13)

    async def extract(self, raw: RawPayload) -> List[ExtractedEvidence]:
        if self.extract_error is not None:
            raise self.extract_error
        return [
            ExtractedEvidence(
                title=item["title"],
                raw_text=item.get("text", item["title"]),
                category=item.get("category", "material_cost"),
                geography="UAE",
                source_url=item.get("url", raw.url),
                published_date=item.get("published"),
                hints={"value": item.get("value")},
            )
            for item in self.items
        ]

    async def normalize(self, evidence: ExtractedEvidence) -> NormalizedEvidence:
        if self._normalize is not None:
            return self._normalize(evidence)
        return NormalizedEvidence(
            metric=evidence.title,
            value=evidence.hints.get("value"),
            unit="sqm",
            confidence=0.7,
            grade="B",
            summary=evidence.raw_text,
        )


def failed_payload(url: str, error_type: ErrorType = ErrorType.HTTP_ERROR, status: int = 503) -> RawPayload:
    return RawPayload(url=url, status_code=status, error=f"HTTP {status}", error_type=error_type)


def make_record(
    item_name: str = "Porcelain Tile 60x60",
    price: Optional[float] = 100.0,
    *,
    days_ago: int = 0,
    source_id: str = "rak-ceramics-uae",
    category: str = "material_cost",
    unit: str = "sqm",
    grade: str = "B",
    now: datetime = NOW,
) -> EvidenceRecord:
    return EvidenceRecord(
        record_id=f"EV-{item_name[:4]}-{days_ago}",
        source_id=source_id,
        source_url=f"https://{source_id}.example.com/",
        category=category,
        item_name=item_name,
        price_typical=price,
        unit=unit,
        capture_date=now - timedelta(days=days_ago),
        reliability_grade=grade,
        confidence_score=70,
    )


@pytest.fixture
def store() -> InMemoryEvidenceStore:
    return InMemoryEvidenceStore()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
