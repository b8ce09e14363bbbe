"""
Core interfaces for the evidence ingestion engine.

Connectors implement ``fetch`` / ``extract`` / ``normalize``; the optional
collaborators (text extraction, headless rendering) come with null objects so
call sites never branch on availability.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .models import (
    ConnectorConfig,
    ConnectorHealthRecord,
    EvidenceRecord,
    ExtractedEvidence,
    IngestionRunReport,
    NormalizedEvidence,
    PriceChangeEvent,
    ProjectInsight,
    RawPayload,
    TrendSnapshot,
    BenchmarkProposal,
)

if TYPE_CHECKING:  # pragma: no cover
    from .infra.fetch import PageFetcher


# --------------------------------------------------------------------------- #
# Optional collaborators

class TextExtractor(ABC):
    """Best-effort structured extraction: prompt in, JSON out."""

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def extract_structured(self, prompt: str, schema_hint: str = "") -> Any:
        """Return parsed JSON for *prompt*, or raise on transport/format errors."""
        ...


class NullTextExtractor(TextExtractor):
    """Used when no extraction service is configured; yields nothing."""

    @property
    def available(self) -> bool:
        return False

    async def extract_structured(self, prompt: str, schema_hint: str = "") -> Any:
        return []


class Renderer(ABC):
    """Headless browser that returns rendered page text for a URL."""

    @abstractmethod
    async def render(self, url: str) -> Optional[str]:
        """Rendered content, or None when unavailable."""
        ...

    async def close(self) -> None:
        pass


class NullRenderer(Renderer):
    async def render(self, url: str) -> Optional[str]:
        return None


# --------------------------------------------------------------------------- #
# Persistence contract

class EvidenceStore(ABC):
    """CRUD-style persistence consumed by the engine.

    Return values are treated as opaque identifiers.
    """

    @abstractmethod
    async def create_evidence_record(self, record: EvidenceRecord) -> int: ...

    @abstractmethod
    async def get_evidence_record_by_id(self, record_id: int) -> Optional[EvidenceRecord]: ...

    @abstractmethod
    async def evidence_exists(self, source_url: str, item_name: str, capture_day: str) -> bool:
        """True if a record with the same url, item and ``YYYY-MM-DD`` day exists."""
        ...

    @abstractmethod
    async def get_previous_evidence_record(
        self, item_name: str, source_id: str, before: datetime
    ) -> Optional[EvidenceRecord]: ...

    @abstractmethod
    async def list_evidence(self, category: Optional[str] = None) -> List[EvidenceRecord]: ...

    @abstractmethod
    async def insert_connector_health(self, record: ConnectorHealthRecord) -> int: ...

    @abstractmethod
    async def insert_ingestion_run(self, report: IngestionRunReport) -> int: ...

    @abstractmethod
    async def insert_trend_snapshot(self, snapshot: TrendSnapshot) -> int: ...

    @abstractmethod
    async def create_price_change_event(self, event: PriceChangeEvent) -> int: ...

    @abstractmethod
    async def insert_project_insight(self, insight: ProjectInsight) -> int: ...

    @abstractmethod
    async def insert_benchmark_proposal(self, proposal: BenchmarkProposal) -> int: ...

    async def load_source_state(self, config: ConnectorConfig) -> ConnectorConfig:
        """Fill bookkeeping fields of *config* from storage, if kept."""
        return config

    async def save_source_state(self, config: ConnectorConfig) -> None:
        pass

    async def close(self) -> None:
        pass


# --------------------------------------------------------------------------- #
# Connector contract

@dataclass
class ConnectorContext:
    """Shared services handed to every connector built for one run."""
    fetcher: "PageFetcher"
    extractor: TextExtractor = field(default_factory=NullTextExtractor)


class Connector(ABC):
    """A source-specific adapter: fetch, extract, normalize."""

    def __init__(self, config: ConnectorConfig, context: Optional[ConnectorContext] = None) -> None:
        self.config = config
        self.context = context

    @property
    @abstractmethod
    def kind(self) -> str:
        """Registry key for this connector class."""
        pass

    @property
    def source_id(self) -> str:
        return self.config.source_id

    @property
    def source_name(self) -> str:
        return self.config.source_name

    @abstractmethod
    async def fetch(self) -> RawPayload:
        """Fetch the source landing page. Must not raise."""
        pass

    async def fetch_pages(self) -> "PageBatch":
        """Fetch every page this connector reads in one run.

        Single-page connectors return the landing page; crawling connectors
        override this.
        """
        payload = await self.fetch()
        return PageBatch(pages=[payload])

    @abstractmethod
    async def extract(self, raw: RawPayload) -> List[ExtractedEvidence]:
        pass

    @abstractmethod
    async def normalize(self, evidence: ExtractedEvidence) -> NormalizedEvidence:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.source_id}>"


@dataclass
class PageBatch:
    """Pages fetched by one connector plus per-page failures that did not stop it."""
    pages: List[RawPayload]
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def first(self) -> Optional[RawPayload]:
        return self.pages[0] if self.pages else None
