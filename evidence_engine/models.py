"""
Core data models for the evidence ingestion engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def day_key(dt: datetime) -> str:
    """Duplicate-key day: the UTC calendar date as ``YYYY-MM-DD``."""
    return to_utc(dt).date().isoformat()


Grade = Literal["A", "B", "C"]
TriggerKind = Literal["manual", "scheduled", "api"]
ConnectorStatus = Literal["success", "partial", "failed"]

EvidenceCategory = Literal[
    "material_cost",
    "fitout_rate",
    "market_trend",
    "competitor_project",
    "project_award",
    "other",
]


class ErrorType(str, Enum):
    """Classification attached to every failed fetch, connector or item."""
    NETWORK = "network"
    DNS = "dns"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    BLOCKED = "blocked"
    ROBOTS_DISALLOWED = "robots_disallowed"
    EXTRACTION = "extraction"
    NORMALIZATION = "normalization"
    PERSISTENCE = "persistence"
    DOWNSTREAM = "downstream"
    UNKNOWN = "unknown"


# --------------------------------------------------------------------------- #
# Source configuration

DEFAULT_EXCLUDE_PATTERNS: List[str] = [
    r"\.pdf$", r"\.jpg$", r"\.jpeg$", r"\.png$", r"\.gif$", r"\.svg$", r"\.zip$",
    "/cart", "/checkout", "/login", "/register", "/account",
    "/privacy", "/terms", "/cookie", r"/sitemap\.xml",
    "#", "mailto:", "tel:", "javascript:",
]


class CrawlConfig(BaseModel):
    """Multi-page crawl limits for one source."""
    max_depth: int = Field(default=1, ge=0)
    page_budget: int = Field(default=3, ge=1)
    request_delay_s: float = Field(default=1.0, ge=0)
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))


class ConnectorConfig(BaseModel):
    """Identity and behavioural knobs for one source.

    Owned by the source registry; the orchestrator only touches the
    bookkeeping fields at the end of a run.
    """
    source_id: str
    source_name: str
    source_url: str
    kind: str = "catalog"
    category: EvidenceCategory = "material_cost"
    geography: str = "UAE"
    currency: str = "AED"
    source_type: Optional[str] = None
    schedule: Optional[str] = None
    enabled: bool = True
    render_js: bool = False
    request_delay_s: float = 0.0
    extraction_hints: str = ""
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)

    # bookkeeping
    last_successful_fetch: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None


# --------------------------------------------------------------------------- #
# Connector pipeline records

class RawPayload(BaseModel):
    """Result of one page fetch. Failures are encoded, never raised."""
    url: str
    fetched_at: datetime = Field(default_factory=utcnow)
    status_code: int = 0
    raw_html: Optional[str] = None
    raw_json: Optional[Any] = None
    rendered_text: Optional[str] = None
    rendered: bool = False
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    response_time_ms: Optional[int] = None
    content_length: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 0 < self.status_code < 400

    @property
    def content(self) -> str:
        """Best available textual content of the page."""
        return self.raw_html or self.rendered_text or ""


class ExtractedEvidence(BaseModel):
    """Candidate observation produced by ``Connector.extract``."""
    title: str = Field(min_length=1)
    raw_text: str = Field(min_length=1)
    published_date: Optional[datetime] = None
    category: EvidenceCategory
    geography: str = Field(min_length=1)
    source_url: str
    hints: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "raw_text", "geography")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("source_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"not an http(s) URL: {v!r}")
        return v


class NormalizedEvidence(BaseModel):
    """The unit persisted for every accepted evidence item."""
    metric: str = Field(min_length=1)
    value: Optional[float] = None
    unit: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    grade: Grade
    summary: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)


class EvidenceRecord(BaseModel):
    """A normalized observation plus provenance, as stored."""
    id: Optional[int] = None
    record_id: str
    source_id: str
    source_url: str
    category: str
    geography: str = "UAE"
    item_name: str
    price_typical: Optional[float] = None
    unit: str = "unit"
    currency: str = "AED"
    capture_date: datetime
    reliability_grade: Grade = "C"
    confidence_score: int = Field(default=20, ge=0, le=100)
    extracted_snippet: str = ""
    publisher: str = ""
    title: str = ""
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# --------------------------------------------------------------------------- #
# Run bookkeeping

class ConnectorResult(BaseModel):
    source_id: str
    source_name: str
    status: ConnectorStatus
    evidence_extracted: int = 0
    evidence_created: int = 0
    evidence_skipped: int = 0
    evidence_failed: int = 0
    pages_fetched: int = 0
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    content_length: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class RunError(BaseModel):
    source_id: str
    source_name: str
    error: str
    error_type: Optional[ErrorType] = None


class IngestionRunReport(BaseModel):
    run_id: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    triggered_by: TriggerKind
    actor_id: Optional[int] = None
    status: Literal["completed", "failed"]
    sources_attempted: int
    sources_succeeded: int
    sources_failed: int
    evidence_extracted: int
    evidence_created: int
    evidence_skipped: int
    errors: List[RunError] = Field(default_factory=list)
    per_source: List[ConnectorResult] = Field(default_factory=list)
    downstream: Dict[str, Any] = Field(default_factory=dict)


class ConnectorHealthRecord(BaseModel):
    run_id: str
    source_id: str
    source_name: str
    status: ConnectorStatus
    http_status: Optional[int] = None
    response_time_ms: Optional[int] = None
    content_length: Optional[int] = None
    records_extracted: int = 0
    records_inserted: int = 0
    duplicates_skipped: int = 0
    error_message: Optional[str] = None
    error_type: Optional[ErrorType] = None
    created_at: datetime = Field(default_factory=utcnow)


# --------------------------------------------------------------------------- #
# Change detection

class PriceChangeEvent(BaseModel):
    id: Optional[int] = None
    item_name: str
    category: str
    source_id: str
    previous_price: float
    new_price: float
    change_pct: float
    change_direction: Literal["increased", "decreased"]
    severity: Literal["minor", "notable", "significant"]
    detected_at: datetime


class ProjectInsight(BaseModel):
    id: Optional[int] = None
    insight_type: str
    severity: Literal["info", "warning", "critical"]
    title: str
    body: str
    actionable_recommendation: Optional[str] = None
    confidence_score: float = 0.85
    data_points: List[Dict[str, str]] = Field(default_factory=list)
    trigger_condition: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# --------------------------------------------------------------------------- #
# Trend analytics

class DataPoint(BaseModel):
    date: datetime
    value: float
    grade: Grade = "C"
    source_id: str = "unknown"
    record_id: Optional[int] = None


class MovingAveragePoint(BaseModel):
    date: datetime
    value: float
    ma: float


class AnomalyFlag(BaseModel):
    date: datetime
    value: float
    expected_ma: float
    deviation_multiple: float
    record_id: Optional[int] = None
    source_id: str


TrendDirection = Literal["rising", "falling", "stable", "insufficient_data"]
TrendConfidence = Literal["high", "medium", "low", "insufficient"]


class DirectionResult(BaseModel):
    direction: TrendDirection
    current_ma: Optional[float] = None
    previous_ma: Optional[float] = None
    percent_change: Optional[float] = None


class TrendSnapshot(BaseModel):
    metric: str
    category: str
    geography: str
    data_point_count: int
    grade_a_count: int
    grade_b_count: int
    grade_c_count: int
    unique_sources: int
    date_range_start: Optional[datetime] = None
    date_range_end: Optional[datetime] = None
    current_ma: Optional[float] = None
    previous_ma: Optional[float] = None
    percent_change: Optional[float] = None
    direction: TrendDirection
    anomalies: List[AnomalyFlag] = Field(default_factory=list)
    confidence: TrendConfidence
    moving_averages: List[MovingAveragePoint] = Field(default_factory=list)


# --------------------------------------------------------------------------- #
# Benchmarks

class BenchmarkProposal(BaseModel):
    id: Optional[int] = None
    benchmark_key: str
    proposed_p25: float
    proposed_p50: float
    proposed_p75: float
    weighted_mean: float
    evidence_count: int
    source_diversity: int
    reliability_dist: Dict[str, int]
    recency_dist: Dict[str, int]
    confidence_score: int
    recommendation: Literal["publish", "reject"]
    rejection_reason: Optional[str] = None
    run_id: str
