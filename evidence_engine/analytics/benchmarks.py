"""
Benchmark proposals: percentile bands recomputed from accumulated evidence.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from ..freshness import compute_freshness
from ..interfaces import EvidenceStore
from ..models import BenchmarkProposal, EvidenceRecord

logger = logging.getLogger(__name__)

GRADE_WEIGHTS = {"A": 3, "B": 2, "C": 1}
MIN_PUBLISH_RECORDS = 5
MIN_PUBLISH_SOURCES = 2
MIN_PUBLISH_CONFIDENCE = 40
DAYS_PER_MONTH = 30


@dataclass
class ProposalGenerationResult:
    run_id: str
    proposals_created: int = 0
    groups_analyzed: int = 0
    total_evidence: int = 0
    proposals: List[BenchmarkProposal] = field(default_factory=list)


def benchmark_key(record: EvidenceRecord) -> str:
    return f"{record.category}:{record.unit}"


def percentile(sorted_values: Sequence[float], q: float) -> float:
    """Value at index ``floor(n * q)``, clamped to the last element."""
    index = min(int(len(sorted_values) * q), len(sorted_values) - 1)
    return sorted_values[index]


def _price(record: EvidenceRecord) -> float:
    return record.price_typical if record.price_typical is not None else 0.0


def confidence_score(count: int, sources: int, grade_a: int, recent: int) -> int:
    score = 50
    if count >= 10:
        score += 15
    elif count >= 5:
        score += 10
    if sources >= 3:
        score += 15
    elif sources >= 2:
        score += 10
    if grade_a >= count * 0.5:
        score += 10
    if recent >= count * 0.5:
        score += 10
    return min(100, score)


def build_proposal(
    key: str,
    records: Sequence[EvidenceRecord],
    run_id: str,
    now: Optional[datetime] = None,
) -> Optional[BenchmarkProposal]:
    """Proposal for one benchmark group, or None if it has no positive prices."""
    now = now or datetime.now(timezone.utc)
    prices = sorted(p for p in (_price(r) for r in records) if p > 0)
    if not prices:
        return None

    p25 = percentile(prices, 0.25)
    p50 = percentile(prices, 0.50)
    p75 = percentile(prices, 0.75)

    weighted_sum = total_weight = 0.0
    for record in records:
        price = _price(record)
        if price <= 0:
            continue
        weight = GRADE_WEIGHTS.get(record.reliability_grade, 1) * compute_freshness(record.capture_date, now).weight
        weighted_sum += price * weight
        total_weight += weight
    weighted_mean = weighted_sum / total_weight if total_weight > 0 else p50

    reliability = {"A": 0, "B": 0, "C": 0}
    recency = {"recent": 0, "mid": 0, "old": 0}
    for record in records:
        reliability[record.reliability_grade] += 1
        months = compute_freshness(record.capture_date, now).age_days / DAYS_PER_MONTH
        if months <= 3:
            recency["recent"] += 1
        elif months <= 12:
            recency["mid"] += 1
        else:
            recency["old"] += 1

    diversity = len({r.source_id or r.source_url for r in records})
    count = len(records)
    confidence = confidence_score(count, diversity, reliability["A"], recency["recent"])

    recommendation, reason = "publish", None
    if count < MIN_PUBLISH_RECORDS:
        recommendation, reason = "reject", f"Insufficient sample size: {count} < {MIN_PUBLISH_RECORDS}"
    elif diversity < MIN_PUBLISH_SOURCES:
        recommendation, reason = "reject", f"Insufficient source diversity: {diversity} < {MIN_PUBLISH_SOURCES}"
    elif confidence < MIN_PUBLISH_CONFIDENCE:
        recommendation, reason = "reject", f"Low confidence score: {confidence}"

    return BenchmarkProposal(
        benchmark_key=key,
        proposed_p25=round(p25, 2),
        proposed_p50=round(p50, 2),
        proposed_p75=round(p75, 2),
        weighted_mean=round(weighted_mean, 2),
        evidence_count=count,
        source_diversity=diversity,
        reliability_dist=reliability,
        recency_dist=recency,
        confidence_score=confidence,
        recommendation=recommendation,
        rejection_reason=reason,
        run_id=run_id,
    )


async def generate_benchmark_proposals(
    store: EvidenceStore,
    *,
    category: Optional[str] = None,
    min_evidence_count: int = 3,
    ingestion_run_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProposalGenerationResult:
    run_id = f"PROP-{uuid.uuid4().hex[:8]}"
    evidence = await store.list_evidence(category)
    result = ProposalGenerationResult(run_id=run_id, total_evidence=len(evidence))
    if not evidence:
        return result

    groups: Dict[str, List[EvidenceRecord]] = {}
    for record in evidence:
        groups.setdefault(benchmark_key(record), []).append(record)
    result.groups_analyzed = len(groups)

    for key, records in groups.items():
        if len(records) < min_evidence_count:
            continue
        proposal = build_proposal(key, records, run_id, now)
        if proposal is None:
            continue
        try:
            proposal.id = await store.insert_benchmark_proposal(proposal)
        except Exception as e:
            logger.error(f"Failed to store proposal for {key}: {e}")
            continue
        result.proposals.append(proposal)
        result.proposals_created += 1

    logger.info(
        "Benchmark proposals %s: %d created from %d group(s) (ingestion run %s)",
        run_id, result.proposals_created, result.groups_analyzed, ingestion_run_id or "-",
    )
    return result
