"""
Price change detection against the previous observation of the same item
from the same source.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .interfaces import EvidenceStore
from .models import EvidenceRecord, PriceChangeEvent, ProjectInsight, utcnow

logger = logging.getLogger(__name__)

# (minimum |change %|, severity), checked top-down; 0.0 means any non-zero change.
SEVERITY_TIERS: Tuple[Tuple[float, str], ...] = (
    (10.0, "significant"),
    (5.0, "notable"),
    (0.0, "minor"),
)

INSIGHT_SEVERITY = {"significant": "critical", "notable": "warning"}
INSIGHT_CONFIDENCE = 0.85


def classify_severity(change_pct: float) -> Optional[str]:
    magnitude = abs(change_pct)
    if magnitude == 0:
        return None
    for threshold, tier in SEVERITY_TIERS:
        if magnitude >= threshold:
            return tier
    return None


def _as_price(value: object) -> Optional[float]:
    try:
        price = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) else None


@dataclass
class ChangeOutcome:
    event: PriceChangeEvent
    event_id: int
    insight_id: Optional[int] = None


def build_insight(event: PriceChangeEvent) -> Optional[ProjectInsight]:
    """Spike/drop insight for notable and significant changes."""
    severity = INSIGHT_SEVERITY.get(event.severity)
    if severity is None:
        return None

    increased = event.change_direction == "increased"
    pct = abs(event.change_pct)
    if increased:
        insight_type = "cost_pressure"
        title = f"Price Spike Detected: {event.item_name}"
        recommendation = (
            f"Review budgets and open procurement for {event.item_name}; "
            f"consider locking current supplier quotes."
        )
    else:
        insight_type = "market_opportunity"
        title = f"Price Drop Detected: {event.item_name}"
        recommendation = f"Consider accelerating procurement of {event.item_name} while prices are lower."

    body = (
        f"{event.item_name} ({event.category}) {event.change_direction} by {pct:.1f}% "
        f"from AED {event.previous_price:,.2f} to AED {event.new_price:,.2f} "
        f"(source: {event.source_id})."
    )
    return ProjectInsight(
        insight_type=insight_type,
        severity=severity,
        title=title,
        body=body,
        actionable_recommendation=recommendation,
        confidence_score=INSIGHT_CONFIDENCE,
        data_points=[
            {"label": "Previous Price", "value": f"AED {event.previous_price:,.2f}"},
            {"label": "New Price", "value": f"AED {event.new_price:,.2f}"},
            {"label": "Change", "value": f"{event.change_pct:+.1f}%"},
            {"label": "Source", "value": event.source_id},
        ],
        trigger_condition=f"price_change_{event.severity}",
    )


async def detect_price_change(store: EvidenceStore, record: EvidenceRecord) -> Optional[ChangeOutcome]:
    """Compare *record* with the latest earlier record for the same item and source.

    Returns None when there is no usable previous value or nothing changed.
    """
    new_price = _as_price(record.price_typical)
    if new_price is None or not record.source_id:
        return None

    previous = await store.get_previous_evidence_record(record.item_name, record.source_id, record.capture_date)
    if previous is None:
        return None
    prev_price = _as_price(previous.price_typical)
    if prev_price is None or prev_price == 0:
        return None

    change_pct = (new_price - prev_price) / abs(prev_price) * 100
    severity = classify_severity(change_pct)
    if severity is None:
        return None

    event = PriceChangeEvent(
        item_name=record.item_name,
        category=record.category,
        source_id=record.source_id,
        previous_price=prev_price,
        new_price=new_price,
        change_pct=round(change_pct, 4),
        change_direction="increased" if change_pct > 0 else "decreased",
        severity=severity,
        detected_at=utcnow(),
    )
    event_id = await store.create_price_change_event(event)
    logger.info(
        "Price %s %.2f%% for %s (%s): %s",
        event.change_direction, abs(change_pct), record.item_name, record.source_id, severity,
    )

    outcome = ChangeOutcome(event=event, event_id=event_id)
    insight = build_insight(event)
    if insight is not None:
        outcome.insight_id = await store.insert_project_insight(insight)
    return outcome
