"""
Trend detection over evidence time series.

Moving averages, direction change, anomaly flagging and confidence tiering
are pure functions of the points passed in. ``recompute_trends`` groups
stored evidence and persists one snapshot per series.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..interfaces import EvidenceStore
from ..models import (
    AnomalyFlag,
    DataPoint,
    DirectionResult,
    EvidenceRecord,
    MovingAveragePoint,
    TrendSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_MA_WINDOW_DAYS = 30
DIRECTION_CHANGE_THRESHOLD = 0.05
ANOMALY_STD_DEV_THRESHOLD = 2.0

# (min points, min grade-A points, tier), checked top-down.
CONFIDENCE_TIERS: Tuple[Tuple[int, int, str], ...] = (
    (15, 2, "high"),
    (8, 0, "medium"),
    (5, 0, "low"),
)


def _key(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _sorted(points: Sequence[DataPoint]) -> List[DataPoint]:
    return sorted(points, key=lambda p: _key(p.date))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


# --------------------------------------------------------------------------- #
# Core computations

def compute_moving_average(points: Sequence[DataPoint], window_days: int = DEFAULT_MA_WINDOW_DAYS) -> List[MovingAveragePoint]:
    """Trailing mean over ``[date - window_days, date]`` for every point, in date order."""
    ordered = _sorted(points)
    window = timedelta(days=window_days)
    result = []
    for point in ordered:
        end = _key(point.date)
        start = end - window
        in_window = [p.value for p in ordered if start <= _key(p.date) <= end]
        ma = _mean(in_window) if in_window else point.value
        result.append(MovingAveragePoint(date=point.date, value=point.value, ma=round(ma, 2)))
    return result


def detect_direction_change(points: Sequence[DataPoint], window_days: int = DEFAULT_MA_WINDOW_DAYS) -> DirectionResult:
    if len(points) < 2:
        return DirectionResult(direction="insufficient_data")

    ordered = _sorted(points)
    latest = _key(ordered[-1].date)
    window = timedelta(days=window_days)
    current_start = latest - window
    previous_start = latest - 2 * window

    current = [p.value for p in ordered if current_start <= _key(p.date) <= latest]
    previous = [p.value for p in ordered if previous_start <= _key(p.date) < current_start]

    current_ma = _mean(current)
    if not previous:
        return DirectionResult(direction="stable", current_ma=round(current_ma, 2))

    previous_ma = _mean(previous)
    if previous_ma == 0:
        return DirectionResult(direction="stable", current_ma=round(current_ma, 2), previous_ma=0.0)

    pct = (current_ma - previous_ma) / abs(previous_ma)
    if pct > DIRECTION_CHANGE_THRESHOLD:
        direction = "rising"
    elif pct < -DIRECTION_CHANGE_THRESHOLD:
        direction = "falling"
    else:
        direction = "stable"

    return DirectionResult(
        direction=direction,
        current_ma=round(current_ma, 2),
        previous_ma=round(previous_ma, 2),
        percent_change=round(pct, 4),
    )


def flag_anomalies(
    points: Sequence[DataPoint],
    ma_points: Optional[Sequence[MovingAveragePoint]] = None,
    threshold: float = ANOMALY_STD_DEV_THRESHOLD,
    window_days: int = DEFAULT_MA_WINDOW_DAYS,
) -> List[AnomalyFlag]:
    """Points whose distance from their moving average exceeds *threshold* residual std devs.

    *ma_points* must be in date order, as returned by ``compute_moving_average``.
    """
    if len(points) < 3:
        return []
    if ma_points is None:
        ma_points = compute_moving_average(points, window_days)
    if not ma_points:
        return []

    residuals = [m.value - m.ma for m in ma_points]
    mean_residual = _mean(residuals)
    std = math.sqrt(_mean([(r - mean_residual) ** 2 for r in residuals]))
    if std == 0:
        return []

    anomalies = []
    for point, ma in zip(_sorted(points), ma_points):
        multiple = abs(point.value - ma.ma) / std
        if multiple > threshold:
            anomalies.append(AnomalyFlag(
                date=point.date,
                value=point.value,
                expected_ma=ma.ma,
                deviation_multiple=round(multiple, 2),
                record_id=point.record_id,
                source_id=point.source_id,
            ))
    return anomalies


def assess_confidence(data_point_count: int, grade_a_count: int) -> str:
    for min_points, min_grade_a, tier in CONFIDENCE_TIERS:
        if data_point_count >= min_points and grade_a_count >= min_grade_a:
            return tier
    return "insufficient"


def detect_trends(
    metric: str,
    category: str,
    geography: str,
    points: Sequence[DataPoint],
    window_days: int = DEFAULT_MA_WINDOW_DAYS,
) -> TrendSnapshot:
    ordered = _sorted(points)
    grades = {g: sum(1 for p in ordered if p.grade == g) for g in ("A", "B", "C")}
    ma_points = compute_moving_average(ordered, window_days)
    direction = detect_direction_change(ordered, window_days)

    return TrendSnapshot(
        metric=metric,
        category=category,
        geography=geography,
        data_point_count=len(ordered),
        grade_a_count=grades["A"],
        grade_b_count=grades["B"],
        grade_c_count=grades["C"],
        unique_sources=len({p.source_id for p in ordered}),
        date_range_start=ordered[0].date if ordered else None,
        date_range_end=ordered[-1].date if ordered else None,
        current_ma=direction.current_ma,
        previous_ma=direction.previous_ma,
        percent_change=direction.percent_change,
        direction=direction.direction,
        anomalies=flag_anomalies(ordered, ma_points),
        confidence=assess_confidence(len(ordered), grades["A"]),
        moving_averages=ma_points,
    )


# --------------------------------------------------------------------------- #
# Recomputation over stored evidence

def group_series(records: Sequence[EvidenceRecord]) -> Dict[Tuple[str, str, str], List[DataPoint]]:
    """Priced records as data points keyed by (metric, category, geography)."""
    groups: Dict[Tuple[str, str, str], List[DataPoint]] = {}
    for record in records:
        value = record.price_typical
        if value is None or not math.isfinite(value):
            continue
        key = (record.item_name, record.category, record.geography)
        groups.setdefault(key, []).append(DataPoint(
            date=record.capture_date,
            value=value,
            grade=record.reliability_grade,
            source_id=record.source_id or "unknown",
            record_id=record.id,
        ))
    return groups


async def recompute_trends(
    store: EvidenceStore,
    category: Optional[str] = None,
    window_days: int = DEFAULT_MA_WINDOW_DAYS,
) -> List[TrendSnapshot]:
    """Recompute and persist a snapshot for every series with at least two points."""
    records = await store.list_evidence(category)
    snapshots = []
    for (metric, cat, geography), points in sorted(group_series(records).items()):
        if len(points) < 2:
            continue
        snapshot = detect_trends(metric, cat, geography, points, window_days)
        await store.insert_trend_snapshot(snapshot)
        snapshots.append(snapshot)
    logger.info(f"Recomputed {len(snapshots)} trend snapshot(s) from {len(records)} record(s)")
    return snapshots
