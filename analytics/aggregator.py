"""
Metric Aggregator
==================

Pure functions that turn ExternalRecords into per-bucket values and
per-range totals. Dispatch is always on MetricDefinition.kind.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from analytics.metrics import MetricDefinition, MetricKind
from analytics.periods import Period
from analytics.records import ZERO, ExternalRecord, quantize

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Observation:
    """A stock value as of a given day."""
    as_of: date
    value: Decimal
    count: Optional[Optional[int]] = None


def flow_value(records: Iterable[ExternalRecord], period: Period, category: str) -> Tuple[Decimal, int]:
    """Sum of amounts (and number of records) for `category` inside the period."""
    total = ZERO
    count = 0
    for record in records:
        if record.category == category and period.contains(record.timestamp):
            total += record.amount
            count += 1
    return total, count


def observations_from_records(records: Iterable[ExternalRecord], category: str) -> List[Observation]:
    """Group live stock records by their as-of day into observations."""
    grouped: Dict[date, List[Decimal]] = defaultdict(list)
    for record in records:
        if record.category == category:
            grouped[record.timestamp].append(record.amount)
    return sorted(
        (Observation(day, sum(amounts, ZERO), len(amounts)) for day, amounts in grouped.items()),
        key=lambda o: o.as_of,
    )


def stock_value(observations: Sequence[Observation], period: Period) -> Optional[Observation]:
    """The observation closest to, at or before, the end of the period."""
    best = None
    for observation in observations:
        if observation.as_of <= period.end and (best is None or observation.as_of >= best.as_of):
            best = observation
    return best


def ratio_value(base: Decimal, less: Decimal) -> Decimal:
    """(base - less) / base as a percentage; zero when base is not positive."""
    if base <= ZERO:
        return ZERO
    return quantize((base - less) / base * HUNDRED)


def period_total(
    metric: MetricDefinition,
    bucket_values: Sequence[Decimal],
    totals: Optional[Dict[str, Decimal]] = None,
) -> Decimal:
    """
    Range-level total for display.

    flow  -> sum of buckets
    stock -> last bucket (summing a stock double counts)
    ratio -> recomputed from the totals of its flow components
    """
    if metric.kind is MetricKind.FLOW:
        return sum(bucket_values, ZERO)
    if metric.kind is MetricKind.STOCK:
        return bucket_values[-1] if bucket_values else ZERO

    base_key, less_key = metric.components
    totals = totals or {}
    return ratio_value(totals.get(base_key, ZERO), totals.get(less_key, ZERO))


def ratio_series(
    metric: MetricDefinition,
    values: Dict[str, List[Decimal]],
) -> List[Decimal]:
    """Per-bucket ratio values from already-computed component series."""
    base_key, less_key = metric.components
    return [
        ratio_value(base, less)
        for base, less in zip(values[base_key], values[less_key])
    ]


def compute_totals(
    metrics: Iterable[MetricDefinition],
    values: Dict[str, List[Decimal]],
) -> Dict[str, Decimal]:
    """Totals for every metric; ratios after the flows they depend on."""
    metrics = list(metrics)
    totals: Dict[str, Decimal] = {}
    for metric in metrics:
        if metric.kind is not MetricKind.RATIO and metric.key in values:
            totals[metric.key] = period_total(metric, values[metric.key])
    for metric in metrics:
        if metric.kind is MetricKind.RATIO and metric.key in values:
            totals[metric.key] = period_total(metric, values[metric.key], totals)
    return totals
