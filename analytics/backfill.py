"""
Historical Backfill
====================

Stock metrics (pipeline value) can only be observed live: the CRM reports
what is in a stage *now*, not what was there last March. Each time the
aggregator runs it records the live value against the bucket containing
today, so history accumulates. Buckets older than the first recorded
observation get a deterministic ramp towards it (the anchor, k its index):

    progress = i / k                            # 0 oldest .. 1 at the anchor
    value    = A * (baseline + growth * progress)

With no observation inside the range (a past window) the ramp runs over
all N buckets towards the live value V instead, and value[N-1] = V.

Same inputs always give the same series, and it never rises above an
anchor before reaching it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from analytics.aggregator import Observation, stock_value
from analytics.periods import Period
from analytics.records import ZERO, Snapshot, SnapshotOrigin, quantize


@dataclass(frozen=True)
class BackfillPolicy:
    baseline: Decimal = Decimal("0.3")
    growth: Decimal = Decimal("0.7")

    @classmethod
    def from_settings(cls, settings) -> "BackfillPolicy":
        return cls(
            baseline=Decimal(str(settings.backfill_baseline)),
            growth=Decimal(str(settings.backfill_growth)),
        )

    def ramp_value(self, current: Decimal, index: int, total: int) -> Decimal:
        """Synthetic value for bucket `index` of `total`, ending exactly at `current`."""
        if total <= 1 or index >= total - 1:
            return quantize(max(current, ZERO))
        progress = Decimal(index) / Decimal(total - 1)
        value = current * (self.baseline + self.growth * progress)
        return quantize(max(value, ZERO))


@dataclass(frozen=True)
class StockPoint:
    value: Decimal
    origin: SnapshotOrigin
    count: Optional[int] = None
    observed_on: Optional[date] = None


def cached_observations(
    periods: Sequence[Period],
    cached: Dict[date, Snapshot],
) -> List[Observation]:
    """Observed snapshots (keyed by period start) as stock observations."""
    observations = []
    for period in periods:
        snapshot = cached.get(period.start)
        if snapshot is None or snapshot.origin is not SnapshotOrigin.OBSERVED:
            continue
        as_of = snapshot.observed_on or min(snapshot.cached_at.date(), period.end)
        observations.append(Observation(as_of, snapshot.value, snapshot.count))
    return observations


def fill_stock_series(
    periods: Sequence[Period],
    live: Optional[Observation],
    cached: Dict[date, Snapshot],
    policy: BackfillPolicy,
) -> List[StockPoint]:
    """
    One StockPoint per period.

    Observed values (live or previously cached) win; the closest one at or
    before a period's end is used. Periods before the first observed bucket
    ramp towards that observation. With nothing observed inside the range
    they ramp towards the live value, and are zero placeholders when the
    live value is unknown too.
    """
    observations = cached_observations(periods, cached)
    if live is not None:
        observations.append(live)

    observed = [stock_value(observations, period) for period in periods]
    anchor_index = next((i for i, o in enumerate(observed) if o is not None), None)
    if anchor_index is not None:
        target, ramp_length = observed[anchor_index].value, anchor_index + 1
    elif live is not None:
        target, ramp_length = live.value, len(periods)
    else:
        target, ramp_length = None, 0

    points = []
    for index, observation in enumerate(observed):
        if observation is not None:
            points.append(StockPoint(
                quantize(observation.value), SnapshotOrigin.OBSERVED,
                observation.count, observation.as_of,
            ))
        elif target is not None:
            points.append(StockPoint(
                policy.ramp_value(target, index, ramp_length), SnapshotOrigin.SYNTHETIC,
            ))
        else:
            points.append(StockPoint(ZERO, SnapshotOrigin.PLACEHOLDER))
    return points
