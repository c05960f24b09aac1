"""
Value types shared by the adapters, the aggregator and the snapshot cache.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse an external amount. Empty means zero; garbage means None."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        parsed = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def quantize(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES)


@dataclass(frozen=True)
class ExternalRecord:
    """One unit of data from an external source (a deal, a P&L line)."""
    amount: Decimal
    timestamp: date
    category: str
    reference: Optional[str] = None


class SnapshotOrigin(str, Enum):
    OBSERVED = "observed"          # computed from real external data
    SYNTHETIC = "synthetic"        # backfilled ramp value
    PLACEHOLDER = "placeholder"    # zero standing in for a failed fetch


@dataclass(frozen=True)
class SnapshotKey:
    period_start: date
    granularity: str
    metric_key: str


@dataclass(frozen=True)
class Snapshot:
    """Cached value for one (period, metric) pair."""
    metric_key: str
    period_start: date
    granularity: str
    value: Decimal
    cached_at: datetime
    count: Optional[int] = None
    origin: SnapshotOrigin = SnapshotOrigin.OBSERVED
    observed_on: Optional[date] = None
    period_end: Optional[date] = None

    def covers(self, period_end: date) -> bool:
        """False when the snapshot was taken for a differently truncated bucket."""
        return self.period_end is None or self.period_end == period_end

    @property
    def key(self) -> SnapshotKey:
        return SnapshotKey(self.period_start, self.granularity, self.metric_key)
