"""
Source adapter contract.
Each external system (deal pipeline, accounting) implements this, and the
aggregation service never sees vendor field names.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from analytics.metrics import MetricDefinition, MetricKind
from analytics.records import ExternalRecord


class SourceAdapter(ABC):
    """One implementation per external system."""

    #: Registry `source` value served by this adapter.
    name: str = ""

    #: True when calls share a hard quota and must run one at a time.
    sequential: bool = False

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Credentials present (does not prove they are valid)."""

    @abstractmethod
    def flow_categories(self) -> List[str]:
        """Record categories this adapter can fetch per period."""

    def stock_categories(self) -> List[str]:
        """Record categories this adapter can observe live."""
        return []

    @abstractmethod
    async def fetch_categories(
        self,
        categories: Sequence[str],
        period_start: date,
        period_end: date,
    ) -> List[ExternalRecord]:
        """
        Records of the given categories dated within [period_start, period_end].

        Raises:
            FetchError: this call failed; other periods may still succeed.
            ConfigurationError, APIAuthError: the source is unusable.
        """

    async def fetch_records(
        self,
        metric: MetricDefinition,
        period_start: date,
        period_end: date,
        as_of: Optional[date] = None,
    ) -> List[ExternalRecord]:
        """
        Records for one metric in one period.

        Stock metrics are read live and stamped `as_of` (default: today, UTC),
        never `period_end`, so a past period cannot backdate the live value.
        """
        if metric.kind is MetricKind.RATIO:
            raise ValueError(f"'{metric.key}' is derived and has no records of its own")
        if metric.kind is MetricKind.STOCK:
            return await self.fetch_current([metric.category], as_of or datetime.now(timezone.utc).date())
        return await self.fetch_categories([metric.category], period_start, period_end)

    async def fetch_current(self, categories: Sequence[str], as_of: date) -> List[ExternalRecord]:
        """Live stock observations, stamped `as_of`."""
        return []

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "configured": self.is_configured,
            "sequential": self.sequential,
            "categories": self.flow_categories() + self.stock_categories(),
        }

    async def close(self) -> None:
        """Release network resources."""
