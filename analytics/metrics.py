"""
Metric registry.

Every metric is declared once with its kind, and the aggregator dispatches
on that kind:

    STOCK  - amount as of a point in time (pipeline value). Range total is
             the last bucket, never a sum.
    FLOW   - amount accumulated within an interval (money won, revenue).
             Range total is the sum of buckets.
    RATIO  - percentage derived from two flow metrics of the same source
             (gross margin). Range total is recomputed from the summed
             components.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from scripts.lib.errors import ConfigurationError


class MetricKind(str, Enum):
    STOCK = "stock"
    FLOW = "flow"
    RATIO = "ratio"


class MetricUnit(str, Enum):
    CURRENCY = "currency"
    PERCENT = "percent"


@dataclass(frozen=True)
class MetricDefinition:
    key: str
    label: str
    kind: MetricKind
    source: str
    category: Optional[Optional[str]] = None
    unit: MetricUnit = MetricUnit.CURRENCY
    period_label: Optional[Optional[str]] = None
    display: bool = True
    components: Optional[Optional[Tuple[str, str]]] = None  # RATIO: (base_key, less_key)

    def label_for(self, filtered: bool) -> str:
        if filtered and self.period_label:
            return self.period_label
        return self.label


class MetricRegistry:
    """Ordered mapping of metric key -> definition."""

    def __init__(self, metrics: Optional[List[MetricDefinition]] = None):
        self._metrics: Dict[str, MetricDefinition] = {}
        for metric in metrics or []:
            self.register(metric)

    def register(self, metric: MetricDefinition) -> MetricDefinition:
        if metric.key in self._metrics:
            raise ConfigurationError(f"Metric '{metric.key}' registered twice")

        if metric.kind is MetricKind.RATIO:
            if not metric.components:
                raise ConfigurationError(
                    f"Ratio metric '{metric.key}' needs (base, less) components",
                )
            for component in metric.components:
                other = self._metrics.get(component)
                if other is None or other.kind is not MetricKind.FLOW:
                    raise ConfigurationError(
                        f"Ratio metric '{metric.key}' component '{component}' "
                        f"must be a flow metric registered earlier",
                    )
                if other.source != metric.source:
                    raise ConfigurationError(
                        f"Ratio metric '{metric.key}' mixes sources",
                    )
        elif not metric.category:
            raise ConfigurationError(
                f"{metric.kind.value.title()} metric '{metric.key}' needs a record category",
            )

        self._metrics[metric.key] = metric
        return metric

    def get(self, key: str) -> MetricDefinition:
        try:
            return self._metrics[key]
        except KeyError:
            raise KeyError(f"Unknown metric: {key}") from None

    def __contains__(self, key: str) -> bool:
        return key in self._metrics

    def __iter__(self) -> Iterator[MetricDefinition]:
        return iter(self._metrics.values())

    def __len__(self) -> int:
        return len(self._metrics)

    def keys(self) -> List[str]:
        return list(self._metrics)

    def sources(self) -> List[str]:
        seen = []
        for metric in self._metrics.values():
            if metric.source not in seen:
                seen.append(metric.source)
        return seen

    def for_source(self, source: str) -> List[MetricDefinition]:
        return [m for m in self._metrics.values() if m.source == source]

    def of_kind(self, kind: MetricKind, source: Optional[str] = None) -> List[MetricDefinition]:
        return [
            m for m in self._metrics.values()
            if m.kind is kind and (source is None or m.source == source)
        ]

    def categories(self, kind: MetricKind, source: str) -> List[str]:
        return [m.category for m in self.of_kind(kind, source)]


def default_registry() -> MetricRegistry:
    """The dashboard's metric set: HubSpot deal pipeline + Xero P&L."""
    return MetricRegistry([
        MetricDefinition(
            key="pipeline-value",
            label="Amount in Advanced Negotiations",
            period_label="Advanced Negotiations (End of Period)",
            kind=MetricKind.STOCK,
            source="hubspot",
            category="pipeline-value",
        ),
        MetricDefinition(
            key="amount-won",
            label="Amount Won",
            period_label="Amount Won (Period)",
            kind=MetricKind.FLOW,
            source="hubspot",
            category="closed-won",
        ),
        MetricDefinition(
            key="revenue",
            label="Total Turnover (12 Months)",
            period_label="Total Turnover (Period)",
            kind=MetricKind.FLOW,
            source="xero",
            category="revenue",
        ),
        MetricDefinition(
            key="cost-of-goods",
            label="Cost of Sales",
            kind=MetricKind.FLOW,
            source="xero",
            category="cost-of-goods",
            display=False,
        ),
        MetricDefinition(
            key="gross-margin",
            label="Gross Margin % (12 Months)",
            period_label="Gross Margin % (Period)",
            kind=MetricKind.RATIO,
            source="xero",
            unit=MetricUnit.PERCENT,
            components=("revenue", "cost-of-goods"),
        ),
        MetricDefinition(
            key="materials",
            label="Total Material Cost (12 Months)",
            period_label="Total Material Cost (Period)",
            kind=MetricKind.FLOW,
            source="xero",
            category="materials",
        ),
        MetricDefinition(
            key="subcontracted-labour",
            label="Total Subcontractor Cost (12 Months)",
            period_label="Total Subcontractor Cost (Period)",
            kind=MetricKind.FLOW,
            source="xero",
            category="subcontracted-labour",
        ),
    ])
