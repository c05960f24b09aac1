"""
BuildHub Analytics — Pydantic Response Models
===============================================

Response models for the analytics API. Field names are snake_case in
Python and camelCase on the wire (the dashboard frontend's shape).
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─── Series ─────────────────────────────────────────────────

class DataPoint(CamelModel):
    """One bucket of a metric series."""
    name: str
    value: float


class MetricSeries(CamelModel):
    """A displayed metric: headline value plus its per-bucket series."""
    key: str
    label: str
    value: str
    total: float
    unit: str
    kind: str
    data: List[DataPoint] = Field(default_factory=list)


# ─── Metadata ───────────────────────────────────────────────

class DateFilters(CamelModel):
    date_from: Optional[str] = Field(None, alias="dateFrom")
    date_to: Optional[str] = Field(None, alias="dateTo")


class DataRange(CamelModel):
    start: str
    end: str


class DegradedPeriodInfo(CamelModel):
    """A bucket served as zero placeholders because its fetch failed."""
    source: str
    name: str
    period_start: str = Field(alias="periodStart")
    period_end: str = Field(alias="periodEnd")
    metrics: List[str] = Field(default_factory=list)
    reason: str = ""


class AnalyticsMetadata(CamelModel):
    granularity: str
    historical_data_points: int = Field(alias="historicalDataPoints")
    filters_applied: DateFilters = Field(alias="filtersApplied")
    data_range: DataRange = Field(alias="dataRange")
    cached: bool = False
    cache_status: Dict[str, str] = Field(default_factory=dict, alias="cacheStatus")
    degraded: bool = False
    degraded_periods: List[DegradedPeriodInfo] = Field(default_factory=list, alias="degradedPeriods")
    last_updated: datetime = Field(alias="lastUpdated")
    period_totals: Dict[str, float] = Field(default_factory=dict, alias="periodTotals")


class AnalyticsResponse(CamelModel):
    success: bool = True
    data: List[MetricSeries] = Field(default_factory=list)
    metadata: AnalyticsMetadata


# ─── Catalog / status ───────────────────────────────────────

class MetricInfo(CamelModel):
    key: str
    label: str
    period_label: str = Field(alias="periodLabel")
    kind: str
    unit: str
    source: str
    display: bool = True
    components: Optional[List[str]] = None


class MetricCatalogResponse(CamelModel):
    success: bool = True
    data: List[MetricInfo] = Field(default_factory=list)
