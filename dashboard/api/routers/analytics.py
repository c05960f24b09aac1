"""
BuildHub Analytics — Analytics Router
=======================================
Time-series analytics combining the HubSpot deal pipeline with Xero P&L.

Endpoints:
  GET /api/analytics                   - All metric families for a date range
  GET /api/analytics/sources/{source}  - One family (hubspot | xero)
  GET /api/analytics/metrics           - Metric catalog
  GET /api/analytics/status            - Adapter + circuit breaker status

Query params (series endpoints):
  date_from, date_to   YYYY-MM-DD, optional (default: trailing 12 months)
  refresh              true to bypass the snapshot cache
"""
from __future__ import annotations

import asyncio
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException, Query, Request

from analytics.metrics import MetricUnit
from analytics.periods import parse_iso_date
from analytics.records import quantize
from analytics.service import AggregationRequest, AggregationResult, AggregationService
from models.analytics_models import (
    AnalyticsMetadata,
    AnalyticsResponse,
    DataPoint,
    DataRange,
    DateFilters,
    DegradedPeriodInfo,
    MetricCatalogResponse,
    MetricInfo,
    MetricSeries,
)
from scripts.lib.errors import APIAuthError, ConfigurationError, DateRangeError
from scripts.lib.logger import setup_logger

logger = setup_logger("analytics_router")

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


# ─── Formatting ─────────────────────────────────────────────

def format_value(value: Decimal, unit: MetricUnit, currency_symbol: str = "£") -> str:
    """Headline display string: '£12,345' or '41.2%'."""
    if unit is MetricUnit.PERCENT:
        return f"{value.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)}%"
    whole = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return f"{currency_symbol}{whole:,}"


def build_response(result: AggregationResult, currency_symbol: str = "£") -> AnalyticsResponse:
    data = []
    for metric in result.metrics:
        total = result.period_totals.get(metric.key, Decimal("0"))
        data.append(MetricSeries(
            key=metric.key,
            label=metric.label_for(result.filtered),
            value=format_value(total, metric.unit, currency_symbol),
            total=float(quantize(total)),
            unit=metric.unit.value,
            kind=metric.kind.value,
            data=[
                DataPoint(name=point.period.label, value=float(quantize(point.values[metric.key])))
                for point in result.series
            ],
        ))

    plan = result.plan
    metadata = AnalyticsMetadata(
        granularity=plan.granularity.value,
        historical_data_points=len(plan),
        filters_applied=DateFilters(
            date_from=plan.date_from.isoformat() if result.filtered else None,
            date_to=plan.date_to.isoformat() if result.filtered else None,
        ),
        data_range=DataRange(start=plan.date_from.isoformat(), end=plan.date_to.isoformat()),
        cached=result.cached,
        cache_status={source: status.value for source, status in result.cache_status.items()},
        degraded=bool(result.degraded),
        degraded_periods=[
            DegradedPeriodInfo(
                source=d.source,
                name=d.period.label,
                period_start=d.period.start.isoformat(),
                period_end=d.period.end.isoformat(),
                metrics=list(d.metrics),
                reason=d.reason,
            )
            for d in result.degraded
        ],
        last_updated=result.generated_at,
        period_totals={key: float(quantize(value)) for key, value in result.period_totals.items()},
    )
    return AnalyticsResponse(success=True, data=data, metadata=metadata)


# ─── Helpers ────────────────────────────────────────────────

def _service(request: Request) -> AggregationService:
    service = getattr(request.app.state, "analytics", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Analytics service not initialised")
    return service


async def _run(
    service: AggregationService,
    date_from: Optional[str],
    date_to: Optional[str],
    refresh: bool,
    sources: Optional[Tuple[str, ...]] = None,
) -> AnalyticsResponse:
    try:
        agg_request = AggregationRequest(
            date_from=parse_iso_date(date_from, "date_from"),
            date_to=parse_iso_date(date_to, "date_to"),
            force_refresh=refresh,
            sources=sources,
        )
        result = await asyncio.wait_for(
            service.aggregate(agg_request),
            timeout=service.settings.request_timeout_seconds,
        )
        return build_response(result, service.settings.currency_symbol)

    except DateRangeError as e:
        raise HTTPException(status_code=422, detail={"error": str(e), "code": e.code, **e.details})
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail={
            "error": str(e), "code": e.code, "source": e.source, "needsConnection": True,
        })
    except APIAuthError as e:
        raise HTTPException(status_code=401, detail={
            "error": str(e), "code": e.code, "source": e.source, "needsConnection": True,
        })
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except asyncio.TimeoutError:
        logger.error(
            "Analytics request timed out after %ss", service.settings.request_timeout_seconds,
        )
        raise HTTPException(status_code=504, detail="Analytics request timed out")


# ─── Endpoints ──────────────────────────────────────────────

@router.get("", response_model=AnalyticsResponse)
async def get_analytics(
    request: Request,
    date_from: Optional[str] = Query(None, description="Range start (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="Range end (YYYY-MM-DD)"),
    refresh: bool = Query(False, description="Bypass the snapshot cache"),
):
    """Every metric family, bucketed by week or month depending on range length."""
    return await _run(_service(request), date_from, date_to, refresh)


@router.get("/sources/{source}", response_model=AnalyticsResponse)
async def get_source_analytics(
    request: Request,
    source: str,
    date_from: Optional[str] = Query(None, description="Range start (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="Range end (YYYY-MM-DD)"),
    refresh: bool = Query(False, description="Bypass the snapshot cache"),
):
    """One metric family: `hubspot` (deal pipeline) or `xero` (financials)."""
    service = _service(request)
    if source not in service.registry.sources():
        raise HTTPException(status_code=404, detail=f"Unknown source: {source}")
    return await _run(service, date_from, date_to, refresh, sources=(source,))


@router.get("/metrics", response_model=MetricCatalogResponse)
async def list_metrics(request: Request):
    """Registered metrics with their kind, unit and source."""
    return MetricCatalogResponse(
        data=[MetricInfo(**entry) for entry in _service(request).metric_catalog()],
    )


@router.get("/status")
async def analytics_status(request: Request):
    """Adapter configuration, circuit breaker and cache backend."""
    return _service(request).get_status()
