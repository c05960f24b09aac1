"""
Aggregation Service
====================

Orchestrates one analytics request:

    PLANNING -> CACHE_CHECK -> SERVE                                (all fresh)
    PLANNING -> CACHE_CHECK -> FETCHING -> AGGREGATING -> BACKFILLING
             -> PERSISTING -> SERVE
    any state -> FAILED   (configuration / auth errors, re-raised)

Each source family is served from cache only if every (period, metric)
snapshot of the family is present and fresh; otherwise the whole family
is refetched and its snapshots overwritten. A FetchError for one period
turns that period into zero placeholders and is reported as degraded;
the request still succeeds.

Usage:
    service = build_service(Settings.from_env())
    result = await service.aggregate(AggregationRequest(date_from=..., date_to=...))
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from analytics.aggregator import (
    Observation,
    compute_totals,
    flow_value,
    observations_from_records,
    ratio_series,
)
from analytics.backfill import BackfillPolicy, fill_stock_series
from analytics.metrics import MetricDefinition, MetricKind, MetricRegistry, default_registry
from analytics.periods import Period, PeriodPlan, build_periods, resolve_range
from analytics.records import ZERO, ExternalRecord, Snapshot, SnapshotKey, SnapshotOrigin, quantize
from analytics.snapshot_cache import (
    InMemorySnapshotCache,
    SnapshotCache,
    SupabaseSnapshotCache,
    is_fresh,
)
from integrations.base import SourceAdapter
from integrations.hubspot import HubSpotIntegration
from integrations.xero import InMemoryXeroConnectionStore, SupabaseXeroConnectionStore, XeroIntegration
from integrations.xero_reports import ProfitAndLossExtractor
from scripts.lib.config import Settings, load_account_mapping
from scripts.lib.errors import APIAuthError, CacheError, ConfigurationError, FetchError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import create_supabase_client

logger = setup_logger(__name__)

_run_ids = itertools.count(1)


class AggregationState(str, Enum):
    PLANNING = "planning"
    CACHE_CHECK = "cache_check"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    BACKFILLING = "backfilling"
    PERSISTING = "persisting"
    SERVE = "serve"
    FAILED = "failed"


class CacheStatus(str, Enum):
    FRESH = "fresh"            # served from snapshots
    STALE = "stale"            # snapshots missing or expired, refetched
    REFRESHED = "refreshed"    # refetch forced by the caller


@dataclass(frozen=True)
class AggregationRequest:
    date_from: Optional[Optional[date]] = None
    date_to: Optional[Optional[date]] = None
    force_refresh: bool = False
    sources: Optional[Optional[Tuple[str, ...]]] = None

    @property
    def filtered(self) -> bool:
        """Caller picked the range (labels switch to their per-period form)."""
        return self.date_from is not None or self.date_to is not None


@dataclass(frozen=True)
class SeriesPoint:
    period: Period
    values: Dict[str, Decimal]


@dataclass(frozen=True)
class DegradedPeriod:
    source: str
    period: Period
    metrics: Tuple[str, ...]
    reason: str


@dataclass
class AggregationResult:
    plan: PeriodPlan
    metrics: List[MetricDefinition]
    series: List[SeriesPoint]
    period_totals: Dict[str, Decimal]
    cache_status: Dict[str, CacheStatus]
    degraded: List[DegradedPeriod]
    generated_at: datetime
    filtered: bool = False
    states: List[AggregationState] = field(default_factory=list)

    @property
    def cached(self) -> bool:
        return bool(self.cache_status) and all(
            status is CacheStatus.FRESH for status in self.cache_status.values()
        )

    def series_for(self, key: str) -> List[Decimal]:
        return [point.values[key] for point in self.series]


@dataclass
class _FamilyFetch:
    """Raw adapter output for one source family."""
    live: Optional[Optional[List[ExternalRecord]]] = None
    live_error: Optional[Optional[FetchError]] = None
    outcomes: List[Union[List[ExternalRecord], FetchError]] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _gather_all(coros: Sequence) -> List[Any]:
    """gather() that cancels the siblings when one of them raises."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class AggregationService:
    """Built once at startup and shared by every request."""

    def __init__(
        self,
        adapters: Dict[str, SourceAdapter],
        cache: SnapshotCache,
        registry: Optional[MetricRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry or default_registry()
        self.settings = settings or Settings()
        self.adapters = adapters
        self.cache = cache
        self.clock = clock
        self.policy = BackfillPolicy.from_settings(self.settings)
        self.max_age = timedelta(hours=self.settings.cache_max_age_hours)
        self._check_adapters()

    def _check_adapters(self):
        for source in self.registry.sources():
            adapter = self.adapters.get(source)
            if adapter is None:
                raise ConfigurationError(f"No adapter registered for source '{source}'", source=source)
            for kind, offered in (
                (MetricKind.FLOW, adapter.flow_categories()),
                (MetricKind.STOCK, adapter.stock_categories()),
            ):
                missing = set(self.registry.categories(kind, source)) - set(offered)
                if missing:
                    raise ConfigurationError(
                        f"Adapter '{source}' cannot serve {kind.value} categories {sorted(missing)}",
                        source=source,
                    )

    # ─── Public API ───────────────────────────────────────────

    async def aggregate(self, request: AggregationRequest) -> AggregationResult:
        run_id = next(_run_ids)
        states: List[AggregationState] = []

        def enter(state: AggregationState):
            states.append(state)
            logger.debug("aggregate[%d] -> %s", run_id, state.value)

        try:
            enter(AggregationState.PLANNING)
            now = self.clock()
            today = now.date()
            date_from, date_to = resolve_range(request.date_from, request.date_to, today)
            plan = build_periods(date_from, date_to, today)
            sources = self._select_sources(request.sources)
            granularity = plan.granularity.value

            enter(AggregationState.CACHE_CHECK)
            values: Dict[str, List[Decimal]] = {}
            cache_status: Dict[str, CacheStatus] = {}
            cached_by_source: Dict[str, Dict[SnapshotKey, Snapshot]] = {}
            stale = []
            for source in sources:
                cached = self._read_cache(plan, source)
                cached_by_source[source] = cached
                if not request.force_refresh and self._family_fresh(plan, source, cached, now):
                    cache_status[source] = CacheStatus.FRESH
                    for metric in self._stored_metrics(source):
                        values[metric.key] = [
                            cached[SnapshotKey(p.start, granularity, metric.key)].value for p in plan
                        ]
                    logger.info("Serving %s from cache (%d %s buckets)", source, len(plan), granularity)
                else:
                    cache_status[source] = (
                        CacheStatus.REFRESHED if request.force_refresh else CacheStatus.STALE
                    )
                    stale.append(source)

            degraded: List[DegradedPeriod] = []
            snapshots: List[Snapshot] = []
            if stale:
                enter(AggregationState.FETCHING)
                fetched = await _gather_all([
                    self._fetch_family(self.adapters[source], plan, today) for source in stale
                ])

                enter(AggregationState.AGGREGATING)
                for source, family in zip(stale, fetched):
                    snapshots.extend(self._aggregate_flows(source, plan, family, now, values, degraded))

                enter(AggregationState.BACKFILLING)
                for source, family in zip(stale, fetched):
                    snapshots.extend(self._backfill_stocks(
                        source, plan, family, cached_by_source[source], today, now, values, degraded,
                    ))

                enter(AggregationState.PERSISTING)
                self._write_cache(snapshots)

            result = self._assemble(request, plan, sources, values, cache_status, degraded, now)
            enter(AggregationState.SERVE)
            result.states = states
            logger.info(
                "Aggregated %s -> %s: %d %s buckets, sources=%s, degraded=%d",
                date_from, date_to, len(plan), granularity,
                {s: c.value for s, c in cache_status.items()}, len(degraded),
            )
            return result

        except (ConfigurationError, APIAuthError) as e:
            enter(AggregationState.FAILED)
            logger.error("Aggregation failed: %s", e)
            raise

    def metric_catalog(self) -> List[Dict[str, Any]]:
        return [
            {
                "key": metric.key,
                "label": metric.label,
                "periodLabel": metric.period_label or metric.label,
                "kind": metric.kind.value,
                "unit": metric.unit.value,
                "source": metric.source,
                "display": metric.display,
                "components": list(metric.components) if metric.components else None,
            }
            for metric in self.registry
        ]

    def get_status(self) -> Dict[str, Any]:
        return {
            "sources": {name: adapter.get_status() for name, adapter in self.adapters.items()},
            "cache": {
                "backend": type(self.cache).__name__,
                "max_age_hours": self.settings.cache_max_age_hours,
            },
            "metrics": self.registry.keys(),
        }

    async def close(self):
        for adapter in self.adapters.values():
            await adapter.close()

    # ─── Planning / cache ─────────────────────────────────────

    def _select_sources(self, requested: Optional[Sequence[str]]) -> List[str]:
        known = self.registry.sources()
        if not requested:
            return known
        unknown = [s for s in requested if s not in known]
        if unknown:
            raise LookupError(f"Unknown source(s): {', '.join(unknown)}")
        return [s for s in known if s in requested]

    def _stored_metrics(self, source: str) -> List[MetricDefinition]:
        """Metrics with snapshots of their own (ratios are derived)."""
        return [m for m in self.registry.for_source(source) if m.kind is not MetricKind.RATIO]

    def _keys(self, plan: PeriodPlan, source: str) -> List[SnapshotKey]:
        return [
            SnapshotKey(period.start, plan.granularity.value, metric.key)
            for period in plan
            for metric in self._stored_metrics(source)
        ]

    def _read_cache(self, plan: PeriodPlan, source: str) -> Dict[SnapshotKey, Snapshot]:
        try:
            return self.cache.get_many(self._keys(plan, source))
        except CacheError as e:
            logger.warning("Snapshot cache unreadable for %s, treating as a miss: %s", source, e)
            return {}

    def _family_fresh(
        self,
        plan: PeriodPlan,
        source: str,
        cached: Dict[SnapshotKey, Snapshot],
        now: datetime,
    ) -> bool:
        ends = {period.start: period.end for period in plan}
        for key in self._keys(plan, source):
            snapshot = cached.get(key)
            if snapshot is None or not snapshot.covers(ends[key.period_start]):
                return False
            if snapshot.origin is SnapshotOrigin.PLACEHOLDER or not is_fresh(snapshot, now, self.max_age):
                return False
        return True

    def _write_cache(self, snapshots: List[Snapshot]):
        if not snapshots:
            return
        try:
            self.cache.put_many(snapshots)
        except CacheError as e:
            logger.warning("Could not persist %d snapshots: %s", len(snapshots), e)

    # ─── Fetching ─────────────────────────────────────────────

    async def _fetch_family(self, adapter: SourceAdapter, plan: PeriodPlan, today: date) -> _FamilyFetch:
        if not adapter.is_configured:
            raise ConfigurationError(f"{adapter.name} is not configured", source=adapter.name)

        family = _FamilyFetch()
        stock_categories = self.registry.categories(MetricKind.STOCK, adapter.name)
        flow_categories = self.registry.categories(MetricKind.FLOW, adapter.name)

        if stock_categories:
            try:
                family.live = await adapter.fetch_current(stock_categories, today)
            except FetchError as e:
                logger.warning("Live %s observation failed: %s", adapter.name, e)
                family.live_error = e

        if not flow_categories:
            return family

        async def one(period: Period):
            try:
                return await adapter.fetch_categories(flow_categories, period.start, period.end)
            except FetchError as e:
                logger.warning("%s fetch failed for %s (%s): %s", adapter.name, period.label, period.start, e)
                return e

        if adapter.sequential:
            family.outcomes = [await one(period) for period in plan]
        else:
            semaphore = asyncio.Semaphore(max(1, self.settings.hubspot_max_concurrency))

            async def bounded(period: Period):
                async with semaphore:
                    return await one(period)

            family.outcomes = await _gather_all([bounded(period) for period in plan])
        return family

    # ─── Aggregating / backfilling ────────────────────────────

    def _aggregate_flows(
        self,
        source: str,
        plan: PeriodPlan,
        family: _FamilyFetch,
        now: datetime,
        values: Dict[str, List[Decimal]],
        degraded: List[DegradedPeriod],
    ) -> List[Snapshot]:
        flows = self.registry.of_kind(MetricKind.FLOW, source)
        snapshots = []
        for metric in flows:
            values[metric.key] = []

        for period, outcome in zip(plan, family.outcomes):
            if isinstance(outcome, FetchError):
                for metric in flows:
                    values[metric.key].append(ZERO)
                degraded.append(DegradedPeriod(
                    source, period, tuple(m.key for m in flows), str(outcome),
                ))
                continue
            for metric in flows:
                total, count = flow_value(outcome, period, metric.category)
                value = quantize(total)
                values[metric.key].append(value)
                snapshots.append(Snapshot(
                    metric.key, period.start, plan.granularity.value, value, now,
                    count=count, period_end=period.end,
                ))
        return snapshots

    def _backfill_stocks(
        self,
        source: str,
        plan: PeriodPlan,
        family: _FamilyFetch,
        cached: Dict[SnapshotKey, Snapshot],
        today: date,
        now: datetime,
        values: Dict[str, List[Decimal]],
        degraded: List[DegradedPeriod],
    ) -> List[Snapshot]:
        snapshots = []
        for metric in self.registry.of_kind(MetricKind.STOCK, source):
            live = None
            if family.live is not None:
                observations = observations_from_records(family.live, metric.category)
                # An empty stage is a real observation of zero
                live = observations[-1] if observations else Observation(today, ZERO, 0)

            history = {
                key.period_start: snapshot for key, snapshot in cached.items()
                if key.metric_key == metric.key
            }
            points = fill_stock_series(plan.periods, live, history, self.policy)
            values[metric.key] = [point.value for point in points]

            for period, point in zip(plan, points):
                if point.origin is SnapshotOrigin.PLACEHOLDER:
                    degraded.append(DegradedPeriod(
                        source, period, (metric.key,), str(family.live_error or "no observation"),
                    ))
                    continue
                snapshots.append(Snapshot(
                    metric.key, period.start, plan.granularity.value, point.value, now,
                    count=point.count, origin=point.origin, observed_on=point.observed_on,
                    period_end=period.end,
                ))
        return snapshots

    def _assemble(
        self,
        request: AggregationRequest,
        plan: PeriodPlan,
        sources: List[str],
        values: Dict[str, List[Decimal]],
        cache_status: Dict[str, CacheStatus],
        degraded: List[DegradedPeriod],
        now: datetime,
    ) -> AggregationResult:
        metrics = [m for m in self.registry if m.source in sources]
        for metric in metrics:
            if metric.kind is MetricKind.RATIO:
                values[metric.key] = ratio_series(metric, values)

        totals = compute_totals(metrics, values)
        series = [
            SeriesPoint(period, {key: series[index] for key, series in values.items()})
            for index, period in enumerate(plan)
        ]
        return AggregationResult(
            plan=plan,
            metrics=[m for m in metrics if m.display],
            series=series,
            period_totals=totals,
            cache_status=cache_status,
            degraded=degraded,
            generated_at=now,
            filtered=request.filtered,
        )


def build_service(settings: Settings) -> AggregationService:
    """Wire adapters, cache and registry from settings. Call once at startup."""
    registry = default_registry()
    extractor = ProfitAndLossExtractor(load_account_mapping(settings.account_mapping_path))

    if settings.supabase_configured:
        client = create_supabase_client(settings)
        cache = SupabaseSnapshotCache(
            client, settings.snapshot_tables, {m.key: m.source for m in registry},
        )
        store = SupabaseXeroConnectionStore(client)
    else:
        logger.warning("Supabase not configured: snapshots and the Xero connection are in-memory only")
        cache = InMemorySnapshotCache()
        store = InMemoryXeroConnectionStore()

    adapters = {
        "hubspot": HubSpotIntegration.from_settings(settings),
        "xero": XeroIntegration.from_settings(settings, store, extractor),
    }
    return AggregationService(adapters, cache, registry, settings)
