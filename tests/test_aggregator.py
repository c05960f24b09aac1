"""Tests for bucket values and period totals."""

from datetime import date
from decimal import Decimal

from analytics.aggregator import (
    Observation,
    compute_totals,
    flow_value,
    observations_from_records,
    period_total,
    ratio_series,
    ratio_value,
    stock_value,
)
from analytics.metrics import default_registry
from analytics.records import ExternalRecord


def D(values):
    return [Decimal(str(v)) for v in values]


class TestPeriodTotals:
    def test_flow_total_is_sum(self):
        metric = default_registry().get("amount-won")
        assert period_total(metric, D([100, 200, 0, 300])) == Decimal("600")

    def test_stock_total_is_last_bucket(self):
        metric = default_registry().get("pipeline-value")
        assert period_total(metric, D([100, 200, 150, 180])) == Decimal("180")

    def test_empty_series(self):
        registry = default_registry()
        assert period_total(registry.get("amount-won"), []) == Decimal("0")
        assert period_total(registry.get("pipeline-value"), []) == Decimal("0")

    def test_ratio_total_without_component_totals(self):
        metric = default_registry().get("gross-margin")
        assert period_total(metric, D([40, 20])) == Decimal("0")

    def test_ratio_total_recomputed_from_components(self):
        registry = default_registry()
        values = {
            "revenue": D([100, 300]),
            "cost-of-goods": D([50, 240]),
        }
        values["gross-margin"] = ratio_series(registry.get("gross-margin"), values)
        assert values["gross-margin"] == D(["50.00", "20.00"])

        totals = compute_totals(registry.for_source("xero"), values)
        # (400 - 290) / 400, not the 35% average of the buckets
        assert totals["gross-margin"] == Decimal("27.50")
        assert totals["revenue"] == Decimal("400")


class TestBucketValues:
    def test_flow_value_filters_category_and_range(self, june_weeks):
        records = [
            ExternalRecord(Decimal("100"), date(2025, 6, 1), "closed-won"),
            ExternalRecord(Decimal("250.50"), date(2025, 6, 7), "closed-won"),
            ExternalRecord(Decimal("999"), date(2025, 6, 8), "closed-won"),
            ExternalRecord(Decimal("50"), date(2025, 6, 3), "revenue"),
        ]
        assert flow_value(records, june_weeks[0], "closed-won") == (Decimal("350.50"), 2)
        assert flow_value(records, june_weeks[2], "closed-won") == (Decimal("0"), 0)

    def test_flow_values_are_additive(self, june_weeks):
        records = [
            ExternalRecord(Decimal(n), date(2025, 6, day), "closed-won")
            for n, day in [(10, 2), (20, 9), (30, 16), (40, 20)]
        ]
        buckets = [flow_value(records, p, "closed-won")[0] for p in june_weeks]
        assert sum(buckets) == Decimal("100")

    def test_observations_grouped_by_day(self):
        records = [
            ExternalRecord(Decimal("1000"), date(2025, 6, 20), "pipeline-value"),
            ExternalRecord(Decimal("500"), date(2025, 6, 20), "pipeline-value"),
            ExternalRecord(Decimal("700"), date(2025, 6, 10), "pipeline-value"),
            ExternalRecord(Decimal("1"), date(2025, 6, 20), "closed-won"),
        ]
        observations = observations_from_records(records, "pipeline-value")
        assert observations == [
            Observation(date(2025, 6, 10), Decimal("700"), 1),
            Observation(date(2025, 6, 20), Decimal("1500"), 2),
        ]

    def test_stock_value_is_latest_at_or_before_end(self, june_weeks):
        observations = [
            Observation(date(2025, 6, 2), Decimal("100")),
            Observation(date(2025, 6, 6), Decimal("200")),
            Observation(date(2025, 6, 16), Decimal("300")),
        ]
        assert stock_value(observations, june_weeks[0]).value == Decimal("200")
        # nothing new in week 2: carried forward
        assert stock_value(observations, june_weeks[1]).value == Decimal("200")
        assert stock_value(observations, june_weeks[2]).value == Decimal("300")

    def test_stock_value_none_before_first_observation(self, june_weeks):
        observations = [Observation(date(2025, 6, 30), Decimal("100"))]
        assert stock_value(observations, june_weeks[0]) is None

    def test_ratio_with_no_revenue(self):
        assert ratio_value(Decimal("0"), Decimal("500")) == Decimal("0")
        assert ratio_value(Decimal("-10"), Decimal("0")) == Decimal("0")

    def test_ratio_can_be_negative(self):
        assert ratio_value(Decimal("100"), Decimal("150")) == Decimal("-50.00")
