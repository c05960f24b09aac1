"""Tests for deterministic stock backfill."""

from datetime import date, datetime, timezone
from decimal import Decimal

from analytics.aggregator import Observation
from analytics.backfill import BackfillPolicy, cached_observations, fill_stock_series
from analytics.records import Snapshot, SnapshotOrigin
from scripts.lib.config import Settings

CACHED_AT = datetime(2025, 6, 21, 8, 0, tzinfo=timezone.utc)


def _snapshot(start, value, origin=SnapshotOrigin.OBSERVED, observed_on=None):
    return Snapshot(
        "pipeline-value", start, "week", Decimal(value), CACHED_AT,
        origin=origin, observed_on=observed_on,
    )


class TestRamp:
    def test_twelve_bucket_ramp(self):
        policy = BackfillPolicy()
        value = Decimal("1000")
        assert policy.ramp_value(value, 0, 12) == Decimal("300.00")
        assert policy.ramp_value(value, 5, 12) == Decimal("618.18")
        assert policy.ramp_value(value, 11, 12) == Decimal("1000.00")

    def test_ramp_is_monotonic_and_deterministic(self):
        policy = BackfillPolicy()
        first = [policy.ramp_value(Decimal("4321.99"), i, 12) for i in range(12)]
        second = [policy.ramp_value(Decimal("4321.99"), i, 12) for i in range(12)]
        assert first == second
        assert first == sorted(first)

    def test_single_bucket_is_live_value(self):
        assert BackfillPolicy().ramp_value(Decimal("750"), 0, 1) == Decimal("750.00")

    def test_never_negative(self):
        assert BackfillPolicy().ramp_value(Decimal("-200"), 3, 6) == Decimal("0.00")

    def test_policy_from_settings(self):
        policy = BackfillPolicy.from_settings(Settings(backfill_baseline=0.5, backfill_growth=0.5))
        assert policy.ramp_value(Decimal("100"), 0, 4) == Decimal("50.00")


class TestFillStockSeries:
    def test_ramp_towards_live_value(self, june_weeks):
        live = Observation(date(2025, 6, 20), Decimal("900"), 3)
        points = fill_stock_series(june_weeks.periods, live, {}, BackfillPolicy())

        assert [p.value for p in points] == [Decimal("270.00"), Decimal("585.00"), Decimal("900.00")]
        assert [p.origin for p in points] == [
            SnapshotOrigin.SYNTHETIC, SnapshotOrigin.SYNTHETIC, SnapshotOrigin.OBSERVED,
        ]
        assert points[-1].count == 3
        assert points[-1].observed_on == date(2025, 6, 20)

    def test_live_value_after_range_pins_last_bucket(self, june_weeks):
        live = Observation(date(2025, 10, 19), Decimal("900"))
        points = fill_stock_series(june_weeks.periods, live, {}, BackfillPolicy())
        assert points[-1].value == Decimal("900.00")
        assert all(p.origin is SnapshotOrigin.SYNTHETIC for p in points)

    def test_observed_history_wins_and_carries_forward(self, june_weeks):
        live = Observation(date(2025, 6, 20), Decimal("900"))
        cached = {date(2025, 6, 1): _snapshot(date(2025, 6, 1), "400", observed_on=date(2025, 6, 5))}
        points = fill_stock_series(june_weeks.periods, live, cached, BackfillPolicy())

        assert [p.value for p in points] == [Decimal("400.00"), Decimal("400.00"), Decimal("900.00")]
        assert all(p.origin is SnapshotOrigin.OBSERVED for p in points)

    def test_recorded_observation_anchors_earlier_buckets(self, june_weeks):
        live = Observation(date(2025, 6, 20), Decimal("900"))
        cached = {date(2025, 6, 8): _snapshot(date(2025, 6, 8), "400", observed_on=date(2025, 6, 10))}
        points = fill_stock_series(june_weeks.periods, live, cached, BackfillPolicy())

        assert [p.value for p in points] == [Decimal("120.00"), Decimal("400.00"), Decimal("900.00")]
        assert [p.origin for p in points] == [
            SnapshotOrigin.SYNTHETIC, SnapshotOrigin.OBSERVED, SnapshotOrigin.OBSERVED,
        ]

    def test_anchor_below_later_live_value_is_not_overshot(self, june_weeks):
        live = Observation(date(2025, 10, 19), Decimal("8000"))
        cached = {date(2025, 6, 15): _snapshot(date(2025, 6, 15), "5000", observed_on=date(2025, 6, 18))}
        values = [p.value for p in fill_stock_series(june_weeks.periods, live, cached, BackfillPolicy())]

        assert values == [Decimal("1500.00"), Decimal("3250.00"), Decimal("5000.00")]

    def test_recorded_observation_without_live_value(self, june_weeks):
        cached = {date(2025, 6, 8): _snapshot(date(2025, 6, 8), "400", observed_on=date(2025, 6, 10))}
        points = fill_stock_series(june_weeks.periods, None, cached, BackfillPolicy())

        assert [p.value for p in points] == [Decimal("120.00"), Decimal("400.00"), Decimal("400.00")]
        assert points[0].origin is SnapshotOrigin.SYNTHETIC

    def test_synthetic_history_is_not_an_observation(self, june_weeks):
        cached = {date(2025, 6, 1): _snapshot(date(2025, 6, 1), "123", origin=SnapshotOrigin.SYNTHETIC)}
        assert cached_observations(june_weeks.periods, cached) == []

    def test_observation_without_observed_on_uses_cached_day(self, june_weeks):
        cached = {date(2025, 6, 15): _snapshot(date(2025, 6, 15), "50")}
        observations = cached_observations(june_weeks.periods, cached)
        # cached on the 21st, clamped to the bucket end
        assert observations == [Observation(date(2025, 6, 20), Decimal("50"), None)]

    def test_unknown_live_value_gives_placeholders(self, june_weeks):
        points = fill_stock_series(june_weeks.periods, None, {}, BackfillPolicy())
        assert [p.value for p in points] == [Decimal("0")] * 3
        assert all(p.origin is SnapshotOrigin.PLACEHOLDER for p in points)

    def test_same_inputs_same_series(self, june_weeks):
        live = Observation(date(2025, 10, 19), Decimal("12345.67"))
        first = fill_stock_series(june_weeks.periods, live, {}, BackfillPolicy())
        second = fill_stock_series(june_weeks.periods, live, {}, BackfillPolicy())
        assert first == second
