"""Shared fixtures."""

import os

os.environ.setdefault("LOG_TO_FILE", "false")

from datetime import date

import pytest

from fakes import NOW, TODAY
from scripts.lib.config import Settings


@pytest.fixture
def settings():
    return Settings(
        hubspot_api_key="test-key",
        hubspot_advanced_negotiations_stage_id="adv-neg",
        hubspot_closed_won_stage_id="closedwon",
        xero_client_id="client-id",
        xero_client_secret="client-secret",
        xero_min_interval_seconds=0,
    )


@pytest.fixture
def fixed_clock():
    return lambda: NOW


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def june_weeks():
    """1 Jun -> 20 Jun 2025: three weekly buckets."""
    from analytics.periods import build_periods
    return build_periods(date(2025, 6, 1), date(2025, 6, 20), TODAY)
