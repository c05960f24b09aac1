"""Tests for the cache warmer CLI."""

import json
from unittest.mock import MagicMock, patch

import pytest

from analytics.service import AggregationService
from analytics.snapshot_cache import InMemorySnapshotCache
from fakes import FakeDealAdapter, FakeLedgerAdapter
from scripts import warm_analytics_cache as warmer
from scripts.lib.config import Settings
from test_service import Clock


@pytest.fixture
def fake_service(settings):
    deals, ledger = FakeDealAdapter(), FakeLedgerAdapter()
    service = AggregationService(
        {"hubspot": deals, "xero": ledger}, InMemorySnapshotCache(), settings=settings, clock=Clock(),
    )
    with patch.object(warmer, "build_service", return_value=service):
        yield service


class TestWarmInProcess:
    @pytest.mark.asyncio
    async def test_forces_refresh(self, settings, fake_service):
        payload = await warmer.warm_in_process(settings, "2025-06-01", "2025-06-20")
        assert payload["metadata"]["cacheStatus"] == {"hubspot": "refreshed", "xero": "refreshed"}
        assert payload["metadata"]["historicalDataPoints"] == 3
        assert len(fake_service.cache) == 18

    @pytest.mark.asyncio
    async def test_single_source(self, settings, fake_service):
        payload = await warmer.warm_in_process(settings, "2025-06-01", "2025-06-20", source="xero")
        assert payload["metadata"]["cacheStatus"] == {"xero": "refreshed"}
        assert fake_service.adapters["hubspot"].period_calls == []


class TestWarmRemote:
    def test_requests_refresh(self):
        response = MagicMock()
        response.json.return_value = {"success": True, "metadata": {}}
        with patch.object(warmer, "safe_request", return_value=response) as mock_req:
            payload = warmer.warm_remote("http://localhost:8001/", "2025-06-01", None, source="hubspot")

        assert payload == {"success": True, "metadata": {}}
        mock_req.assert_called_once_with(
            "http://localhost:8001/api/analytics/sources/hubspot",
            params={"refresh": "true", "date_from": "2025-06-01"},
            timeout=180,
        )

    def test_failure(self):
        with patch.object(warmer, "safe_request", return_value=None):
            assert warmer.warm_remote("http://localhost:8001", None, None) is None


class TestMain:
    def test_remote_failure_exit_code(self):
        with patch.object(warmer, "safe_request", return_value=None):
            assert warmer.main(["--api-url", "http://localhost:8001"]) == 1

    def test_in_process_writes_output(self, settings, fake_service, tmp_path):
        target = tmp_path / "analytics.json"
        with patch.object(Settings, "from_env", return_value=settings):
            code = warmer.main([
                "--date-from", "2025-06-01", "--date-to", "2025-06-20", "--output", str(target),
            ])

        assert code == 0
        payload = json.loads(target.read_text(encoding="utf-8"))
        assert [s["key"] for s in payload["data"]][:2] == ["pipeline-value", "amount-won"]

    def test_rejects_unknown_source(self):
        with pytest.raises(SystemExit):
            warmer.main(["--source", "salesforce"])
