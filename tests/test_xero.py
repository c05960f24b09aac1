"""Tests for the Xero integration (OAuth refresh, retries, rate limiting)."""

import base64
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from tenacity import wait_none

from fakes import FakeSupabase
from integrations.xero import (
    XERO_TOKEN_URL,
    InMemoryXeroConnectionStore,
    SupabaseXeroConnectionStore,
    XeroConnection,
    XeroIntegration,
)
from integrations.xero_reports import ProfitAndLossExtractor
from scripts.lib.config import load_account_mapping
from scripts.lib.errors import (
    APIAuthError,
    APIRateLimitError,
    AuthExpiredError,
    CacheError,
    ConfigurationError,
    FetchError,
)
from scripts.lib.utils import RateLimiter
from test_xero_reports import JUNE

NOW = datetime(2025, 10, 19, 9, 30, tzinfo=timezone.utc)


def _connection(expires_in=timedelta(hours=1), token="access-1"):
    return XeroConnection(
        id="conn-1",
        access_token=token,
        refresh_token="refresh-1",
        expires_at=NOW + expires_in,
        tenant_id="tenant-42",
    )


class XeroStub:
    """MockTransport handler scripted with report responses."""

    def __init__(self, report_statuses=(200,), token_status=200):
        self.report_statuses = list(report_statuses)
        self.token_status = token_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == XERO_TOKEN_URL:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "expires_in": 1800,
                "token_type": "Bearer",
            })
        status = self.report_statuses.pop(0) if self.report_statuses else 200
        if status != 200:
            return httpx.Response(status, text="nope", headers={"Retry-After": "30"})
        return httpx.Response(200, json=JUNE)

    @property
    def report_requests(self):
        return [r for r in self.requests if "ProfitAndLoss" in str(r.url)]

    @property
    def token_requests(self):
        return [r for r in self.requests if str(r.url) == XERO_TOKEN_URL]


def make_xero(stub, connection=None, rate_limiter=None, **kwargs):
    store = InMemoryXeroConnectionStore(connection)
    xero = XeroIntegration(
        "client-id",
        "client-secret",
        store,
        ProfitAndLossExtractor(load_account_mapping()),
        rate_limiter=rate_limiter or RateLimiter(0),
        wait=wait_none(),
        transport=httpx.MockTransport(stub),
        now=lambda: NOW,
        **kwargs,
    )
    return xero, store


CATEGORIES = ["revenue", "cost-of-goods", "materials", "subcontracted-labour"]


class TestReports:
    @pytest.mark.asyncio
    async def test_fetch_categories(self):
        stub = XeroStub()
        xero, _ = make_xero(stub, _connection())

        records = await xero.fetch_categories(CATEGORIES, date(2025, 6, 1), date(2025, 6, 30))

        assert {r.category: r.amount for r in records} == {
            "revenue": Decimal("12000.00"),
            "cost-of-goods": Decimal("7200.00"),
            "materials": Decimal("2500.00"),
            "subcontracted-labour": Decimal("4000.00"),
        }
        request = stub.report_requests[0]
        assert request.headers["Xero-tenant-id"] == "tenant-42"
        assert request.headers["Authorization"] == "Bearer access-1"
        assert request.url.params["fromDate"] == "2025-06-01"
        assert request.url.params["toDate"] == "2025-06-30"
        assert request.url.params["standardLayout"] == "false"
        assert request.url.params["paymentsOnly"] == "false"
        assert stub.token_requests == []

    @pytest.mark.asyncio
    async def test_every_call_waits_on_the_rate_limiter(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        limiter = RateLimiter(1.1, clock=lambda: 0.0, sleep=fake_sleep)
        xero, _ = make_xero(XeroStub(), _connection(), rate_limiter=limiter)

        await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        await xero.fetch_categories(["revenue"], date(2025, 7, 1), date(2025, 7, 31))
        assert sleeps == [pytest.approx(1.1)]

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        stub = XeroStub(report_statuses=[503, 200])
        xero, _ = make_xero(stub, _connection())
        records = await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert records[0].amount == Decimal("12000.00")
        assert len(stub.report_requests) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        stub = XeroStub(report_statuses=[500, 500, 500, 500])
        xero, _ = make_xero(stub, _connection(), max_attempts=3)
        with pytest.raises(FetchError) as exc:
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert exc.value.status_code == 500
        assert len(stub.report_requests) == 3

    @pytest.mark.asyncio
    async def test_rate_limited_is_not_retried(self):
        stub = XeroStub(report_statuses=[429])
        xero, _ = make_xero(stub, _connection())
        with pytest.raises(APIRateLimitError) as exc:
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert exc.value.details["retry_after"] == 30
        assert len(stub.report_requests) == 1

    @pytest.mark.asyncio
    async def test_unmapped_category(self):
        xero, _ = make_xero(XeroStub(), _connection())
        with pytest.raises(ConfigurationError):
            await xero.fetch_categories(["payroll"], date(2025, 6, 1), date(2025, 6, 30))


class TestOAuth:
    @pytest.mark.asyncio
    async def test_refreshes_when_token_expires_within_five_minutes(self):
        stub = XeroStub()
        xero, store = make_xero(stub, _connection(expires_in=timedelta(minutes=4)))

        await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))

        token_request = stub.token_requests[0]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert parse_qs(token_request.content.decode()) == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["refresh-1"],
        }
        assert stub.report_requests[0].headers["Authorization"] == "Bearer access-2"
        assert store.saves == 1
        assert store.connection.refresh_token == "refresh-2"
        assert store.connection.expires_at == NOW + timedelta(seconds=1800)

    @pytest.mark.asyncio
    async def test_token_valid_beyond_margin_is_reused(self):
        stub = XeroStub()
        xero, store = make_xero(stub, _connection(expires_in=timedelta(minutes=6)))
        await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert stub.token_requests == []
        assert store.saves == 0

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries_once(self):
        stub = XeroStub(report_statuses=[401, 200])
        xero, store = make_xero(stub, _connection())

        records = await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))

        assert records[0].amount == Decimal("12000.00")
        assert [str(r.url).split("?")[0] for r in stub.requests] == [
            "https://api.xero.com/api.xro/2.0/Reports/ProfitAndLoss",
            XERO_TOKEN_URL,
            "https://api.xero.com/api.xro/2.0/Reports/ProfitAndLoss",
        ]
        assert store.saves == 1

    @pytest.mark.asyncio
    async def test_second_401_is_fatal(self):
        stub = XeroStub(report_statuses=[401, 401])
        xero, _ = make_xero(stub, _connection())
        with pytest.raises(APIAuthError):
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert len(stub.token_requests) == 1
        assert len(stub.report_requests) == 2

    @pytest.mark.asyncio
    async def test_refresh_failure_is_auth_expired(self):
        stub = XeroStub(token_status=400)
        xero, store = make_xero(stub, _connection(expires_in=timedelta(minutes=-10)))
        with pytest.raises(AuthExpiredError) as exc:
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert exc.value.code == "AUTH_EXPIRED"
        assert stub.report_requests == []
        assert store.saves == 0

    @pytest.mark.asyncio
    async def test_no_connection(self):
        xero, _ = make_xero(XeroStub(), None)
        with pytest.raises(ConfigurationError) as exc:
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))
        assert "connect to Xero" in str(exc.value)

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self):
        store = InMemoryXeroConnectionStore(_connection())
        xero = XeroIntegration("", "", store, ProfitAndLossExtractor(load_account_mapping()))
        assert xero.is_configured is False
        with pytest.raises(ConfigurationError):
            await xero.fetch_categories(["revenue"], date(2025, 6, 1), date(2025, 6, 30))

    def test_status(self):
        xero, _ = make_xero(XeroStub(), _connection())
        status = xero.get_status()
        assert status["name"] == "Xero"
        assert status["sequential"] is True
        assert status["circuit"]["state"] == "CLOSED"
        assert "revenue" in status["categories"]


class TestSupabaseConnectionStore:
    ROW = {
        "id": "conn-1",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": "2025-10-19T10:30:00+00:00",
        "tenant_id": "tenant-42",
    }

    def test_load(self):
        store = SupabaseXeroConnectionStore(FakeSupabase({"xero_connection": [dict(self.ROW)]}))
        connection = store.load()
        assert connection.tenant_id == "tenant-42"
        assert connection.expires_at == datetime(2025, 10, 19, 10, 30, tzinfo=timezone.utc)

    def test_load_without_row(self):
        assert SupabaseXeroConnectionStore(FakeSupabase()).load() is None

    def test_save_tokens_single_update(self):
        client = FakeSupabase({"xero_connection": [dict(self.ROW)]})
        store = SupabaseXeroConnectionStore(client)
        refreshed = XeroConnection("conn-1", "access-2", "refresh-2", NOW + timedelta(minutes=30), "tenant-42")

        saved = store.save_tokens(refreshed)

        assert saved.access_token == "access-2"
        assert client.calls == [("update", "xero_connection")]
        assert client.tables["xero_connection"][0]["refresh_token"] == "refresh-2"

    def test_save_tokens_for_missing_row(self):
        store = SupabaseXeroConnectionStore(FakeSupabase())
        with pytest.raises(CacheError):
            store.save_tokens(_connection())
