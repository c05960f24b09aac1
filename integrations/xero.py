"""
Xero Integration
=================

Profit & Loss source for the analytics aggregator. One report call per
period serves every financial category (revenue, cost of goods, materials,
subcontracted labour); the report is split by ProfitAndLossExtractor.

OAuth:
- The connection (access token, refresh token, expiry, tenant id) is stored
  in the `xero_connection` table, written by the Connect-to-Xero flow.
- Tokens are refreshed when they expire within 5 minutes, and once more if
  Xero answers 401. Xero rotates refresh tokens, so the new pair is stored
  before it is used.

Rate limits: Xero allows 60 calls/minute per credential. Every call waits
on a shared RateLimiter (1.1s minimum interval) and periods are fetched one
at a time (`sequential = True`).
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from analytics.records import ExternalRecord
from integrations.base import SourceAdapter
from integrations.xero_reports import ProfitAndLossExtractor
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import (
    APIAuthError,
    APIRateLimitError,
    APITimeoutError,
    AuthExpiredError,
    CacheError,
    ConfigurationError,
    FetchError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import select_rows, update_row
from scripts.lib.utils import RateLimiter

logger = setup_logger(__name__)

XERO_API_URL = "https://api.xero.com/api.xro/2.0"
XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = 1800


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ─── Connection storage ───────────────────────────────────────

@dataclass(frozen=True)
class XeroConnection:
    id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenant_id: str

    def expires_soon(self, now: datetime, margin: timedelta = REFRESH_MARGIN) -> bool:
        return self.expires_at <= now + margin

    @classmethod
    def from_row(cls, row: dict) -> "XeroConnection":
        return cls(
            id=str(row["id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=_parse_datetime(row["expires_at"]),
            tenant_id=row["tenant_id"],
        )


class XeroConnectionStore(ABC):
    """Where the single Xero OAuth connection lives."""

    @abstractmethod
    def load(self) -> Optional[XeroConnection]:
        ...

    @abstractmethod
    def save_tokens(self, connection: XeroConnection) -> XeroConnection:
        """Persist refreshed tokens in one update. Raises CacheError on failure."""


class InMemoryXeroConnectionStore(XeroConnectionStore):

    def __init__(self, connection: Optional[XeroConnection] = None):
        self.connection = connection
        self.saves = 0

    def load(self) -> Optional[XeroConnection]:
        return self.connection

    def save_tokens(self, connection: XeroConnection) -> XeroConnection:
        self.connection = connection
        self.saves += 1
        return connection


class SupabaseXeroConnectionStore(XeroConnectionStore):

    def __init__(self, client, table: str = "xero_connection"):
        self.client = client
        self.table = table

    def load(self) -> Optional[XeroConnection]:
        rows = select_rows(self.client, self.table, limit=1)
        if not rows:
            return None
        try:
            return XeroConnection.from_row(rows[0])
        except (KeyError, ValueError) as e:
            raise ConfigurationError(
                f"Stored Xero connection is incomplete: {e}", source="xero",
            ) from e

    def save_tokens(self, connection: XeroConnection) -> XeroConnection:
        row = update_row(self.client, self.table, {"id": connection.id}, {
            "access_token": connection.access_token,
            "refresh_token": connection.refresh_token,
            "expires_at": connection.expires_at.isoformat(),
            "updated_at": _utcnow().isoformat(),
        })
        if row is None:
            raise CacheError(
                f"Xero connection {connection.id} disappeared during refresh", table=self.table,
            )
        return XeroConnection.from_row(row)


# ─── Adapter ──────────────────────────────────────────────────

def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, FetchError) and (exc.status_code or 0) >= 500


class XeroIntegration(SourceAdapter):
    """Xero accounting connector (P&L reports)."""

    name = "xero"
    sequential = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        store: XeroConnectionStore,
        extractor: ProfitAndLossExtractor,
        rate_limiter: Optional[RateLimiter] = None,
        max_attempts: int = 3,
        wait=None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
        now: Callable[[], datetime] = _utcnow,
        base_url: str = XERO_API_URL,
        token_url: str = XERO_TOKEN_URL,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.store = store
        self.extractor = extractor
        self.rate_limiter = rate_limiter or RateLimiter(1.1)
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential(multiplier=1, min=2, max=10)
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(self.name)
        self.base_url = base_url
        self.token_url = token_url
        self._transport = transport
        self._now = now
        self._client: Optional[Optional[httpx.AsyncClient]] = None
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, store: XeroConnectionStore, extractor: ProfitAndLossExtractor):
        return cls(
            client_id=settings.xero_client_id,
            client_secret=settings.xero_client_secret,
            store=store,
            extractor=extractor,
            rate_limiter=RateLimiter(settings.xero_min_interval_seconds),
            max_attempts=settings.xero_max_attempts,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def flow_categories(self) -> List[str]:
        return self.extractor.categories

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ─── OAuth ────────────────────────────────────────────────

    def _load_connection(self) -> XeroConnection:
        if not self.is_configured:
            raise ConfigurationError(
                "XERO_CLIENT_ID and XERO_CLIENT_SECRET must be set",
                setting="XERO_CLIENT_ID", source=self.name,
            )
        try:
            connection = self.store.load()
        except CacheError as e:
            raise FetchError(f"Xero connection store unavailable: {e}", source=self.name) from e
        if connection is None:
            raise ConfigurationError(
                "No Xero connection found. Please connect to Xero in Settings first.",
                source=self.name,
            )
        return connection

    async def get_connection(self, stale_token: Optional[str] = None) -> XeroConnection:
        """
        A connection with a usable access token.

        Passing `stale_token` forces a refresh unless another caller has
        already replaced that token.
        """
        async with self._token_lock:
            connection = self._load_connection()
            if stale_token is not None:
                if connection.access_token != stale_token:
                    return connection
                logger.info("Xero rejected the access token, refreshing")
                return await self._refresh(connection)
            if connection.expires_soon(self._now()):
                logger.info("Xero access token expires at %s, refreshing", connection.expires_at)
                return await self._refresh(connection)
            return connection

    async def _refresh(self, connection: XeroConnection) -> XeroConnection:
        try:
            response = await self._http().post(
                self.token_url,
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "refresh_token", "refresh_token": connection.refresh_token},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthExpiredError(self.name, f"token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.error("Xero token refresh failed (%s): %s", response.status_code, response.text[:500])
            raise AuthExpiredError(self.name, f"token endpoint returned {response.status_code}")

        try:
            payload = response.json()
            refreshed = replace(
                connection,
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token") or connection.refresh_token,
                expires_at=self._now() + timedelta(
                    seconds=int(payload.get("expires_in", DEFAULT_TOKEN_LIFETIME))
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthExpiredError(self.name, f"malformed token response: {e}") from e

        try:
            saved = self.store.save_tokens(refreshed)
        except CacheError as e:
            raise AuthExpiredError(self.name, "refreshed tokens could not be stored") from e

        logger.info("Xero access token refreshed (expires %s)", saved.expires_at)
        return saved

    # ─── Reports ──────────────────────────────────────────────

    async def _send(self, connection: XeroConnection, path: str, params: Dict) -> httpx.Response:
        await self.rate_limiter.wait()
        return await self._http().get(
            f"{self.base_url}{path}",
            params=params,
            headers={
                "Authorization": f"Bearer {connection.access_token}",
                "Xero-tenant-id": connection.tenant_id,
                "Accept": "application/json",
            },
        )

    async def _request(self, path: str, params: Dict) -> Dict:
        connection = await self.get_connection()
        response = await self._send(connection, path, params)

        if response.status_code == 401:
            connection = await self.get_connection(stale_token=connection.access_token)
            response = await self._send(connection, path, params)
            if response.status_code == 401:
                raise APIAuthError(self.name, message="Xero rejected a freshly refreshed token")

        if response.status_code == 403:
            raise APIAuthError(self.name, status_code=403)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "")
            raise APIRateLimitError(self.name, int(retry_after) if retry_after.isdigit() else None)
        if response.status_code >= 400:
            logger.error("Xero API %s returned %s: %s", path, response.status_code, response.text[:500])
            raise FetchError(
                f"Xero API call failed: {response.status_code}",
                source=self.name, status_code=response.status_code,
            )
        return response.json()

    async def _request_with_retries(self, path: str, params: Dict) -> Dict:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.wait,
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying Xero %s (attempt %d/%d)",
                            path, attempt.retry_state.attempt_number, self.max_attempts,
                        )
                    return await self._request(path, params)
        except httpx.TimeoutException as e:
            raise APITimeoutError(self.name, self.timeout) from e
        except httpx.TransportError as e:
            raise FetchError(f"Xero transport error: {e}", source=self.name) from e

    async def get_profit_and_loss(self, from_date: date, to_date: date) -> Dict:
        """Raw ProfitAndLoss report for [from_date, to_date]."""
        params = {
            "fromDate": from_date.isoformat(),
            "toDate": to_date.isoformat(),
            "standardLayout": "false",
            "paymentsOnly": "false",
        }
        return await self.breaker.call(
            lambda: self._request_with_retries("/Reports/ProfitAndLoss", params)
        )

    async def fetch_categories(
        self,
        categories: Sequence[str],
        period_start: date,
        period_end: date,
    ) -> List[ExternalRecord]:
        unknown = [c for c in categories if c not in self.extractor.categories]
        if unknown:
            raise ConfigurationError(
                f"Account mapping has no entry for {unknown}",
                setting="ACCOUNT_MAPPING_PATH", source=self.name,
            )

        payload = await self.get_profit_and_loss(period_start, period_end)
        records = self.extractor.to_records(payload, categories, period_start, period_end)
        logger.info(
            "Xero P&L %s -> %s: %s", period_start, period_end,
            ", ".join(f"{r.category}={r.amount}" for r in records),
        )
        return records

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["name"] = "Xero"
        status["circuit"] = self.breaker.status()
        status["min_interval_seconds"] = self.rate_limiter.min_interval
        return status
