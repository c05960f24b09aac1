"""
HubSpot Integration
====================

Deal-pipeline source for the analytics aggregator:
- pipeline-value: deals currently sitting in the Advanced Negotiations stage
  (a stock, observed live)
- closed-won: deals in the Closed Won stage by close date (a flow)

Setup:
1. Create a Private App in HubSpot -> Settings -> Integrations
2. Set HUBSPOT_API_KEY, HUBSPOT_ADVANCED_NEGOTIATIONS_STAGE_ID and
   HUBSPOT_CLOSED_WON_STAGE_ID in .env

No client-side rate limit: period searches may run concurrently.
"""
from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from analytics.records import ExternalRecord, to_decimal
from integrations.base import SourceAdapter
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import (
    APIAuthError,
    APIRateLimitError,
    APITimeoutError,
    ConfigurationError,
    FetchError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

HUBSPOT_API_URL = "https://api.hubapi.com"
DEAL_SEARCH_PATH = "/crm/v3/objects/deals/search"
PAGE_LIMIT = 100
MAX_PAGES = 50

PIPELINE_VALUE = "pipeline-value"
CLOSED_WON = "closed-won"

DEAL_PROPERTIES = [
    "dealname",
    "amount",
    "dealstage",
    "pipeline",
    "createdate",
    "closedate",
    "hs_lastmodifieddate",
]


def _epoch_ms(day: date) -> int:
    """Midnight UTC of `day` in epoch milliseconds (HubSpot date filter format)."""
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp() * 1000)


def parse_close_date(value: Any) -> Optional[date]:
    """HubSpot sends closedate as ISO-8601 or epoch milliseconds."""
    if value is None or value == "":
        return None
    text = str(value).strip()
    try:
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc).date()
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


class HubSpotIntegration(SourceAdapter):
    """HubSpot CRM deal-search connector."""

    name = "hubspot"
    sequential = False

    def __init__(
        self,
        api_key: str,
        stage_ids: Dict[str, str],
        base_url: str = HUBSPOT_API_URL,
        timeout: float = 30,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.stage_ids = stage_ids
        self.base_url = base_url
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(self.name)

    @classmethod
    def from_settings(cls, settings) -> "HubSpotIntegration":
        return cls(
            api_key=settings.hubspot_api_key,
            stage_ids={
                PIPELINE_VALUE: settings.hubspot_advanced_negotiations_stage_id,
                CLOSED_WON: settings.hubspot_closed_won_stage_id,
            },
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def flow_categories(self) -> List[str]:
        return [CLOSED_WON]

    def stock_categories(self) -> List[str]:
        return [PIPELINE_VALUE]

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _stage_id(self, category: str) -> str:
        if category not in self.stage_ids:
            raise ConfigurationError(
                f"HubSpot has no stage mapping for category '{category}'",
                source=self.name,
            )
        stage_id = self.stage_ids[category]
        if not stage_id:
            setting = (
                "HUBSPOT_ADVANCED_NEGOTIATIONS_STAGE_ID"
                if category == PIPELINE_VALUE else "HUBSPOT_CLOSED_WON_STAGE_ID"
            )
            raise ConfigurationError(f"{setting} not configured", setting=setting, source=self.name)
        return stage_id

    # ─── HTTP ─────────────────────────────────────────────────

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> Dict:
        """Make an authenticated request to the HubSpot API."""
        url = f"{self.base_url}{path}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=self._headers(), json=json_body) as resp:
                    if resp.status in (401, 403):
                        raise APIAuthError(self.name, status_code=resp.status)
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After", "")
                        raise APIRateLimitError(
                            self.name, int(retry_after) if retry_after.isdigit() else None,
                        )
                    if resp.status >= 400:
                        text = await resp.text()
                        logger.error("HubSpot API %s %s returned %s: %s", method, path, resp.status, text[:500])
                        raise FetchError(
                            f"HubSpot API {method} {path} returned {resp.status}",
                            source=self.name, status_code=resp.status,
                        )
                    return await resp.json()
        except asyncio.TimeoutError as e:
            raise APITimeoutError(self.name, self.timeout) from e
        except aiohttp.ClientError as e:
            logger.error("HubSpot API error: %s", e)
            raise FetchError(f"HubSpot API error: {e}", source=self.name) from e

    async def _call(self, method: str, path: str, json_body: Optional[dict] = None) -> Dict:
        if not self.is_configured:
            raise ConfigurationError(
                "HUBSPOT_API_KEY is not set", setting="HUBSPOT_API_KEY", source=self.name,
            )
        return await self.breaker.call(lambda: self._request(method, path, json_body))

    async def search_deals(self, filters: List[dict]) -> List[dict]:
        """Run a deal search, following `paging.next.after` until exhausted."""
        deals: List[dict] = []
        after = None
        for page in range(1, MAX_PAGES + 1):
            body = {
                "filterGroups": [{"filters": filters}],
                "properties": DEAL_PROPERTIES,
                "limit": PAGE_LIMIT,
            }
            if after:
                body["after"] = after

            data = await self._call("POST", DEAL_SEARCH_PATH, json_body=body)
            results = data.get("results", [])
            deals.extend(results)
            logger.debug("Deal search page %d: %d deals (total: %d)", page, len(results), len(deals))

            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                return deals

        logger.warning("Deal search stopped at %d pages (%d deals)", MAX_PAGES, len(deals))
        return deals

    async def get_deals_in_stage(self, stage_id: str) -> List[dict]:
        return await self.search_deals([
            {"propertyName": "dealstage", "operator": "EQ", "value": stage_id},
        ])

    async def get_deals_closed_between(self, stage_id: str, start: date, end: date) -> List[dict]:
        """Deals in `stage_id` whose close date falls on [start, end] (UTC days)."""
        return await self.search_deals([
            {"propertyName": "dealstage", "operator": "EQ", "value": stage_id},
            {"propertyName": "closedate", "operator": "GTE", "value": str(_epoch_ms(start))},
            {"propertyName": "closedate", "operator": "LT",
             "value": str(_epoch_ms(end + timedelta(days=1)))},
        ])

    # ─── SourceAdapter ────────────────────────────────────────

    def _to_record(self, deal: dict, category: str, timestamp: date) -> Optional[ExternalRecord]:
        props = deal.get("properties") or {}
        amount = to_decimal(props.get("amount"))
        if amount is None:
            logger.warning(
                "Skipping deal %s: unparsable amount %r", deal.get("id"), props.get("amount"),
            )
            return None
        return ExternalRecord(amount, timestamp, category, reference=deal.get("id"))

    async def fetch_categories(
        self,
        categories: Sequence[str],
        period_start: date,
        period_end: date,
    ) -> List[ExternalRecord]:
        records = []
        for category in categories:
            if category != CLOSED_WON:
                raise ConfigurationError(
                    f"HubSpot cannot fetch '{category}' by period", source=self.name,
                )
            deals = await self.get_deals_closed_between(
                self._stage_id(category), period_start, period_end,
            )
            for deal in deals:
                closed_on = parse_close_date((deal.get("properties") or {}).get("closedate"))
                if closed_on is None:
                    logger.debug("Deal %s has no close date; skipped", deal.get("id"))
                    continue
                record = self._to_record(deal, category, closed_on)
                if record is not None:
                    records.append(record)

        logger.info(
            "HubSpot %s -> %s: %d records", period_start, period_end, len(records),
        )
        return records

    async def fetch_current(self, categories: Sequence[str], as_of: date) -> List[ExternalRecord]:
        records = []
        for category in categories:
            if category != PIPELINE_VALUE:
                raise ConfigurationError(
                    f"HubSpot cannot observe '{category}' live", source=self.name,
                )
            deals = await self.get_deals_in_stage(self._stage_id(category))
            for deal in deals:
                record = self._to_record(deal, category, as_of)
                if record is not None:
                    records.append(record)

        logger.info("HubSpot live pipeline as of %s: %d deals", as_of, len(records))
        return records

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["name"] = "HubSpot"
        status["circuit"] = self.breaker.status()
        return status
