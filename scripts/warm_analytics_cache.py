"""
BuildHub Analytics — Cache Warmer
===================================
Recomputes the analytics snapshots ahead of dashboard traffic so the
first visitor of the day is served from cache. Run it from cron once a day
(or after reconnecting Xero).

Two modes:
    in-process (default)  builds the aggregation service from .env and runs
                          a forced refresh directly
    --api-url             asks a running API server to refresh instead

Usage:
    python scripts/warm_analytics_cache.py                           # trailing 12 months
    python scripts/warm_analytics_cache.py --date-from 2025-06-01 --date-to 2025-08-31
    python scripts/warm_analytics_cache.py --source xero             # one family
    python scripts/warm_analytics_cache.py --api-url http://localhost:8001
    python scripts/warm_analytics_cache.py --output data/analytics.json
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, Optional

# ---------------------------------------------------------------------------
# Path setup
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from analytics.periods import parse_iso_date
from analytics.service import AggregationRequest, build_service
from dashboard.api.routers.analytics import build_response
from scripts.lib.config import Settings
from scripts.lib.logger import setup_logger
from scripts.lib.utils import atomic_write_json, safe_request

logger = setup_logger("warm_analytics_cache")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

async def warm_in_process(
    settings: Settings,
    date_from: Optional[str],
    date_to: Optional[str],
    source: Optional[str] = None,
) -> Dict:
    """Force-refresh through a locally built service. Returns the API payload."""
    service = build_service(settings)
    try:
        request = AggregationRequest(
            date_from=parse_iso_date(date_from, "date_from"),
            date_to=parse_iso_date(date_to, "date_to"),
            force_refresh=True,
            sources=(source,) if source else None,
        )
        result = await service.aggregate(request)
    finally:
        await service.close()

    for degraded in result.degraded:
        logger.warning(
            "  degraded: %s %s (%s): %s",
            degraded.source, degraded.period.label, ", ".join(degraded.metrics), degraded.reason,
        )
    response = build_response(result, settings.currency_symbol)
    return response.model_dump(by_alias=True, mode="json")


def warm_remote(
    api_url: str,
    date_from: Optional[str],
    date_to: Optional[str],
    source: Optional[str] = None,
    timeout: float = 180,
) -> Optional[Dict]:
    """Ask a running API server to refresh. Returns the payload, or None on failure."""
    path = f"/api/analytics/sources/{source}" if source else "/api/analytics"
    params = {"refresh": "true"}
    if date_from:
        params["date_from"] = date_from
    if date_to:
        params["date_to"] = date_to

    response = safe_request(f"{api_url.rstrip('/')}{path}", params=params, timeout=timeout)
    if response is None:
        return None
    return response.json()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Refresh the analytics snapshot cache",
    )
    parser.add_argument("--date-from", type=str, default=None, help="Range start (YYYY-MM-DD)")
    parser.add_argument("--date-to", type=str, default=None, help="Range end (YYYY-MM-DD)")
    parser.add_argument(
        "--source",
        type=str,
        choices=["hubspot", "xero"],
        default=None,
        help="Only refresh one source family. Default: all",
    )
    parser.add_argument(
        "--api-url",
        type=str,
        default=None,
        help="Refresh through a running API server instead of in-process",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Also write the refreshed payload to this JSON file",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point. Returns the process exit code."""
    args = _parse_args(argv)

    logger.info("Analytics cache warm starting")
    logger.info("  Range: %s -> %s", args.date_from or "default", args.date_to or "today")
    logger.info("  Source: %s", args.source or "all")
    logger.info("  Mode: %s", f"remote ({args.api_url})" if args.api_url else "in-process")

    if args.api_url:
        payload = warm_remote(args.api_url, args.date_from, args.date_to, args.source)
        if payload is None:
            logger.error("Remote refresh failed")
            return 1
    else:
        payload = asyncio.run(
            warm_in_process(Settings.from_env(), args.date_from, args.date_to, args.source)
        )

    metadata = payload.get("metadata", {})
    logger.info("=== Analytics Cache Warm Complete ===")
    logger.info("  Granularity: %s", metadata.get("granularity"))
    logger.info("  Buckets: %s", metadata.get("historicalDataPoints"))
    logger.info("  Cache status: %s", metadata.get("cacheStatus"))
    logger.info("  Degraded periods: %d", len(metadata.get("degradedPeriods", [])))

    if args.output and not atomic_write_json(payload, args.output):
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        logger.error("Analytics cache warm failed: %s", exc, exc_info=True)
        sys.exit(1)
