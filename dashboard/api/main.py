"""
BuildHub Analytics — API Server
=================================

Adaptive time-series analytics over the HubSpot deal pipeline and Xero
Profit & Loss, with per-period snapshots cached in Supabase.

Route groups:
  /api/health              - Health check
  /api/analytics           - Combined metric series for a date range
  /api/analytics/sources/* - One source family (hubspot | xero)
  /api/analytics/metrics   - Metric catalog
  /api/analytics/status    - Adapter + circuit breaker status
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from analytics.service import build_service
from dashboard.api.routers.analytics import router as analytics_router
from scripts.lib.config import Settings
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Build the aggregation service once; every request shares it."""
    logger.info("Starting BuildHub Analytics...")

    settings = Settings.from_env()
    service = build_service(settings)
    app.state.analytics = service

    for name, adapter in service.adapters.items():
        logger.info("%s integration: %s", name, "configured" if adapter.is_configured else "not configured")
    logger.info("Snapshot cache: %s", type(service.cache).__name__)

    logger.info("BuildHub Analytics ready")
    yield
    logger.info("Shutting down BuildHub Analytics...")
    await service.close()


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="BuildHub Analytics",
    version=VERSION,
    description="Deal pipeline and P&L time-series analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analytics_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with integration status."""
    service = getattr(app.state, "analytics", None)
    integrations = {}
    cache_backend = None
    if service is not None:
        integrations = {name: a.is_configured for name, a in service.adapters.items()}
        cache_backend = type(service.cache).__name__

    return {
        "status": "healthy" if service is not None else "starting",
        "service": "BuildHub Analytics",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": integrations,
        "cache": cache_backend,
    }
