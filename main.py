"""
BuildHub Analytics — Entry Point
==================================

Run: python main.py
"""

import os

from dotenv import load_dotenv

from scripts.lib.logger import setup_logger

load_dotenv()

logger = setup_logger("buildhub-analytics")

PORT = int(os.getenv("DASHBOARD_PORT", "8001"))

if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("  BUILDHUB ANALYTICS — Pipeline & P&L Time Series")
    logger.info("=" * 60)
    logger.info("  Environment : %s", os.getenv("ENVIRONMENT", "development"))
    logger.info("  Server      : http://0.0.0.0:%d", PORT)
    logger.info("  Analytics   : http://localhost:%d/api/analytics", PORT)
    logger.info("  API Docs    : http://localhost:%d/docs", PORT)
    logger.info("  Cache TTL   : %sh", os.getenv("CACHE_MAX_AGE_HOURS", "24"))
    logger.info("  Debug       : %s", os.getenv("DEBUG", "false"))
    logger.info("=" * 60)

    uvicorn.run(
        "dashboard.api.main:app",
        host="0.0.0.0",
        port=PORT,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )
