"""
Runtime configuration for BuildHub Analytics.
Reads environment variables (after loading .env) into a Settings object
that is built once at startup and passed to whatever needs it.

Usage:
    from scripts.lib.config import Settings, load_account_mapping

    settings = Settings.from_env()
    mapping = load_account_mapping(settings.account_mapping_path)
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

from scripts.lib.errors import ConfigurationError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_ACCOUNT_MAPPING = PROJECT_ROOT / "configs" / "account_mapping.yaml"


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", setting=name)


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", setting=name)


@dataclass
class Settings:
    """All tunables for the aggregator. Credentials may be empty; adapters
    raise ConfigurationError when they are actually needed."""

    supabase_url: str = ""
    supabase_key: str = ""

    hubspot_api_key: str = ""
    hubspot_advanced_negotiations_stage_id: str = ""
    hubspot_closed_won_stage_id: str = ""
    hubspot_max_concurrency: int = 4

    xero_client_id: str = ""
    xero_client_secret: str = ""
    xero_min_interval_seconds: float = 1.1
    xero_max_attempts: int = 3

    cache_max_age_hours: float = 24.0
    request_timeout_seconds: float = 120.0

    backfill_baseline: float = 0.3
    backfill_growth: float = 0.7

    currency_symbol: str = "£"
    account_mapping_path: Path = DEFAULT_ACCOUNT_MAPPING

    snapshot_tables: Dict[str, str] = field(default_factory=lambda: {
        "hubspot": "hubspot_deal_snapshots",
        "xero": "xero_financial_cache",
    })

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """Build settings from the environment, loading .env first."""
        load_dotenv(env_file or PROJECT_ROOT / ".env")

        settings = cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_key=(
                os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
                or os.getenv("SUPABASE_KEY", "")
            ),
            hubspot_api_key=os.getenv("HUBSPOT_API_KEY", ""),
            hubspot_advanced_negotiations_stage_id=os.getenv(
                "HUBSPOT_ADVANCED_NEGOTIATIONS_STAGE_ID", ""
            ),
            hubspot_closed_won_stage_id=os.getenv("HUBSPOT_CLOSED_WON_STAGE_ID", ""),
            hubspot_max_concurrency=_int("HUBSPOT_MAX_CONCURRENCY", 4),
            xero_client_id=os.getenv("XERO_CLIENT_ID", ""),
            xero_client_secret=os.getenv("XERO_CLIENT_SECRET", ""),
            xero_min_interval_seconds=_float("XERO_MIN_INTERVAL_SECONDS", 1.1),
            xero_max_attempts=_int("XERO_MAX_ATTEMPTS", 3),
            cache_max_age_hours=_float("CACHE_MAX_AGE_HOURS", 24.0),
            request_timeout_seconds=_float("REQUEST_TIMEOUT_SECONDS", 120.0),
            backfill_baseline=_float("BACKFILL_BASELINE", 0.3),
            backfill_growth=_float("BACKFILL_GROWTH", 0.7),
            currency_symbol=os.getenv("CURRENCY_SYMBOL", "£"),
            account_mapping_path=Path(
                os.getenv("ACCOUNT_MAPPING_PATH", "") or DEFAULT_ACCOUNT_MAPPING
            ),
        )

        hubspot_table = os.getenv("HUBSPOT_SNAPSHOT_TABLE")
        if hubspot_table:
            settings.snapshot_tables["hubspot"] = hubspot_table
        xero_table = os.getenv("XERO_SNAPSHOT_TABLE")
        if xero_table:
            settings.snapshot_tables["xero"] = xero_table

        if settings.backfill_baseline < 0 or settings.backfill_growth < 0:
            raise ConfigurationError(
                "BACKFILL_BASELINE and BACKFILL_GROWTH must be non-negative",
                setting="BACKFILL_BASELINE",
            )
        return settings

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_account_mapping(path: Path = DEFAULT_ACCOUNT_MAPPING) -> Dict[str, dict]:
    """
    Load the P&L account mapping table from YAML.

    Each category entry needs a `section` substring and either a `summary`
    substring or a non-empty `accounts` list.

    Raises:
        ConfigurationError: if the file is missing or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"Account mapping not found: {path}", setting="ACCOUNT_MAPPING_PATH",
        )

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Account mapping is not valid YAML: {e}",
                setting="ACCOUNT_MAPPING_PATH",
            )

    categories = data.get("categories")
    if not isinstance(categories, dict) or not categories:
        raise ConfigurationError(
            "Account mapping must define a non-empty 'categories' table",
            setting="ACCOUNT_MAPPING_PATH",
        )

    for name, entry in categories.items():
        if not isinstance(entry, dict) or not entry.get("section"):
            raise ConfigurationError(
                f"Account mapping category '{name}' needs a 'section'",
                setting="ACCOUNT_MAPPING_PATH",
            )
        if not entry.get("summary") and not entry.get("accounts"):
            raise ConfigurationError(
                f"Account mapping category '{name}' needs 'summary' or 'accounts'",
                setting="ACCOUNT_MAPPING_PATH",
            )

    logger.info("Loaded %d account categories from %s", len(categories), path.name)
    return categories
