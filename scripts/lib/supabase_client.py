"""
Supabase Client Helper for BuildHub Analytics.
Connection construction plus the small set of table operations the
snapshot cache and the Xero connection store need.

Usage:
    from scripts.lib.supabase_client import create_supabase_client, select_rows, upsert_rows

    client = create_supabase_client(settings)
    rows = select_rows(client, "xero_financial_cache", in_filters={"period_start": [...]})
    upsert_rows(client, "xero_financial_cache", rows, on_conflict="period_start,period_type")

Every helper raises CacheError on failure; callers decide whether that is
fatal.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from scripts.lib.errors import CacheError, ConfigurationError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


def create_supabase_client(settings):
    """Create a Supabase client from settings. Call once at startup."""
    if not settings.supabase_configured:
        raise ConfigurationError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env",
            setting="SUPABASE_URL",
        )

    from supabase import create_client
    client = create_client(settings.supabase_url, settings.supabase_key)
    logger.info("Supabase client connected to %s", settings.supabase_url)
    return client


def select_rows(
    client,
    table: str,
    select: str = "*",
    filters: Optional[Dict[str, Any]] = None,
    in_filters: Optional[Dict[str, Iterable[Any]]] = None,
    order_by: Optional[str] = None,
    desc: bool = False,
    limit: Optional[int] = None,
) -> List[Dict]:
    """
    Query a table with equality / IN filters and optional ordering.

    Returns:
        List of row dicts.
    """
    try:
        query = client.table(table).select(select)

        for col, val in (filters or {}).items():
            query = query.eq(col, val)
        for col, values in (in_filters or {}).items():
            query = query.in_(col, list(values))

        if order_by:
            query = query.order(order_by, desc=desc)
        if limit:
            query = query.limit(limit)

        result = query.execute()
        return result.data or []
    except Exception as e:
        logger.error("Supabase query failed on %s: %s", table, e)
        raise CacheError(f"Query failed on {table}: {e}", table=table) from e


def upsert_rows(client, table: str, rows: List[Dict], on_conflict: Optional[str] = None) -> int:
    """
    Upsert multiple rows into a table.

    Returns:
        Number of rows written.
    """
    if not rows:
        return 0

    try:
        query = client.table(table)
        if on_conflict:
            query.upsert(rows, on_conflict=on_conflict).execute()
        else:
            query.insert(rows).execute()
        logger.info("Upserted %d rows into %s", len(rows), table)
        return len(rows)
    except Exception as e:
        logger.error("Supabase bulk upsert failed on %s: %s", table, e)
        raise CacheError(f"Upsert failed on {table}: {e}", table=table) from e


def update_row(client, table: str, match: Dict[str, Any], values: Dict[str, Any]) -> Optional[Dict]:
    """
    Update rows matching `match` in a single statement.

    Returns:
        The first updated row, or None if nothing matched.
    """
    try:
        query = client.table(table).update(values)
        for col, val in match.items():
            query = query.eq(col, val)
        result = query.execute()
        return result.data[0] if result.data else None
    except Exception as e:
        logger.error("Supabase update failed on %s: %s", table, e)
        raise CacheError(f"Update failed on {table}: {e}", table=table) from e
