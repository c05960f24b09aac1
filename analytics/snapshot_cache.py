"""
Snapshot Cache
===============

Stores one computed value per (period_start, granularity, metric_key).
Snapshots are overwritten, never versioned. Freshness is decided at read
time: a snapshot is fresh while `now - cached_at < max_age` (24h default).

Two stores:
  InMemorySnapshotCache  - process-local, used when Supabase is not set up
  SupabaseSnapshotCache  - one table per metric family, row per
                           (period_start, period_type), metric values in a
                           JSON `metrics` column
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from analytics.records import Snapshot, SnapshotKey, SnapshotOrigin
from scripts.lib.errors import CacheError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import select_rows, upsert_rows

logger = setup_logger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)


def is_fresh(snapshot: Snapshot, now: datetime, max_age: timedelta = DEFAULT_MAX_AGE) -> bool:
    return now - snapshot.cached_at < max_age


class SnapshotCache(ABC):
    """Contract shared by every snapshot store."""

    @abstractmethod
    def get(self, key: SnapshotKey) -> Optional[Snapshot]:
        ...

    @abstractmethod
    def put(self, key: SnapshotKey, snapshot: Snapshot) -> None:
        ...

    def get_many(self, keys: Iterable[SnapshotKey]) -> Dict[SnapshotKey, Snapshot]:
        found = {}
        for key in keys:
            snapshot = self.get(key)
            if snapshot is not None:
                found[key] = snapshot
        return found

    def put_many(self, snapshots: Iterable[Snapshot]) -> None:
        for snapshot in snapshots:
            self.put(snapshot.key, snapshot)


class InMemorySnapshotCache(SnapshotCache):
    """Dict-backed store. Concurrent writers: last one wins."""

    def __init__(self):
        self._rows: Dict[SnapshotKey, Snapshot] = {}
        self._lock = threading.Lock()

    def get(self, key: SnapshotKey) -> Optional[Snapshot]:
        with self._lock:
            return self._rows.get(key)

    def put(self, key: SnapshotKey, snapshot: Snapshot) -> None:
        with self._lock:
            self._rows[key] = snapshot

    def put_many(self, snapshots: Iterable[Snapshot]) -> None:
        with self._lock:
            for snapshot in snapshots:
                self._rows[snapshot.key] = snapshot

    def __len__(self) -> int:
        return len(self._rows)


# ─── Supabase store ───────────────────────────────────────────

def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_entry(snapshot: Snapshot) -> dict:
    return {
        "value": str(snapshot.value),
        "count": snapshot.count,
        "origin": snapshot.origin.value,
        "observed_on": snapshot.observed_on.isoformat() if snapshot.observed_on else None,
        "cached_at": snapshot.cached_at.isoformat(),
        "period_end": snapshot.period_end.isoformat() if snapshot.period_end else None,
    }


def _decode_entry(metric_key: str, row: dict, entry: dict) -> Snapshot:
    observed_on = entry.get("observed_on")
    period_end = entry.get("period_end")
    return Snapshot(
        metric_key=metric_key,
        period_start=date.fromisoformat(row["period_start"]),
        granularity=row["period_type"],
        value=Decimal(str(entry["value"])),
        cached_at=_parse_timestamp(entry.get("cached_at") or row["cached_at"]),
        count=entry.get("count"),
        origin=SnapshotOrigin(entry.get("origin", SnapshotOrigin.OBSERVED.value)),
        observed_on=date.fromisoformat(observed_on) if observed_on else None,
        period_end=date.fromisoformat(period_end) if period_end else None,
    )


class SupabaseSnapshotCache(SnapshotCache):
    """
    Snapshot rows in Supabase, one table per metric family.

    Row shape:
        period_start  date     \\ unique together
        period_type   text     /
        metrics       jsonb    {metric_key: {value, count, origin, observed_on, cached_at, period_end}}
        cached_at     timestamptz
        updated_at    timestamptz
    """

    CONFLICT_COLUMNS = "period_start,period_type"

    def __init__(self, client, tables: Dict[str, str], metric_sources: Dict[str, str]):
        self.client = client
        self.tables = tables
        self.metric_sources = metric_sources

    def _table_for(self, metric_key: str) -> str:
        source = self.metric_sources.get(metric_key)
        if source is None or source not in self.tables:
            raise CacheError(f"No snapshot table for metric '{metric_key}'")
        return self.tables[source]

    def _fetch_rows(self, table: str, granularity: str, starts: List[date]) -> Dict[date, dict]:
        rows = select_rows(
            self.client, table,
            filters={"period_type": granularity},
            in_filters={"period_start": [s.isoformat() for s in starts]},
        )
        return {date.fromisoformat(row["period_start"]): row for row in rows}

    def get(self, key: SnapshotKey) -> Optional[Snapshot]:
        return self.get_many([key]).get(key)

    def get_many(self, keys: Iterable[SnapshotKey]) -> Dict[SnapshotKey, Snapshot]:
        grouped: Dict[tuple, List[SnapshotKey]] = defaultdict(list)
        for key in keys:
            grouped[(self._table_for(key.metric_key), key.granularity)].append(key)

        found = {}
        for (table, granularity), group in grouped.items():
            starts = sorted({key.period_start for key in group})
            rows = self._fetch_rows(table, granularity, starts)
            for key in group:
                row = rows.get(key.period_start)
                entry = (row or {}).get("metrics", {}).get(key.metric_key)
                if entry is None:
                    continue
                try:
                    found[key] = _decode_entry(key.metric_key, row, entry)
                except (KeyError, ValueError, ArithmeticError) as e:
                    logger.warning(
                        "Ignoring unreadable snapshot %s/%s/%s in %s: %s",
                        key.period_start, key.granularity, key.metric_key, table, e,
                    )
        return found

    def put(self, key: SnapshotKey, snapshot: Snapshot) -> None:
        # Single-metric write has to merge into the family row
        table = self._table_for(key.metric_key)
        existing = self._fetch_rows(table, key.granularity, [key.period_start])
        metrics = dict(existing.get(key.period_start, {}).get("metrics") or {})
        metrics[key.metric_key] = _encode_entry(snapshot)
        upsert_rows(self.client, table, [{
            "period_start": key.period_start.isoformat(),
            "period_type": key.granularity,
            "metrics": metrics,
            "cached_at": snapshot.cached_at.isoformat(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }], on_conflict=self.CONFLICT_COLUMNS)

    def put_many(self, snapshots: Iterable[Snapshot]) -> None:
        """Write whole family rows; every metric of a row is replaced together."""
        rows: Dict[str, Dict[tuple, dict]] = defaultdict(dict)
        now = datetime.now(timezone.utc).isoformat()

        for snapshot in snapshots:
            table = self._table_for(snapshot.metric_key)
            row_key = (snapshot.period_start, snapshot.granularity)
            row = rows[table].setdefault(row_key, {
                "period_start": snapshot.period_start.isoformat(),
                "period_type": snapshot.granularity,
                "metrics": {},
                "cached_at": snapshot.cached_at.isoformat(),
                "updated_at": now,
            })
            row["metrics"][snapshot.metric_key] = _encode_entry(snapshot)
            row["cached_at"] = max(row["cached_at"], snapshot.cached_at.isoformat())

        for table, table_rows in rows.items():
            upsert_rows(
                self.client, table, list(table_rows.values()),
                on_conflict=self.CONFLICT_COLUMNS,
            )
