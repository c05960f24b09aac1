"""
Xero Profit & Loss extraction.

Turns a `/Reports/ProfitAndLoss` response into per-category amounts using
the account mapping table (configs/account_mapping.yaml):

    categories:
      revenue:   {section: income, summary: total income}
      materials: {section: cost of sales, accounts: [materials, pvc, ...]}

A category with `summary` takes the section's summary row; a category with
`accounts` sums every account row whose name contains one of the
substrings. Matching is case-insensitive and absolute values are summed
(Xero reports costs with either sign depending on layout).
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from analytics.records import ZERO, ExternalRecord, to_decimal
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


def _cell_text(row: dict, index: int) -> str:
    cells = row.get("Cells") or []
    if len(cells) <= index:
        return ""
    return str(cells[index].get("Value") or "")


def _cell_amount(row: dict) -> Optional[Decimal]:
    value = to_decimal(_cell_text(row, 1))
    return abs(value) if value is not None else None


class ProfitAndLossExtractor:
    """Category totals from one P&L report, driven by the mapping table."""

    def __init__(self, mapping: Dict[str, dict]):
        self.mapping = {}
        for category, entry in mapping.items():
            self.mapping[category] = {
                "section": entry["section"].lower(),
                "summary": (entry.get("summary") or "").lower(),
                "accounts": [a.lower() for a in entry.get("accounts") or []],
            }

    @property
    def categories(self) -> List[str]:
        return list(self.mapping)

    def _account_matches(self, section_title: str, account: str) -> List[str]:
        return [
            category for category, entry in self.mapping.items()
            if entry["accounts"]
            and entry["section"] in section_title
            and any(needle in account for needle in entry["accounts"])
        ]

    def extract(self, payload: dict, categories: Optional[Iterable[str]] = None) -> Dict[str, Decimal]:
        """
        Amount per category. Categories with nothing to match come back as 0.

        Args:
            payload: JSON body of the ProfitAndLoss endpoint.
            categories: subset of mapped categories (default: all).
        """
        wanted = list(categories) if categories is not None else self.categories
        totals = {category: ZERO for category in wanted}

        reports = (payload or {}).get("Reports") or []
        if not reports:
            logger.warning("No report data found in Xero response")
            return totals

        report = reports[0]
        titles = report.get("ReportTitles") or []
        logger.debug("Processing Xero P&L: %s", titles[2] if len(titles) > 2 else "unknown period")

        for section in report.get("Rows") or []:
            if section.get("RowType") != "Section":
                continue
            title = (section.get("Title") or "").lower()
            rows = section.get("Rows") or []

            for category in wanted:
                entry = self.mapping[category]
                if not entry["summary"] or entry["section"] not in title:
                    continue
                for row in rows:
                    if row.get("RowType") == "SummaryRow" and entry["summary"] in _cell_text(row, 0).lower():
                        amount = _cell_amount(row)
                        if amount is not None:
                            totals[category] += amount
                        break

            for row in rows:
                if row.get("RowType") != "Row":
                    continue
                account = _cell_text(row, 0).lower()
                if not account:
                    continue
                amount = _cell_amount(row)
                if amount is None:
                    logger.warning("Unparsable amount for Xero account '%s'", account)
                    continue

                matched = self._account_matches(title, account)
                if len(matched) > 1:
                    logger.warning(
                        "Xero account '%s' matches several categories %s; counted in each",
                        account, matched,
                    )
                if not matched and "cost of sales" in title:
                    logger.debug("Cost of sales account '%s' not mapped to any category", account)
                for category in matched:
                    if category in totals:
                        totals[category] += amount

        return totals

    def to_records(
        self,
        payload: dict,
        categories: Iterable[str],
        period_start: date,
        period_end: date,
    ) -> List[ExternalRecord]:
        """One record per category, dated at the end of the reported period."""
        totals = self.extract(payload, categories)
        reference = f"P&L {period_start.isoformat()}..{period_end.isoformat()}"
        return [
            ExternalRecord(amount, period_end, category, reference=reference)
            for category, amount in totals.items()
        ]
