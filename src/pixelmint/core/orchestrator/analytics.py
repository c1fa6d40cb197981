"""
Cost analytics over the budget ledger and result cache.

This module provides the CostAnalytics class: spend breakdowns, a
gap-filled spend trend, approximate cost per generated NFT, efficiency
metrics including what the cache saved, and JSON/CSV report export.
"""

import csv
import io
import json
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .budget import BudgetLedger, SpendRecord
from .cache import ResultCache

# Records further apart than this start a new generation session.
SESSION_GAP_SECONDS = 10 * 60
DEFAULT_COST_PER_CALL = 0.05

GRANULARITIES = ("daily", "hourly")


def _period_start(period: str, now: datetime) -> datetime:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return today
    if period == "weekly":
        return now - timedelta(days=7)
    if period == "monthly":
        return today.replace(day=1)
    if period == "quarterly":
        month = today.month - 3
        year = today.year
        if month < 1:
            month += 12
            year -= 1
        return today.replace(year=year, month=month, day=1)
    return now - timedelta(days=30)


def _bucket_key(moment: datetime, granularity: str) -> str:
    if granularity == "hourly":
        return moment.strftime("%Y-%m-%d %H")
    return moment.strftime("%Y-%m-%d")


def fill_missing_dates(
    data: Dict[str, float], start: datetime, end: datetime, granularity: str = "daily"
) -> Dict[str, float]:
    """Return one key per day (or hour) from start to end, 0.0 where data has none."""
    if granularity not in GRANULARITIES:
        raise ValueError(f"Invalid granularity: {granularity}")
    step = timedelta(hours=1) if granularity == "hourly" else timedelta(days=1)
    if granularity == "hourly":
        current = start.replace(minute=0, second=0, microsecond=0)
    else:
        current = start.replace(hour=0, minute=0, second=0, microsecond=0)

    filled: Dict[str, float] = {}
    while current <= end:
        key = _bucket_key(current, granularity)
        filled[key] = data.get(key, 0.0)
        current += step
    return filled


def group_by_session(history: List[SpendRecord], gap: float = SESSION_GAP_SECONDS) -> List[List[SpendRecord]]:
    """Split records into sessions wherever consecutive records are more than ``gap`` seconds apart."""
    sessions: List[List[SpendRecord]] = []
    for record in sorted(history, key=lambda r: r.timestamp):
        if sessions and record.timestamp - sessions[-1][-1].timestamp <= gap:
            sessions[-1].append(record)
        else:
            sessions.append([record])
    return sessions


class CostAnalytics:
    """Read-only reporting over a BudgetLedger and an optional ResultCache."""

    def __init__(self, ledger: BudgetLedger, cache: Optional[ResultCache] = None):
        self._ledger = ledger
        self._cache = cache

    def _history_since(self, start: datetime, now: Optional[datetime] = None) -> List[SpendRecord]:
        return self._ledger.get_spend_history(start, now or datetime.now())

    def get_spend_by_provider(self, period: str = "monthly") -> Dict[str, float]:
        return {name: self._ledger.get_current_spend(name, period) for name in self._ledger.known_providers()}

    def get_spend_by_category(self, period: str = "monthly") -> Dict[str, float]:
        now = datetime.now()
        amounts: Dict[str, List[float]] = {}
        for record in self._history_since(_period_start(period, now), now):
            if record.success:
                amounts.setdefault(record.category or "unknown", []).append(record.amount)
        return {category: math.fsum(values) for category, values in amounts.items()}

    def get_spend_trend(self, period: str = "monthly", granularity: str = "daily") -> Dict[str, float]:
        """
        Successful spend per day or hour, with empty buckets filled with 0.

        Args:
            period: "weekly", "monthly", "quarterly"; anything else means the last 30 days.
            granularity: "daily" or "hourly".

        Returns:
            Ordered mapping of bucket key ("YYYY-MM-DD" or "YYYY-MM-DD HH") to spend.
        """
        if granularity not in GRANULARITIES:
            raise ValueError(f"Invalid granularity: {granularity}")
        now = datetime.now()
        start = _period_start(period, now)
        amounts: Dict[str, List[float]] = {}
        for record in self._history_since(start, now):
            if record.success:
                key = _bucket_key(datetime.fromtimestamp(record.timestamp), granularity)
                amounts.setdefault(key, []).append(record.amount)
        trend = {key: math.fsum(values) for key, values in amounts.items()}
        return fill_missing_dates(trend, start, now, granularity)

    def get_cost_per_nft(self) -> float:
        """Average spend per generation session over the last 30 days."""
        history = self._history_since(datetime.now() - timedelta(days=30))
        if not history:
            return 0.0
        sessions = group_by_session(history)
        return math.fsum(r.amount for r in history if r.success) / len(sessions)

    @staticmethod
    def calculate_cache_savings(cache_stats: Optional[Dict[str, Any]], history: List[SpendRecord]) -> float:
        """
        Money not spent because results came from the cache.

        Hits are priced at the cost recorded with each cached entry. Stats
        without that figure fall back to hits times the average paid call.
        """
        if not cache_stats or not cache_stats.get("hits"):
            return 0.0
        if "saved_cost" in cache_stats:
            return float(cache_stats["saved_cost"])
        paid = [r.amount for r in history if r.success]
        average = math.fsum(paid) / len(paid) if paid else DEFAULT_COST_PER_CALL
        return cache_stats["hits"] * average

    def get_efficiency_metrics(self) -> Dict[str, Any]:
        cache_stats = self._cache.get_stats() if self._cache is not None else None
        history = self._history_since(datetime.now() - timedelta(days=7))

        total = len(history)
        successful = sum(1 for r in history if r.success)
        failed = total - successful
        return {
            "cache_hit_rate": cache_stats["hit_rate"] * 100 if cache_stats else 0.0,
            "api_success_rate": successful / total * 100 if total else 0.0,
            "fallback_rate": failed / total * 100 if total else 0.0,
            "total_requests": total,
            "successful_requests": successful,
            "failed_requests": failed,
            "cache_savings": self.calculate_cache_savings(cache_stats, history),
        }

    def build_report(self) -> Dict[str, Any]:
        now = datetime.now()
        return {
            "generated_at": now.isoformat(),
            "period": {"start": _period_start("monthly", now).isoformat(), "end": now.isoformat()},
            "summary": {
                "total_spend": self._ledger.get_global_spend("monthly"),
                "spend_by_provider": self.get_spend_by_provider("monthly"),
                "spend_by_category": self.get_spend_by_category("monthly"),
                "cost_per_nft": self.get_cost_per_nft(),
                "efficiency": self.get_efficiency_metrics(),
            },
            "trends": {
                "daily": self.get_spend_trend("monthly", "daily"),
                "quarterly": self.get_spend_trend("quarterly", "daily"),
            },
            "budget_status": self._ledger.get_budget_summary(),
        }

    def export_report(self, fmt: str = "json") -> Union[str, Dict[str, Any]]:
        """
        Export this month's cost report.

        Args:
            fmt: "json" for a JSON string, "csv" for CSV text, "dict" for the raw mapping.
        """
        report = self.build_report()
        logger.info(f"Exporting cost report as {fmt}")
        if fmt == "json":
            return json.dumps(report, indent=2, default=str)
        if fmt == "csv":
            return self.convert_to_csv(report)
        if fmt == "dict":
            return report
        raise ValueError(f"Unsupported report format: {fmt}")

    @staticmethod
    def convert_to_csv(report: Dict[str, Any]) -> str:
        summary = report["summary"]
        efficiency = summary["efficiency"]
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")

        writer.writerow(["PixelMint Cost Analytics Report"])
        writer.writerow([f"Generated: {report['generated_at']}"])
        writer.writerow([f"Period: {report['period']['start']} to {report['period']['end']}"])
        writer.writerow([])

        writer.writerow(["SUMMARY"])
        writer.writerow(["Metric", "Value"])
        writer.writerow(["Total Spend", f"${summary['total_spend']:.2f}"])
        writer.writerow(["Cost per NFT", f"${summary['cost_per_nft']:.2f}"])
        writer.writerow(["Cache Hit Rate", f"{efficiency['cache_hit_rate']:.1f}%"])
        writer.writerow(["API Success Rate", f"{efficiency['api_success_rate']:.1f}%"])
        writer.writerow(["Cache Savings", f"${efficiency['cache_savings']:.2f}"])
        writer.writerow([])

        writer.writerow(["SPEND BY PROVIDER"])
        writer.writerow(["Provider", "Amount"])
        for provider, amount in summary["spend_by_provider"].items():
            writer.writerow([provider, f"${amount:.2f}"])
        writer.writerow([])

        writer.writerow(["SPEND BY CATEGORY"])
        writer.writerow(["Category", "Amount"])
        for category, amount in summary["spend_by_category"].items():
            writer.writerow([category, f"${amount:.2f}"])

        return buffer.getvalue()


__all__ = [
    "CostAnalytics",
    "fill_missing_dates",
    "group_by_session",
]
