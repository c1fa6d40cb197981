"""
Budget tracking and enforcement for paid image providers.

This module provides the BudgetLedger class: an append-only spend ledger
persisted as JSON lines, per-provider daily/monthly ceilings plus a global
monthly ceiling, threshold alerts and spend reports.
"""

import asyncio
import json
import math
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time as dtime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from ..config import BudgetLimitConfig, Settings
from ..events import EventBus, EventType

PERIODS = ("daily", "monthly", "total")

DateLike = Union[date, datetime, str]


@dataclass(frozen=True)
class SpendRecord:
    """One immutable ledger entry."""

    timestamp: float
    date: str
    provider: str
    amount: float
    category: str = "unknown"
    trait_index: int = 0
    success: bool = True
    request_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpendRecord":
        return cls(
            timestamp=float(data["timestamp"]),
            date=str(data["date"]),
            provider=str(data["provider"]),
            amount=float(data["amount"]),
            category=data.get("category", "unknown"),
            trait_index=int(data.get("trait_index", 0)),
            success=bool(data.get("success", True)),
            request_id=data.get("request_id", ""),
        )


@dataclass
class BudgetAlert:
    """A threshold alert raised for a provider period."""

    timestamp: float
    provider: str
    type: str
    percentage: float
    message: str


@dataclass
class BudgetDecision:
    """Outcome of a pre-flight budget check."""

    allowed: bool
    reason: Optional[str] = None
    message: str = ""
    remaining: Optional[float] = None
    required: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _to_datetime(value: DateLike, end_of_day: bool = False) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, dtime.max if end_of_day else dtime.min)


class BudgetLedger:
    """
    Persistent spend ledger with pre-flight budget enforcement.

    Files live under ``<data_dir>/budget``: ``spend_records.jsonl``,
    ``budget_limits.json`` and ``budget_alerts.jsonl``. When the directory
    cannot be used the ledger keeps working in memory only.
    """

    def __init__(self, settings: Settings, events: Optional[EventBus] = None):
        self._settings = settings
        self._events = events
        self._lock = threading.RLock()
        self._dir = Path(settings.data_dir) / "budget"
        self._persistent = False
        self.is_initialized = False

        self._records: List[SpendRecord] = []
        self._alerts: List[BudgetAlert] = []
        self._limits: Dict[str, BudgetLimitConfig] = {
            name: limit.model_copy() for name, limit in settings.provider_budgets.items()
        }
        self.global_monthly = settings.global_monthly_budget
        self.warning_threshold = settings.budget_warning_threshold
        self._warnings_sent: set = set()

        today = datetime.now().date()
        self._current_day = today
        self._current_month = (today.year, today.month)

    @property
    def records_path(self) -> Path:
        return self._dir / "spend_records.jsonl"

    @property
    def limits_path(self) -> Path:
        return self._dir / "budget_limits.json"

    @property
    def alerts_path(self) -> Path:
        return self._dir / "budget_alerts.jsonl"

    @property
    def is_persistent(self) -> bool:
        return self._persistent

    def initialize(self) -> bool:
        """
        Load the ledger, limits and alerts from disk.

        Returns:
            True if persistent storage is available, False if running in memory.
        """
        with self._lock:
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                self._records = [SpendRecord.from_dict(d) for d in self._read_jsonl(self.records_path)]
                self._alerts = [BudgetAlert(**d) for d in self._read_jsonl(self.alerts_path)]
                self._load_limits()
                self._persistent = True
                logger.info(f"Budget ledger initialized with {len(self._records)} spend records")
            except (OSError, ValueError) as e:
                self._persistent = False
                logger.warning(f"Budget storage unavailable, tracking spend in memory only: {e}")
            self.is_initialized = True
            return self._persistent

    def _read_jsonl(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        rows = []
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed line {lineno} in {path.name}: {e}")
        return rows

    def _append_jsonl(self, path: Path, row: Dict[str, Any]) -> None:
        if not self._persistent:
            return
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(f"Failed to persist {path.name}: {e}")

    def _load_limits(self) -> None:
        if not self.limits_path.exists():
            return
        with self.limits_path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        for provider, limits in raw.get("providers", {}).items():
            self._limits[provider] = BudgetLimitConfig(**limits)
        if "global_monthly" in raw:
            self.global_monthly = float(raw["global_monthly"])
        if "warning_threshold" in raw:
            self.warning_threshold = float(raw["warning_threshold"])

    def _save_limits(self) -> None:
        if not self._persistent:
            return
        data = {
            "providers": {name: limit.model_dump() for name, limit in self._limits.items()},
            "global_monthly": self.global_monthly,
            "warning_threshold": self.warning_threshold,
        }
        try:
            with self.limits_path.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error(f"Failed to save budget limits: {e}")

    # ---- Period handling ----

    def _check_rollover(self) -> None:
        today = datetime.now().date()
        if today != self._current_day:
            self._current_day = today
            self.reset_budget_period("daily")
        month = (today.year, today.month)
        if month != self._current_month:
            self._current_month = month
            self.reset_budget_period("monthly")

    def reset_budget_period(self, period_type: str = "daily") -> None:
        """Clear warning dedup state for a period that has rolled over."""
        if period_type not in ("daily", "monthly"):
            raise ValueError(f"Invalid period: {period_type}")
        marker = f"_{period_type}_"
        with self._lock:
            self._warnings_sent = {key for key in self._warnings_sent if marker not in key}
        logger.info(f"Budget {period_type} period reset")
        self._emit(EventType.BUDGET_RESET, type=period_type, timestamp=time.time())

    # ---- Limits ----

    def get_limits(self, provider: str) -> BudgetLimitConfig:
        with self._lock:
            return self._limits.get(provider, self._settings.default_provider_budget)

    def set_budget_limit(self, provider: str, limit_type: str, amount: float) -> None:
        """
        Change a ceiling and persist it.

        Args:
            provider: Provider name, or "global" for the global monthly ceiling.
            limit_type: "daily" or "monthly".
            amount: New ceiling in USD.
        """
        amount = float(amount)
        if amount < 0:
            raise ValueError("Budget limit must not be negative")
        if limit_type not in ("daily", "monthly"):
            raise ValueError(f"Invalid limit type: {limit_type}")

        with self._lock:
            if provider == "global":
                if limit_type != "monthly":
                    raise ValueError("The global budget only has a monthly limit")
                self.global_monthly = amount
            else:
                current = self._limits.get(provider, self._settings.default_provider_budget)
                self._limits[provider] = current.model_copy(update={limit_type: amount})
            self._save_limits()

        logger.info(f"Budget limit changed: {provider} {limit_type} = ${amount:.2f}")
        self._emit(EventType.BUDGET_LIMIT_CHANGED, provider=provider, type=limit_type, amount=amount)

    # ---- Spend ----

    def record_spend(
        self,
        provider: str,
        amount: float,
        category: str = "unknown",
        trait_index: int = 0,
        success: bool = True,
        request_id: Optional[str] = None,
    ) -> SpendRecord:
        """Append a spend record and re-evaluate warning thresholds."""
        record = self._build_record(provider, amount, category, trait_index, success, request_id)
        with self._lock:
            self._check_rollover()
            self._records.append(record)
            self._append_jsonl(self.records_path, asdict(record))
        self._after_spend(record)
        return record

    async def record_spend_async(
        self,
        provider: str,
        amount: float,
        category: str = "unknown",
        trait_index: int = 0,
        success: bool = True,
        request_id: Optional[str] = None,
    ) -> SpendRecord:
        """Same as record_spend, with the ledger file append done in a worker thread."""
        record = self._build_record(provider, amount, category, trait_index, success, request_id)
        with self._lock:
            self._check_rollover()
            self._records.append(record)
        await asyncio.to_thread(self._persist_record, record)
        self._after_spend(record)
        return record

    def _build_record(
        self,
        provider: str,
        amount: float,
        category: str,
        trait_index: int,
        success: bool,
        request_id: Optional[str],
    ) -> SpendRecord:
        now = datetime.now()
        return SpendRecord(
            timestamp=now.timestamp(),
            date=now.date().isoformat(),
            provider=provider,
            amount=float(amount),
            category=category or "unknown",
            trait_index=trait_index or 0,
            success=success,
            request_id=request_id or generate_request_id(),
        )

    def _persist_record(self, record: SpendRecord) -> None:
        with self._lock:
            self._append_jsonl(self.records_path, asdict(record))

    def _after_spend(self, record: SpendRecord) -> None:
        logger.debug(f"Recorded spend ${record.amount:.4f} for {record.provider} ({record.category})")
        self.check_budget_limits(record.provider)
        self._emit(EventType.BUDGET_SPEND_RECORDED, **asdict(record))

    def _matches_period(self, record: SpendRecord, period: str, today: date) -> bool:
        if period == "daily":
            return record.date == today.isoformat()
        if period == "monthly":
            return record.date[:7] == today.isoformat()[:7]
        return True

    def get_current_spend(self, provider: str, period: str = "daily") -> float:
        """Sum of successful spend for a provider in the current period."""
        if period not in PERIODS:
            raise ValueError(f"Invalid period: {period}")
        today = datetime.now().date()
        with self._lock:
            return math.fsum(
                r.amount
                for r in self._records
                if r.provider == provider and r.success and self._matches_period(r, period, today)
            )

    def get_global_spend(self, period: str = "monthly") -> float:
        """Sum of successful spend across every provider in the current period."""
        if period not in PERIODS:
            raise ValueError(f"Invalid period: {period}")
        today = datetime.now().date()
        with self._lock:
            return math.fsum(r.amount for r in self._records if r.success and self._matches_period(r, period, today))

    def get_remaining_budget(self, provider: str) -> Dict[str, Dict[str, float]]:
        limits = self.get_limits(provider)
        result = {}
        for period, limit in (("daily", limits.daily), ("monthly", limits.monthly)):
            spent = self.get_current_spend(provider, period)
            result[period] = {
                "limit": limit,
                "spent": spent,
                "remaining": max(0.0, limit - spent),
                "percentage": (spent / limit) * 100 if limit > 0 else 0.0,
            }
        return result

    def can_make_request(self, provider: str, estimated_cost: float) -> BudgetDecision:
        """
        Pre-flight check: provider daily, then provider monthly, then global monthly.

        Args:
            provider: Provider name.
            estimated_cost: Cost of the intended request in USD.

        Returns:
            BudgetDecision with ``allowed`` False and a reason on denial.
        """
        with self._lock:
            self._check_rollover()
        cost = float(estimated_cost)
        remaining = self.get_remaining_budget(provider)

        decision = None
        for period in ("daily", "monthly"):
            left = remaining[period]["remaining"]
            if left < cost:
                decision = BudgetDecision(
                    allowed=False,
                    reason=f"{period}_limit_exceeded",
                    message=(
                        f"Request would exceed {period} budget. "
                        f"Remaining: ${left:.2f}, Required: ${cost:.2f}"
                    ),
                    remaining=left,
                    required=cost,
                    details=remaining[period],
                )
                break

        if decision is None:
            global_spend = self.get_global_spend("monthly")
            if global_spend + cost > self.global_monthly:
                left = max(0.0, self.global_monthly - global_spend)
                decision = BudgetDecision(
                    allowed=False,
                    reason="global_limit_exceeded",
                    message=(
                        f"Request would exceed global monthly budget. "
                        f"Remaining: ${left:.2f}, Required: ${cost:.2f}"
                    ),
                    remaining=left,
                    required=cost,
                )

        if decision is None:
            return BudgetDecision(allowed=True, remaining=remaining["daily"]["remaining"], required=cost)

        logger.warning(f"Budget denied request for {provider}: {decision.message}")
        self._emit(
            EventType.BUDGET_EXCEEDED,
            provider=provider,
            reason=decision.reason,
            remaining=decision.remaining,
            required=cost,
        )
        return decision

    def check_budget_limits(self, provider: str) -> None:
        """Emit at most one warning per provider, period and 10% bucket."""
        remaining = self.get_remaining_budget(provider)
        for period in ("daily", "monthly"):
            info = remaining[period]
            percentage = info["percentage"]
            if percentage < self.warning_threshold:
                continue

            key = f"{provider}_{period}_{math.floor(percentage / 10) * 10}"
            with self._lock:
                if key in self._warnings_sent:
                    continue
                self._warnings_sent.add(key)

            logger.warning(f"{provider} {period} budget at {percentage:.1f}%")
            self._emit(
                EventType.BUDGET_WARNING,
                provider=provider,
                type=period,
                percentage=percentage,
                remaining=info["remaining"],
                limit=info["limit"],
            )
            self._record_alert(provider, period, percentage)

    def _record_alert(self, provider: str, period: str, percentage: float) -> None:
        alert = BudgetAlert(
            timestamp=time.time(),
            provider=provider,
            type=period,
            percentage=percentage,
            message=f"{provider} {period} budget at {percentage:.1f}%",
        )
        with self._lock:
            self._alerts.append(alert)
            self._append_jsonl(self.alerts_path, asdict(alert))

    def get_alerts(self) -> List[BudgetAlert]:
        with self._lock:
            return list(self._alerts)

    # ---- Reporting ----

    def get_spend_history(self, start: DateLike, end: DateLike) -> List[SpendRecord]:
        start_ts = _to_datetime(start).timestamp()
        end_ts = _to_datetime(end, end_of_day=True).timestamp()
        with self._lock:
            return [r for r in self._records if start_ts <= r.timestamp <= end_ts]

    def known_providers(self) -> List[str]:
        with self._lock:
            names = list(self._limits)
            for record in self._records:
                if record.provider not in names:
                    names.append(record.provider)
        return names

    def get_budget_summary(self) -> Dict[str, Any]:
        return {
            "providers": {name: self.get_remaining_budget(name) for name in self.known_providers()},
            "global": {
                "monthly_spent": self.get_global_spend("monthly"),
                "monthly_limit": self.global_monthly,
            },
            "warning_threshold": self.warning_threshold,
        }

    @staticmethod
    def _group_by(records: List[SpendRecord], key: str) -> Dict[str, Dict[str, Any]]:
        groups: Dict[str, Dict[str, Any]] = {}
        for record in records:
            group = str(getattr(record, key) or "unknown")
            bucket = groups.setdefault(group, {"count": 0, "total": 0.0, "records": []})
            bucket["count"] += 1
            bucket["records"].append(record)
        for bucket in groups.values():
            bucket["total"] = math.fsum(r.amount for r in bucket["records"])
        return groups

    def export_budget_report(self, start: DateLike, end: DateLike) -> Dict[str, Any]:
        history = self.get_spend_history(start, end)
        return {
            "period": {"start": str(start), "end": str(end)},
            "total_spend": math.fsum(r.amount for r in history),
            "record_count": len(history),
            "by_provider": self._group_by(history, "provider"),
            "by_category": self._group_by(history, "category"),
            "by_date": self._group_by(history, "date"),
            "records": history,
        }

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **data)


__all__ = [
    "BudgetAlert",
    "BudgetDecision",
    "BudgetLedger",
    "SpendRecord",
    "generate_request_id",
]
