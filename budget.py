#!/usr/bin/env python3
"""
Spend tracking for the generation service.

BudgetGuard keeps an append-only ledger of UsageRecord entries and answers
whether a request of a given estimated cost still fits under the daily and
monthly ceilings. Day and month boundaries are local calendar boundaries,
computed from record timestamps whenever totals are queried.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import config, get_logger
from tokens import calculate_cost

logger = get_logger("budget")


@dataclass(frozen=True)
class UsageRecord:
    timestamp: datetime
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    operation: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.timestamp()
        return data


class BudgetGuard:
    """Tracks cumulative spend against daily and monthly ceilings.

    Thread-safe; shared by every concurrent generation call in the process.
    """

    def __init__(
        self,
        daily_limit: Optional[float] = None,
        monthly_limit: Optional[float] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.daily_limit = daily_limit if daily_limit is not None else config.OPENAI_DAILY_BUDGET
        self.monthly_limit = monthly_limit if monthly_limit is not None else config.OPENAI_MONTHLY_BUDGET
        self._now = now
        self._records: List[UsageRecord] = []
        self._lock = Lock()

    @staticmethod
    def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(model, input_tokens, output_tokens)

    def _window_starts(self) -> tuple:
        now = self._now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        return day_start, month_start

    def _totals(self) -> tuple:
        day_start, month_start = self._window_starts()
        daily = 0.0
        monthly = 0.0
        for record in self._records:
            if record.timestamp >= month_start:
                monthly += record.cost
                if record.timestamp >= day_start:
                    daily += record.cost
        return daily, monthly

    def month_start(self) -> datetime:
        """Start of the current monthly budget window."""
        return self._window_starts()[1]

    def get_daily_usage(self) -> float:
        with self._lock:
            return self._totals()[0]

    def get_monthly_usage(self) -> float:
        with self._lock:
            return self._totals()[1]

    def can_afford(self, estimated_cost: float) -> bool:
        """False if today's or this month's spend plus `estimated_cost` would exceed its ceiling."""
        with self._lock:
            daily, monthly = self._totals()
        return daily + estimated_cost <= self.daily_limit and monthly + estimated_cost <= self.monthly_limit

    def record_usage(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation: str,
        cost: Optional[float] = None,
    ) -> UsageRecord:
        """Append a ledger entry. `cost` overrides the token-based price (used for audio minutes)."""
        record = UsageRecord(
            timestamp=self._now(),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost if cost is not None else calculate_cost(model, input_tokens, output_tokens),
            operation=operation,
        )
        with self._lock:
            self._records.append(record)
        logger.debug(
            "Recorded usage: %s %s in=%d out=%d cost=$%.4f",
            operation, model, input_tokens, output_tokens, record.cost,
        )
        return record

    def load_records(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Rehydrate the ledger from persisted rows (timestamp as epoch seconds)."""
        loaded = []
        for row in rows:
            try:
                loaded.append(UsageRecord(
                    timestamp=datetime.fromtimestamp(float(row["timestamp"])),
                    model=row["model"],
                    input_tokens=int(row["input_tokens"]),
                    output_tokens=int(row["output_tokens"]),
                    cost=float(row["cost"]),
                    operation=row.get("operation") or "completion",
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed usage record {row}: {e}")
        with self._lock:
            self._records.extend(loaded)
            self._records.sort(key=lambda r: r.timestamp)
        return len(loaded)

    def get_usage_stats(self) -> Dict[str, Any]:
        with self._lock:
            daily, monthly = self._totals()
        return {
            "daily_usage": daily,
            "monthly_usage": monthly,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
            "daily_remaining": max(0.0, self.daily_limit - daily),
            "monthly_remaining": max(0.0, self.monthly_limit - monthly),
            "is_over_daily_limit": daily >= self.daily_limit,
            "is_over_monthly_limit": monthly >= self.monthly_limit,
        }

    def get_recent_records(self, limit: int = 100) -> List[UsageRecord]:
        with self._lock:
            return list(self._records[-limit:])

    def clear_old_records(self, retention_days: int = 30) -> int:
        """Drop in-memory records older than the retention window; returns how many were dropped."""
        # Never drop entries that still count towards the current month
        cutoff = min(self._now() - timedelta(days=retention_days), self._window_starts()[1])
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp >= cutoff]
            return before - len(self._records)
