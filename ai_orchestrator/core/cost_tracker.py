"""
Token cost accounting per provider and subject.

Accumulates usage in memory for the current billing period. Totals are
process-local and never authoritative for billing; persisting them is the
caller's job (see ``storage.repository``).
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .pricing import ProviderCatalog, calculate_cost

logger = logging.getLogger(__name__)

# Share of the budget at which a warning is raised
BUDGET_WARNING_RATIO = 0.8


class BudgetLevel(Enum):
    """How close spending is to the configured budget."""
    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass
class UsageRecord:
    """Accumulated usage for one (provider, subject, hour) bucket."""
    provider_id: str
    subject_id: Optional[str]
    timestamp_bucket: str
    tokens: int = 0
    cost: Decimal = Decimal("0")
    requests: int = 0


@dataclass(frozen=True)
class ProviderUsage:
    """Aggregated usage for one provider."""
    tokens: int
    cost: float
    requests: int


@dataclass(frozen=True)
class CostTotals:
    """Read-only aggregation returned by ``CostTracker.totals``."""
    by_provider: Dict[str, ProviderUsage] = field(default_factory=dict)
    total: float = 0.0
    tokens: int = 0
    requests: int = 0


@dataclass(frozen=True)
class BudgetState:
    """Current budget state for the billing period."""
    amount_used: float
    amount_remaining: float
    level: BudgetLevel


class CostTracker:
    """Accumulates token usage and cost.

    ``record`` never raises: a tracking failure must not block the response
    that produced it.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        clock: Callable[[], float] = time.time,
    ):
        self.catalog = catalog
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, Optional[str], str], UsageRecord] = {}

    def _bucket(self) -> str:
        return datetime.fromtimestamp(self._clock()).strftime("%Y-%m-%dT%H:00")

    def record(
        self,
        provider_id: str,
        tokens: int,
        subject_id: Optional[str] = None,
    ) -> float:
        """Record token usage for a provider.

        Args:
            provider_id: Provider that served the request
            tokens: Tokens consumed (exact or estimated)
            subject_id: Optional end-user the usage is attributed to

        Returns:
            Cost of this usage, or 0.0 if it could not be recorded
        """
        try:
            profile = self.catalog.get_profile(provider_id)
            cost = calculate_cost(profile, tokens)
            key = (provider_id, subject_id, self._bucket())
            with self._lock:
                record = self._records.get(key)
                if record is None:
                    record = UsageRecord(
                        provider_id=provider_id,
                        subject_id=subject_id,
                        timestamp_bucket=key[2],
                    )
                    self._records[key] = record
                record.tokens += tokens
                record.cost += Decimal(str(cost))
                record.requests += 1
            return cost
        except Exception:
            logger.exception("Failed to record usage for provider %s", provider_id)
            return 0.0

    def totals(self, subject_id: Optional[str] = None) -> CostTotals:
        """Aggregate recorded usage.

        Args:
            subject_id: Restrict totals to one subject; all subjects if None

        Returns:
            CostTotals broken down by provider
        """
        with self._lock:
            records = [
                r for r in self._records.values()
                if subject_id is None or r.subject_id == subject_id
            ]

        by_provider: Dict[str, Dict[str, Decimal]] = {}
        for r in records:
            agg = by_provider.setdefault(
                r.provider_id, {"tokens": 0, "cost": Decimal("0"), "requests": 0}
            )
            agg["tokens"] += r.tokens
            agg["cost"] += r.cost
            agg["requests"] += r.requests

        usage = {
            provider_id: ProviderUsage(
                tokens=int(agg["tokens"]),
                cost=float(agg["cost"]),
                requests=int(agg["requests"]),
            )
            for provider_id, agg in sorted(by_provider.items())
        }
        return CostTotals(
            by_provider=usage,
            total=float(sum((agg["cost"] for agg in by_provider.values()), Decimal("0"))),
            tokens=sum(u.tokens for u in usage.values()),
            requests=sum(u.requests for u in usage.values()),
        )

    def records(self) -> List[UsageRecord]:
        """Copy of the raw usage buckets, oldest bucket first."""
        with self._lock:
            return sorted((replace(r) for r in self._records.values()), key=lambda r: r.timestamp_bucket)

    def reset_period(self) -> None:
        """Clear all accumulators for a new billing period."""
        with self._lock:
            self._records.clear()
        logger.info("Cost tracker reset for new billing period")

    def budget_status(self, monthly_budget: float) -> BudgetState:
        """Compare current spending against a budget.

        Raises:
            ValueError: If monthly_budget is not positive
        """
        if monthly_budget <= 0:
            raise ValueError("monthly_budget must be > 0")

        used = self.totals().total
        if used >= monthly_budget:
            level = BudgetLevel.EXCEEDED
        elif used >= monthly_budget * BUDGET_WARNING_RATIO:
            level = BudgetLevel.WARNING
        else:
            level = BudgetLevel.OK
        return BudgetState(
            amount_used=used,
            amount_remaining=max(0.0, monthly_budget - used),
            level=level,
        )
