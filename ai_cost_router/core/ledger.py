"""
Cost ledger.

Prices completed requests, aggregates usage per (provider, tool, user)
and derives summaries, projections and threshold checks from the
aggregated records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..storage.models import UsageEvent, UsageRecord
from ..storage.repository import InMemoryUsageRepository, UsageRepository
from .errors import CostTrackingFailure
from .pricing import DEFAULT_PRICING_TABLE, PricingTable
from .pricing import calculate_cost as _price
from .thresholds import CostThresholds, ThresholdBreach, check_thresholds
from .token_counter import TokenUsage
from .token_counter import estimate_tokens as _estimate

logger = structlog.get_logger()

_COST_PLACES = Decimal("0.000001")
_PER_TOKEN_PLACES = Decimal("0.00000001")


def _round(value: Decimal, places: Decimal) -> float:
    return float(value.quantize(places, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class UsageSummary:
    """Totals and averages over a set of usage records."""
    total_cost: float = 0.0
    total_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    avg_cost_per_request: float = 0.0
    avg_cost_per_token: float = 0.0
    avg_tokens_per_request: int = 0
    currency: str = "USD"
    last_reset: Optional[datetime] = None

    @classmethod
    def from_records(cls, records: Iterable[UsageRecord], currency: str = "USD") -> "UsageSummary":
        """Aggregate records into one summary.

        Sums are taken in Decimal and rounded only at the end, so the
        result does not depend on record order.
        """
        total_cost = Decimal("0")
        requests = 0
        input_tokens = 0
        output_tokens = 0
        last_reset = None
        for record in records:
            total_cost += record.total_cost
            requests += record.requests
            input_tokens += record.input_tokens
            output_tokens += record.output_tokens
            if last_reset is None or record.last_reset > last_reset:
                last_reset = record.last_reset

        total_tokens = input_tokens + output_tokens
        avg_per_request = total_cost / requests if requests else Decimal("0")
        avg_per_token = total_cost / total_tokens if total_tokens else Decimal("0")
        avg_tokens = (
            (Decimal(total_tokens) / requests).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            if requests else Decimal("0")
        )

        return cls(
            total_cost=_round(total_cost, _COST_PLACES),
            total_requests=requests,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            avg_cost_per_request=_round(avg_per_request, _COST_PLACES),
            avg_cost_per_token=_round(avg_per_token, _PER_TOKEN_PLACES),
            avg_tokens_per_request=int(avg_tokens),
            currency=currency,
            last_reset=last_reset,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_cost": self.total_cost,
            "total_requests": self.total_requests,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "avg_cost_per_request": self.avg_cost_per_request,
            "avg_cost_per_token": self.avg_cost_per_token,
            "avg_tokens_per_request": self.avg_tokens_per_request,
            "currency": self.currency,
            "last_reset": self.last_reset.isoformat() if self.last_reset else None,
        }


@dataclass(frozen=True)
class UsageStats:
    """Global summary plus a per-provider breakdown of the same shape."""
    summary: UsageSummary
    providers: Dict[str, UsageSummary]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "providers": {name: s.to_dict() for name, s in self.providers.items()},
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CostProjection:
    """Linear extrapolation of the current total cost."""
    daily: float
    weekly: float
    monthly: float
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily": self.daily,
            "weekly": self.weekly,
            "monthly": self.monthly,
            "currency": self.currency,
        }


class CostLedger:
    """Prices usage and aggregates it through a usage repository."""

    def __init__(
        self,
        repository: Optional[UsageRepository] = None,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        currency: str = "USD",
    ):
        self.repository = repository if repository is not None else InMemoryUsageRepository()
        self.pricing = pricing
        self.currency = currency

    def calculate_cost(
        self,
        provider,
        input_tokens: int,
        output_tokens: int,
        model: Optional[str] = None,
    ) -> Decimal:
        """Exact cost of a request; Decimal("0") for an unpriced provider."""
        return _price(provider, TokenUsage(input_tokens, output_tokens), model, self.pricing)

    @staticmethod
    def estimate_tokens(text: Optional[str]) -> int:
        return _estimate(text)

    async def track_usage(self, event: UsageEvent) -> Optional[UsageRecord]:
        """Fold one completed request into its usage record.

        Args:
            event: Usage of the completed request

        Returns:
            The updated record, or None when the provider is not priced

        Raises:
            CostTrackingFailure: If the repository fails to persist the usage
        """
        if event.provider not in self.pricing:
            logger.warning(
                "usage_unknown_provider",
                provider=event.provider,
                tool_context=event.tool_context,
            )
            return None

        if event.total_cost is not None:
            cost = event.total_cost
        else:
            cost = self.calculate_cost(
                event.provider, event.input_tokens, event.output_tokens, event.model
            )

        try:
            record = await self.repository.increment(event, cost, datetime.now())
        except Exception as e:
            raise CostTrackingFailure(event.provider, str(e)) from e

        logger.debug(
            "usage_tracked",
            provider=event.provider,
            tool_context=event.tool_context,
            user_id=event.user_id,
            cost=str(cost),
            requests=record.requests,
        )
        return record

    async def get_usage_stats(self) -> UsageStats:
        """Aggregate all records; a failing store yields all-zero stats."""
        try:
            records = await self.repository.all_records()
        except Exception as e:
            logger.error("usage_stats_failed", error=str(e))
            records = []

        by_provider: Dict[str, List[UsageRecord]] = {}
        for record in records:
            by_provider.setdefault(record.provider, []).append(record)

        return UsageStats(
            summary=UsageSummary.from_records(records, self.currency),
            providers={
                provider: UsageSummary.from_records(provider_records, self.currency)
                for provider, provider_records in sorted(by_provider.items())
            },
        )

    async def reset_usage(self, provider: Optional[str] = None) -> int:
        """Zero usage for one provider, or for all of them.

        Returns:
            Number of records reset
        """
        provider = getattr(provider, "value", provider)
        count = await self.repository.reset(provider, datetime.now())
        logger.info("usage_reset", provider=provider or "all", records=count)
        return count

    async def get_cost_projection(self, days: int = 30) -> CostProjection:
        """Project the current total (taken as one day of spend) forward.

        Args:
            days: Length of the monthly horizon

        Returns:
            CostProjection with weekly = daily * 7 and monthly = daily * days
        """
        if days <= 0:
            raise ValueError("days must be positive")
        stats = await self.get_usage_stats()
        return self._project(stats.summary.total_cost, days)

    def _project(self, total_cost: float, days: int) -> CostProjection:
        daily = Decimal(str(total_cost))
        return CostProjection(
            daily=_round(daily, _COST_PLACES),
            weekly=_round(daily * 7, _COST_PLACES),
            monthly=_round(daily * days, _COST_PLACES),
            currency=self.currency,
        )

    async def check_thresholds(self, thresholds: CostThresholds) -> List[ThresholdBreach]:
        """Report which configured thresholds the current usage meets or exceeds."""
        stats = await self.get_usage_stats()
        total_cost = stats.summary.total_cost
        projection = self._project(total_cost, 30)
        return check_thresholds(
            projection.daily, projection.weekly, projection.monthly, total_cost, thresholds
        )
