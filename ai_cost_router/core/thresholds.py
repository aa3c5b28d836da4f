"""
Cost threshold checks.

Compares projected spend against configured alert thresholds. Checks
are stateless; AlertCooldown is available to notifiers that want to
suppress repeated alerts between polling cycles.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Mapping, Optional


class ThresholdPeriod(Enum):
    """Spend horizon a threshold applies to."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    TOTAL = "total"


@dataclass(frozen=True)
class CostThresholds:
    """Alert thresholds in USD. A None threshold is never checked."""
    daily: Optional[float] = 1.0
    weekly: Optional[float] = 5.0
    monthly: Optional[float] = 20.0
    total: Optional[float] = 50.0

    def __post_init__(self):
        """Validate thresholds are positive."""
        for period in ThresholdPeriod:
            value = getattr(self, period.value)
            if value is not None and value <= 0:
                raise ValueError(f"{period.value} threshold must be > 0")

    def for_period(self, period: ThresholdPeriod) -> Optional[float]:
        return getattr(self, period.value)


@dataclass(frozen=True)
class ThresholdBreach:
    """A threshold met or exceeded by the observed value."""
    period: ThresholdPeriod
    observed: float
    threshold: float
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "period": self.period.value,
            "observed": self.observed,
            "threshold": self.threshold,
            "message": self.message,
        }


def check_thresholds(
    daily: float,
    weekly: float,
    monthly: float,
    total: float,
    thresholds: CostThresholds,
) -> List[ThresholdBreach]:
    """Report every threshold the observed spend meets or exceeds.

    Args:
        daily: Projected daily spend
        weekly: Projected weekly spend
        monthly: Projected monthly spend
        total: Total recorded spend
        thresholds: Configured thresholds

    Returns:
        Breaches in daily, weekly, monthly, total order (empty if none)
    """
    observed = {
        ThresholdPeriod.DAILY: daily,
        ThresholdPeriod.WEEKLY: weekly,
        ThresholdPeriod.MONTHLY: monthly,
        ThresholdPeriod.TOTAL: total,
    }

    breaches = []
    for period, value in observed.items():
        threshold = thresholds.for_period(period)
        if threshold is None or value < threshold:
            continue
        breaches.append(ThresholdBreach(
            period=period,
            observed=value,
            threshold=threshold,
            message=(
                f"{period.value.capitalize()} cost ${value:.4f} reached the "
                f"${threshold:.2f} threshold"
            ),
        ))
    return breaches


DEFAULT_COOLDOWNS = {
    ThresholdPeriod.DAILY: timedelta(hours=6),
    ThresholdPeriod.WEEKLY: timedelta(hours=24),
    ThresholdPeriod.MONTHLY: timedelta(hours=24),
    ThresholdPeriod.TOTAL: timedelta(hours=12),
}


class AlertCooldown:
    """Per-period minimum interval between repeated alerts."""

    def __init__(self, cooldowns: Optional[Mapping[ThresholdPeriod, timedelta]] = None):
        self.cooldowns = dict(DEFAULT_COOLDOWNS)
        if cooldowns:
            self.cooldowns.update(cooldowns)
        self._last_sent: Dict[ThresholdPeriod, datetime] = {}

    def should_alert(self, period: ThresholdPeriod, now: Optional[datetime] = None) -> bool:
        last = self._last_sent.get(period)
        if last is None:
            return True
        now = now or datetime.now()
        return now - last >= self.cooldowns[period]

    def mark_sent(self, period: ThresholdPeriod, now: Optional[datetime] = None) -> None:
        self._last_sent[period] = now or datetime.now()

    def filter(
        self,
        breaches: List[ThresholdBreach],
        now: Optional[datetime] = None,
    ) -> List[ThresholdBreach]:
        """Keep breaches whose period is out of cooldown and mark them as sent."""
        now = now or datetime.now()
        due = [b for b in breaches if self.should_alert(b.period, now)]
        for breach in due:
            self.mark_sent(breach.period, now)
        return due
