"""
Data models for storage layer.

Defines usage events and the aggregated usage records they feed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageEvent:
    """Usage of one completed request, attributed to a provider and tool.

    total_cost is set when the provider reported a cost; otherwise the
    ledger prices the token counts itself.
    """
    provider: str
    tool_context: str
    input_tokens: int
    output_tokens: int
    model: Optional[str] = None
    user_id: Optional[str] = None
    total_cost: Optional[Decimal] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    processing_time_ms: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate usage counts."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.total_cost is not None and self.total_cost < 0:
            raise ValueError("total_cost cannot be negative")

    @property
    def key(self) -> "UsageKey":
        return UsageKey(self.provider, self.tool_context, self.user_id)


@dataclass(frozen=True)
class UsageKey:
    """Aggregation key of a usage record."""
    provider: str
    tool_context: str
    user_id: Optional[str] = None


@dataclass
class UsageRecord:
    """Aggregated requests, tokens and cost for one usage key.

    Every numeric field only grows between resets.
    """
    provider: str
    tool_context: str
    user_id: Optional[str] = None
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    last_reset: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> UsageKey:
        return UsageKey(self.provider, self.tool_context, self.user_id)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int, output_tokens: int, cost: Decimal) -> None:
        """Fold one request into the record."""
        self.requests += 1
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_cost += cost

    def reset(self, now: datetime) -> None:
        self.requests = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.total_cost = Decimal("0")
        self.last_reset = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "tool_context": self.tool_context,
            "user_id": self.user_id,
            "requests": self.requests,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_cost": float(self.total_cost),
            "last_reset": self.last_reset.isoformat(),
        }
