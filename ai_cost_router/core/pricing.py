"""
Pricing calculations and rate management.

Handles cost computations for each provider and its models.
"""

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from .token_counter import TokenUsage

_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    output_cost_per_1k: Decimal  # Cost per 1K output tokens

    def __post_init__(self):
        """Validate prices are not negative."""
        if self.input_cost_per_1k < 0:
            raise ValueError("input_cost_per_1k cannot be negative")
        if self.output_cost_per_1k < 0:
            raise ValueError("output_cost_per_1k cannot be negative")


@dataclass(frozen=True)
class ProviderPricing:
    """Model prices for one provider, with the model used when none is named."""
    default_model: str
    models: Mapping[str, ModelPricing]

    def __post_init__(self):
        if self.default_model not in self.models:
            raise ValueError(f"default model '{self.default_model}' has no pricing entry")
        object.__setattr__(self, "models", MappingProxyType(dict(self.models)))

    def for_model(self, model: Optional[str] = None) -> ModelPricing:
        """Pricing for a model, falling back to the provider default."""
        if model and model in self.models:
            return self.models[model]
        return self.models[self.default_model]


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table keyed by provider id."""
    providers: Mapping[str, ProviderPricing]

    def __post_init__(self):
        object.__setattr__(self, "providers", MappingProxyType({
            str(getattr(provider, "value", provider)): pricing
            for provider, pricing in self.providers.items()
        }))

    def __contains__(self, provider) -> bool:
        return str(getattr(provider, "value", provider)) in self.providers

    def get_pricing(self, provider, model: Optional[str] = None) -> Optional[ModelPricing]:
        """Get pricing for a provider/model pair.

        Args:
            provider: Provider identifier (enum member or raw string)
            model: Optional model identifier; unknown models use the provider default

        Returns:
            ModelPricing, or None if the provider is not priced
        """
        pricing = self.providers.get(str(getattr(provider, "value", provider)))
        if pricing is None:
            return None
        return pricing.for_model(model)


def _model(input_per_1k: str, output_per_1k: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1k=Decimal(input_per_1k),
        output_cost_per_1k=Decimal(output_per_1k),
    )


CLAUDE_SONNET_MODEL = "claude-3-5-sonnet-20241022"
CLAUDE_HAIKU_MODEL = "claude-3-5-haiku-20241022"

# Fixed pricing table - no dynamic fetching
DEFAULT_PRICING_TABLE = PricingTable({
    "claude": ProviderPricing(
        default_model=CLAUDE_SONNET_MODEL,
        models={
            CLAUDE_SONNET_MODEL: _model("0.003", "0.015"),
            CLAUDE_HAIKU_MODEL: _model("0.00025", "0.00125"),
        },
    ),
    "claude-haiku": ProviderPricing(
        default_model=CLAUDE_HAIKU_MODEL,
        models={CLAUDE_HAIKU_MODEL: _model("0.00025", "0.00125")},
    ),
    "openai": ProviderPricing(
        default_model="gpt-4o-mini",
        models={
            "gpt-4o-mini": _model("0.00015", "0.0006"),
            "gpt-4o": _model("0.0025", "0.01"),
        },
    ),
    "copilot": ProviderPricing(
        default_model="copilot",
        models={"copilot": _model("0.002", "0.008")},  # Estimated from GitHub pricing
    ),
    "ollama": ProviderPricing(
        default_model="llama3.1:8b",
        models={"llama3.1:8b": _model("0", "0")},  # Local, free
    ),
})


def calculate_cost(
    provider,
    usage: TokenUsage,
    model: Optional[str] = None,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> Decimal:
    """Calculate total cost for provider usage.

    The result is exact and linear in the token counts: no rounding is
    applied, so doubling both counts doubles the cost.

    Args:
        provider: Provider identifier
        usage: Token usage data
        model: Optional model identifier
        table: Pricing table to use

    Returns:
        Total cost in USD, Decimal("0") for an unpriced provider
    """
    pricing = table.get_pricing(provider, model)
    if pricing is None:
        return Decimal("0")

    # (tokens / 1000) * cost_per_1k
    input_cost = (Decimal(usage.input_tokens) / _THOUSAND) * pricing.input_cost_per_1k
    output_cost = (Decimal(usage.output_tokens) / _THOUSAND) * pricing.output_cost_per_1k

    return input_cost + output_cost
