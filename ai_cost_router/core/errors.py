"""
Error taxonomy for routing and cost governance.

PermissionDenied and BudgetExceeded are raised before any provider is
contacted. Provider failures inside a fallback chain are handled by the
chain itself; only exhaustion reaches the caller. CostTrackingFailure is
raised by the ledger and always contained by the router.
"""

from typing import Any, Optional, Sequence


class RoutingError(Exception):
    """Base class for every error raised by the routing engine."""


class PermissionDenied(RoutingError):
    """Raised when a role has no access to a tool context."""
    def __init__(self, role: str, tool_context: str):
        super().__init__(
            f"User role '{role}' does not have access to '{tool_context}' tool"
        )
        self.role = role
        self.tool_context = tool_context


class BudgetExceeded(RoutingError):
    """Raised when a request's estimated cost exceeds the role's cap for the tool."""
    def __init__(self, role: str, tool_context: str, estimated_cost: float, max_cost: float):
        super().__init__(
            f"Request exceeds cost limit for {role} role: estimated ${estimated_cost:.4f} "
            f"> ${max_cost:.4f} allowed for {tool_context}"
        )
        self.role = role
        self.tool_context = tool_context
        self.estimated_cost = estimated_cost
        self.max_cost = max_cost


class ProviderUnavailable(RoutingError):
    """Raised when a provider is missing or failed its availability check."""
    def __init__(self, provider: str, reason: str = "not available"):
        super().__init__(f"Provider '{provider}' {reason}")
        self.provider = provider


def _provider_name(attempt: Any) -> str:
    provider = getattr(attempt, "provider", attempt)
    return str(getattr(provider, "value", provider))


class AllProvidersExhausted(RoutingError):
    """Raised when every candidate in a fallback chain was unavailable or failed."""
    def __init__(
        self,
        primary: str,
        attempts: Sequence[Any] = (),
        last_error: Optional[BaseException] = None,
    ):
        tried = ", ".join(_provider_name(a) for a in attempts) or primary
        super().__init__(f"No available providers in fallback chain for '{primary}' (tried: {tried})")
        self.primary = primary
        self.attempts = list(attempts)
        self.last_error = last_error


class TranscriptionFailure(RoutingError):
    """Raised when audio cannot be turned into text."""


class CostTrackingFailure(RoutingError):
    """Raised when usage cannot be persisted to the ledger."""
    def __init__(self, provider: str, message: str):
        super().__init__(f"Failed to record usage for {provider}: {message}")
        self.provider = provider
