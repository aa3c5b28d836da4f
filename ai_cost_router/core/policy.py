"""
Static routing policy.

Holds the role permission matrix, per-tool provider table, per-role
request cost caps and provider fallback chains. A policy is built once
(from defaults or YAML) and never mutated afterwards; every lookup is
pure and fails closed.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple, Union

from .enums import (
    ProviderId,
    ToolContext,
    UserRole,
    parse_provider,
    parse_role,
    parse_tool_context,
)

RoleLike = Union[UserRole, str, None]
ToolLike = Union[ToolContext, str, None]
ProviderLike = Union[ProviderId, str, None]


@dataclass(frozen=True)
class ToolRoute:
    """Provider assignments for one tool context."""
    default_provider: ProviderId
    cost_optimized_provider: Optional[ProviderId] = None
    fallback_provider: Optional[ProviderId] = None
    transcription_provider: Optional[ProviderId] = None


@dataclass(frozen=True)
class RoutingPolicy:
    """Immutable routing tables injected into the router at construction."""
    permissions: Mapping[UserRole, FrozenSet[ToolContext]]
    tool_routes: Mapping[ToolContext, ToolRoute]
    max_cost_per_request: Mapping[ToolContext, Mapping[UserRole, float]]
    fallback_chains: Mapping[ProviderId, Tuple[ProviderId, ...]]

    def __post_init__(self):
        """Freeze the nested tables so no caller can mutate them."""
        object.__setattr__(self, "permissions", MappingProxyType({
            role: frozenset(tools) for role, tools in self.permissions.items()
        }))
        object.__setattr__(self, "tool_routes", MappingProxyType(dict(self.tool_routes)))
        object.__setattr__(self, "max_cost_per_request", MappingProxyType({
            tool: MappingProxyType({role: float(cap) for role, cap in caps.items()})
            for tool, caps in self.max_cost_per_request.items()
        }))
        object.__setattr__(self, "fallback_chains", MappingProxyType({
            provider: tuple(chain) for provider, chain in self.fallback_chains.items()
        }))

        for tool, caps in self.max_cost_per_request.items():
            for role, cap in caps.items():
                if cap < 0:
                    raise ValueError(f"max cost for {role.value}/{tool.value} cannot be negative")
        for provider, chain in self.fallback_chains.items():
            if provider in chain:
                raise ValueError(f"fallback chain for {provider.value} cannot contain itself")

    def is_authorized(self, role: RoleLike, tool_context: ToolLike) -> bool:
        """Check whether a role may use a tool. Unknown role or tool is denied."""
        parsed_role = parse_role(role)
        parsed_tool = parse_tool_context(tool_context)
        if parsed_role is None or parsed_tool is None:
            return False
        return parsed_tool in self.permissions.get(parsed_role, frozenset())

    def max_cost(self, role: RoleLike, tool_context: ToolLike) -> float:
        """Maximum estimated cost allowed per request. Unknown role or tool gets 0."""
        parsed_role = parse_role(role)
        parsed_tool = parse_tool_context(tool_context)
        if parsed_role is None or parsed_tool is None:
            return 0.0
        return self.max_cost_per_request.get(parsed_tool, {}).get(parsed_role, 0.0)

    def route_for(self, tool_context: ToolLike) -> Optional[ToolRoute]:
        parsed_tool = parse_tool_context(tool_context)
        if parsed_tool is None:
            return None
        return self.tool_routes.get(parsed_tool)

    def default_provider(self, tool_context: ToolLike) -> Optional[ProviderId]:
        route = self.route_for(tool_context)
        return route.default_provider if route else None

    def cost_optimized_provider(self, tool_context: ToolLike) -> Optional[ProviderId]:
        """Cheaper provider for the tool, or the default when the tool has none."""
        route = self.route_for(tool_context)
        if route is None:
            return None
        return route.cost_optimized_provider or route.default_provider

    def fallback_provider(self, tool_context: ToolLike) -> Optional[ProviderId]:
        route = self.route_for(tool_context)
        if route is None:
            return None
        return route.fallback_provider or route.default_provider

    def transcription_provider(self, tool_context: ToolLike) -> Optional[ProviderId]:
        route = self.route_for(tool_context)
        return route.transcription_provider if route else None

    def static_fallback(self, provider: ProviderLike) -> Tuple[ProviderId, ...]:
        """Ordered fallback list for a primary provider (empty when unknown)."""
        parsed = parse_provider(provider)
        if parsed is None:
            return ()
        return self.fallback_chains.get(parsed, ())

    def candidate_chain(self, primary: ProviderLike) -> Tuple[ProviderId, ...]:
        """Primary provider followed by its static fallbacks."""
        parsed = parse_provider(primary)
        if parsed is None:
            return ()
        return (parsed,) + self.static_fallback(parsed)


ALL_TOOLS = frozenset(ToolContext)

DEFAULT_POLICY = RoutingPolicy(
    permissions={
        UserRole.OWNER: ALL_TOOLS,
        UserRole.FAMILY: frozenset({
            ToolContext.CHAT, ToolContext.VOICE, ToolContext.FRENCH, ToolContext.WORKOUT,
        }),
        UserRole.FRIEND: frozenset({ToolContext.CHAT}),
        UserRole.DEMO: frozenset({ToolContext.CHAT}),
    },
    tool_routes={
        ToolContext.CHAT: ToolRoute(
            default_provider=ProviderId.CLAUDE,
            cost_optimized_provider=ProviderId.OPENAI,
            fallback_provider=ProviderId.OPENAI,
        ),
        ToolContext.POKER: ToolRoute(
            default_provider=ProviderId.CLAUDE,
            cost_optimized_provider=ProviderId.CLAUDE_HAIKU,
        ),
        ToolContext.CODE: ToolRoute(
            default_provider=ProviderId.COPILOT,
            fallback_provider=ProviderId.CLAUDE,
        ),
        ToolContext.VOICE: ToolRoute(
            default_provider=ProviderId.CLAUDE_HAIKU,
            transcription_provider=ProviderId.OPENAI,
        ),
        ToolContext.FRENCH: ToolRoute(
            default_provider=ProviderId.CLAUDE,
            cost_optimized_provider=ProviderId.CLAUDE_HAIKU,
        ),
        ToolContext.WORKOUT: ToolRoute(
            default_provider=ProviderId.CLAUDE_HAIKU,
        ),
    },
    max_cost_per_request={
        ToolContext.CHAT: {
            UserRole.OWNER: 1.0, UserRole.FAMILY: 0.1, UserRole.FRIEND: 0.02, UserRole.DEMO: 0.01,
        },
        # Poker and code are owner-only
        ToolContext.POKER: {
            UserRole.OWNER: 2.0, UserRole.FAMILY: 0, UserRole.FRIEND: 0, UserRole.DEMO: 0,
        },
        ToolContext.CODE: {
            UserRole.OWNER: 1.5, UserRole.FAMILY: 0, UserRole.FRIEND: 0, UserRole.DEMO: 0,
        },
        ToolContext.VOICE: {
            UserRole.OWNER: 0.5, UserRole.FAMILY: 0.05, UserRole.FRIEND: 0.01, UserRole.DEMO: 0.005,
        },
        ToolContext.FRENCH: {
            UserRole.OWNER: 0.8, UserRole.FAMILY: 0.1, UserRole.FRIEND: 0.02, UserRole.DEMO: 0,
        },
        ToolContext.WORKOUT: {
            UserRole.OWNER: 0.3, UserRole.FAMILY: 0.05, UserRole.FRIEND: 0.01, UserRole.DEMO: 0,
        },
    },
    fallback_chains={
        ProviderId.COPILOT: (ProviderId.CLAUDE, ProviderId.OPENAI),
        ProviderId.CLAUDE: (ProviderId.OPENAI, ProviderId.CLAUDE_HAIKU),
        ProviderId.OLLAMA: (ProviderId.OPENAI, ProviderId.CLAUDE_HAIKU),
        ProviderId.OPENAI: (ProviderId.CLAUDE_HAIKU, ProviderId.CLAUDE),
        ProviderId.CLAUDE_HAIKU: (ProviderId.OPENAI, ProviderId.CLAUDE),
    },
)
