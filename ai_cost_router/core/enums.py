"""
Identifiers shared across routing and cost accounting.

Providers, tool contexts and user roles cross the transport boundary as
plain strings, so every enum here is a ``str`` enum and can be compared
with the raw value.
"""

from enum import Enum
from typing import Optional, Type, TypeVar, Union


class ProviderId(str, Enum):
    """Upstream AI providers the router can dispatch to."""
    CLAUDE = "claude"
    CLAUDE_HAIKU = "claude-haiku"
    OPENAI = "openai"
    COPILOT = "copilot"
    OLLAMA = "ollama"


class ToolContext(str, Enum):
    """Feature area of a request; selects a routing policy row."""
    CHAT = "chat"
    POKER = "poker"
    CODE = "code"
    VOICE = "voice"
    FRENCH = "french"
    WORKOUT = "workout"


class UserRole(str, Enum):
    """Roles bounding tool permissions and per-request budgets."""
    OWNER = "owner"
    FAMILY = "family"
    FRIEND = "friend"
    DEMO = "demo"  # Lowest privilege, used when no role is supplied


class RoutingAdvice(str, Enum):
    """Labels a meta-routing advisor may answer with."""
    LOCAL = "LOCAL"
    GPT4_MINI = "GPT4_MINI"
    CLAUDE_SONNET = "CLAUDE_SONNET"
    CLAUDE_HAIKU = "CLAUDE_HAIKU"
    COPILOT = "COPILOT"


class RequestType(str, Enum):
    """Kind of in-flight request tracked by the router."""
    TEXT = "text"
    AUDIO = "audio"


ADVICE_TO_PROVIDER = {
    RoutingAdvice.LOCAL: ProviderId.OLLAMA,
    RoutingAdvice.GPT4_MINI: ProviderId.OPENAI,
    RoutingAdvice.CLAUDE_SONNET: ProviderId.CLAUDE,
    RoutingAdvice.CLAUDE_HAIKU: ProviderId.CLAUDE_HAIKU,
    RoutingAdvice.COPILOT: ProviderId.COPILOT,
}


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value: Union[E, str, None]) -> Optional[E]:
    """Resolve a raw value to an enum member.

    Args:
        enum_cls: Enum class to resolve against
        value: Enum member, raw string value, or None

    Returns:
        Matching member, or None if the value is unknown
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def parse_provider(value: Union[ProviderId, str, None]) -> Optional[ProviderId]:
    return parse_enum(ProviderId, value)


def parse_tool_context(value: Union[ToolContext, str, None]) -> Optional[ToolContext]:
    return parse_enum(ToolContext, value)


def parse_role(value: Union[UserRole, str, None]) -> Optional[UserRole]:
    return parse_enum(UserRole, value)
