"""
Token counting and usage tracking.

Carries provider-reported token counts and estimates them when a
provider omits usage.
"""

import math
from dataclasses import dataclass
from typing import Optional

# Rough ratio for English text
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by a provider.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate token counts are not negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: Optional[str]) -> int:
    """Approximate the token count of a piece of text.

    Only used when a provider response carries no usage counts.

    Args:
        text: Text to estimate, may be empty or None

    Returns:
        ceil(len(text) / 4), or 0 for empty/missing text
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
