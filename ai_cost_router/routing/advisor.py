"""
Meta-routing advisors.

An advisor classifies a chat query and recommends a RoutingAdvice label.
KeywordRoutingAdvisor is deterministic and free; LLMRoutingAdvisor asks a
cheap chat model using a fixed prompt and label set.
"""

import re
from typing import Any, Iterable, Mapping, Optional

import structlog
from openai import AsyncOpenAI

from ..core.enums import RoutingAdvice

logger = structlog.get_logger()

CODE_KEYWORDS = (
    "code", "function", "class", "variable", "bug", "debug",
    "programming", "algorithm", "syntax", "compile", "error",
    "javascript", "python", "java", "kotlin", "react", "node",
)

COMPLEX_REASONING_KEYWORDS = (
    "analyze", "explain", "compare", "evaluate", "strategy",
    "plan", "architecture", "design", "research", "complex",
)

COMPLEX_LENGTH = 200


def contains_keyword(text: Optional[str], keywords: Iterable[str]) -> bool:
    """Case-insensitive keyword match at the start of a word.

    Inflected forms match ("debugging" for "debug", "solvers" for
    "solver"); keywords inside another word do not ("orange" for "range").
    """
    if not text:
        return False
    lowered = text.lower()
    return any(
        re.search(rf"\b{re.escape(keyword.lower())}", lowered)
        for keyword in keywords
    )


class KeywordRoutingAdvisor:
    """Deterministic rule engine used as the default advisor."""

    def is_available(self) -> bool:
        return True

    async def advise(self, text: str, context: Mapping[str, Any]) -> Optional[RoutingAdvice]:
        if contains_keyword(text, CODE_KEYWORDS):
            return RoutingAdvice.COPILOT
        if contains_keyword(text, COMPLEX_REASONING_KEYWORDS) or len(text or "") > COMPLEX_LENGTH:
            return RoutingAdvice.CLAUDE_SONNET
        return RoutingAdvice.GPT4_MINI


ROUTING_PROMPT = """You are an AI routing system. Analyze this query and decide the optimal model:

Query: "{query}"
User Role: {role}
Cost Preference: {cost_preference}

Available Models:
- LOCAL: Free Llama model (good for simple tasks, privacy-focused)
- GPT4_MINI: Cheap OpenAI model ($0.15/$0.60 per 1M tokens) - good balance
- CLAUDE_SONNET: Expensive Claude model ($3/$15 per 1M tokens) - best reasoning
- COPILOT: GitHub Copilot (code-specialized)

Routing Criteria:
1. Simple greetings, yes/no, basic questions → LOCAL or GPT4_MINI
2. Complex analysis, reasoning, strategy → CLAUDE_SONNET
3. Code, programming, debugging → COPILOT
4. Privacy-sensitive queries → LOCAL
5. Cost-conscious users → prefer LOCAL/GPT4_MINI

Examples:
- "hello" → LOCAL
- "how are you?" → GPT4_MINI
- "analyze market trends" → CLAUDE_SONNET
- "debug this Python code" → COPILOT
- "personal financial advice" → LOCAL (privacy)

Respond with ONLY the routing decision: LOCAL, GPT4_MINI, CLAUDE_SONNET, or COPILOT"""

VALID_LABELS = frozenset({
    RoutingAdvice.LOCAL,
    RoutingAdvice.GPT4_MINI,
    RoutingAdvice.CLAUDE_SONNET,
    RoutingAdvice.COPILOT,
})


def parse_advice(raw: Optional[str]) -> Optional[RoutingAdvice]:
    """Map a model answer to a label; None when it isn't one of the valid labels."""
    if not raw:
        return None
    label = raw.strip().upper()
    for advice in VALID_LABELS:
        if advice.value == label:
            return advice
    return None


class LLMRoutingAdvisor:
    """Asks an OpenAI-compatible chat model to pick a route.

    Invalid answers and call errors fall back to ``default``.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = "gpt-4o-mini",
        default: RoutingAdvice = RoutingAdvice.GPT4_MINI,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.default = default
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def is_available(self) -> bool:
        try:
            await self.client.models.retrieve(self.model)
            return True
        except Exception as e:
            logger.warning("routing_advisor_unavailable", model=self.model, error=str(e))
            return False

    async def advise(self, text: str, context: Mapping[str, Any]) -> Optional[RoutingAdvice]:
        prompt = ROUTING_PROMPT.format(
            query=text,
            role=context.get("role") or "user",
            cost_preference=context.get("cost_preference") or "balanced",
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=10,
                temperature=0.1,
            )
        except Exception as e:
            logger.error("routing_advice_failed", model=self.model, error=str(e))
            return self.default

        answer = response.choices[0].message.content if response.choices else None
        advice = parse_advice(answer)
        if advice is None:
            logger.warning("routing_advice_invalid", answer=answer, default=self.default.value)
            return self.default

        logger.info("routing_advice", query=(text or "")[:50], advice=advice.value)
        return advice
