"""
Provider routing for AI Cost Router.

Provider selection, fallback execution and in-flight request tracking.
"""

from .advisor import KeywordRoutingAdvisor, LLMRoutingAdvisor
from .providers import ProviderAdapter, ProviderRegistry, ProviderResponse, Transcription
from .router import SmartRouter

__all__ = [
    "KeywordRoutingAdvisor",
    "LLMRoutingAdvisor",
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderResponse",
    "SmartRouter",
    "Transcription",
]
