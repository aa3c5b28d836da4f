"""
Provider adapter contract and registry.

Every upstream provider is reached through an adapter registered under
its ProviderId. Adapter methods may be synchronous or coroutines, and
may return the result types below or plain mappings with the same keys.
"""

import inspect
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

import structlog

from ..core.enums import ProviderId, parse_provider
from ..core.errors import ProviderUnavailable
from ..core.token_counter import TokenUsage

logger = structlog.get_logger()


async def maybe_await(value: Any) -> Any:
    """Resolve a value that may or may not be awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized text response of one provider call."""
    content: str
    confidence: float = 1.0
    provider: Optional[str] = None
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    cost: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "content": self.content,
            "confidence": self.confidence,
            "provider": self.provider,
            "model": self.model,
            "metadata": dict(self.metadata),
        }
        if self.usage is not None:
            data["usage"] = {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
            }
        if self.cost is not None:
            data["cost"] = self.cost
        return data


@dataclass(frozen=True)
class Transcription:
    """Text recognized from an audio buffer."""
    text: str
    confidence: float = 0.0
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "confidence": self.confidence, "language": self.language}


StreamCallback = Callable[[str], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[BaseException], Union[None, Awaitable[None]]]


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capabilities the router expects from an adapter.

    is_available and cancel_request are optional: an adapter without
    is_available is always available, one without cancel_request cannot
    abort in-flight calls.
    """

    def process_text(self, text: str, context: Mapping[str, Any]) -> Any:
        ...

    def process_streaming_chat(
        self,
        messages: List[Mapping[str, Any]],
        on_stream: StreamCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> Any:
        ...

    def transcribe_audio(self, audio: bytes, audio_format: str) -> Any:
        ...


def _usage_from(raw: Any) -> Optional[TokenUsage]:
    if raw is None:
        return None
    if isinstance(raw, TokenUsage):
        return raw
    if isinstance(raw, Mapping):
        return TokenUsage(
            input_tokens=int(raw.get("input_tokens") or 0),
            output_tokens=int(raw.get("output_tokens") or 0),
        )
    raise TypeError(f"Unsupported usage payload: {type(raw).__name__}")


def coerce_response(raw: Any, provider: ProviderId) -> ProviderResponse:
    """Normalize an adapter's process_text result.

    Raises:
        TypeError: If the result is neither a ProviderResponse nor a mapping
    """
    if isinstance(raw, ProviderResponse):
        return raw if raw.provider else replace(raw, provider=provider.value)
    if isinstance(raw, Mapping):
        return ProviderResponse(
            content=str(raw.get("content") or ""),
            confidence=float(raw.get("confidence", 1.0)),
            provider=raw.get("provider") or provider.value,
            usage=_usage_from(raw.get("usage")),
            model=raw.get("model"),
            cost=raw.get("cost"),
            metadata=dict(raw.get("metadata") or {}),
        )
    raise TypeError(f"Provider {provider.value} returned unsupported response {type(raw).__name__}")


def coerce_transcription(raw: Any) -> Transcription:
    """Normalize an adapter's transcribe_audio result."""
    if isinstance(raw, Transcription):
        return raw
    if isinstance(raw, str):
        return Transcription(text=raw, confidence=1.0)
    if isinstance(raw, Mapping):
        return Transcription(
            text=str(raw.get("text") or ""),
            confidence=float(raw.get("confidence") or 0.0),
            language=raw.get("language"),
        )
    raise TypeError(f"Unsupported transcription result {type(raw).__name__}")


class ProviderRegistry:
    """Adapters keyed by ProviderId."""

    def __init__(self, adapters: Optional[Mapping[Union[ProviderId, str], ProviderAdapter]] = None):
        self._adapters: Dict[ProviderId, ProviderAdapter] = {}
        for provider, adapter in (adapters or {}).items():
            self.register(provider, adapter)

    def register(self, provider: Union[ProviderId, str], adapter: ProviderAdapter) -> None:
        parsed = parse_provider(provider)
        if parsed is None:
            raise ValueError(f"Unknown provider: {provider}")
        self._adapters[parsed] = adapter

    def get(self, provider: Union[ProviderId, str, None]) -> Optional[ProviderAdapter]:
        parsed = parse_provider(provider)
        if parsed is None:
            return None
        return self._adapters.get(parsed)

    def require(self, provider: Union[ProviderId, str]) -> ProviderAdapter:
        """Adapter for a provider.

        Raises:
            ProviderUnavailable: If no adapter is registered
        """
        adapter = self.get(provider)
        if adapter is None:
            raise ProviderUnavailable(str(getattr(provider, "value", provider)), "is not registered")
        return adapter

    def __contains__(self, provider) -> bool:
        return self.get(provider) is not None

    @property
    def providers(self) -> List[ProviderId]:
        return list(self._adapters)

    async def is_available(self, provider: Union[ProviderId, str]) -> bool:
        """Run the adapter's availability check.

        A missing adapter is unavailable, an adapter without a check is
        available, and a check that raises counts as unavailable.
        """
        adapter = self.get(provider)
        if adapter is None:
            return False
        check = getattr(adapter, "is_available", None)
        if check is None:
            return True
        try:
            return bool(await maybe_await(check()))
        except Exception as e:
            logger.warning(
                "availability_check_failed",
                provider=str(getattr(provider, "value", provider)),
                error=str(e),
            )
            return False
