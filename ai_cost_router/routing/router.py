"""
Smart router.

Selects a provider per request under the routing policy, executes the
request through the fallback state machine, tracks in-flight requests
(including chunked audio) and records the cost of every completed
request. Cost recording never fails a request.
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from ..core.enums import (
    ADVICE_TO_PROVIDER,
    ProviderId,
    RequestType,
    ToolContext,
    UserRole,
    parse_tool_context,
)
from ..core.errors import (
    AllProvidersExhausted,
    BudgetExceeded,
    PermissionDenied,
    TranscriptionFailure,
)
from ..core.ledger import CostLedger
from ..core.policy import DEFAULT_POLICY, RoutingPolicy
from ..core.token_counter import estimate_tokens
from ..storage.models import UsageEvent
from .active import ActiveRequestArena
from .advisor import KeywordRoutingAdvisor, contains_keyword
from .fallback import run_fallback_chain
from .providers import (
    ProviderRegistry,
    ProviderResponse,
    Transcription,
    coerce_response,
    coerce_transcription,
    maybe_await,
)

logger = structlog.get_logger()

POKER_ANALYSIS_KEYWORDS = (
    "analyze", "analysis", "odds", "fold", "call", "range",
    "strategy", "opponent", "review",
)
POKER_COMPLIANCE_KEYWORDS = ("gto", "compliance", "solver", "verify", "validate", "audit")

FRENCH_COMPLEX_KEYWORDS = (
    "grammar", "conjugation", "subjunctive", "explain", "explanation",
    "explain why", "difference between", "when to use", "rule", "exception",
)
FRENCH_COMPLEX_LENGTH = 200


def classify_poker(text: str) -> str:
    """Classify a poker query as compliance, analysis or general."""
    # Compliance questions also mention analysis terms, so they win
    if contains_keyword(text, POKER_COMPLIANCE_KEYWORDS):
        return "compliance"
    if contains_keyword(text, POKER_ANALYSIS_KEYWORDS):
        return "analysis"
    return "general"


@dataclass(frozen=True)
class TextCommandResult:
    """Answer to a text command."""
    provider: ProviderId
    response: ProviderResponse
    confidence: float
    processing_time_ms: int
    fallback_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "response": self.response.to_dict(),
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "fallback_used": self.fallback_used,
        }


@dataclass(frozen=True)
class AudioChunkStatus:
    """Acknowledgement of a non-final audio chunk."""
    status: str
    chunks_received: int
    bytes_received: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "chunks_received": self.chunks_received,
            "bytes_received": self.bytes_received,
        }


@dataclass(frozen=True)
class AudioResult:
    """Transcription of a completed audio stream and the answer to it."""
    transcription: Transcription
    ai_response: TextCommandResult
    total_chunks: int
    total_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transcription": self.transcription.to_dict(),
            "ai_response": self.ai_response.to_dict(),
            "total_chunks": self.total_chunks,
            "total_bytes": self.total_bytes,
        }


@dataclass(frozen=True)
class ProcessingStatus:
    status: str
    provider: Optional[str] = None
    type: Optional[str] = None
    processing_time_ms: Optional[int] = None
    chunks_received: int = 0
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.status == "not_found":
            return {"status": self.status}
        return {
            "status": self.status,
            "provider": self.provider,
            "type": self.type,
            "processing_time_ms": self.processing_time_ms,
            "chunks_received": self.chunks_received,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class RouterStats:
    routing_stats: Dict[str, int] = field(default_factory=dict)
    active_requests: int = 0
    total_requests: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routing_stats": dict(self.routing_stats),
            "active_requests": self.active_requests,
            "total_requests": self.total_requests,
        }


def _role_of(metadata: Mapping[str, Any]) -> Union[UserRole, str]:
    user = metadata.get("user")
    if isinstance(user, Mapping) and user.get("role"):
        return user["role"]
    return metadata.get("role") or UserRole.DEMO


def _user_id_of(metadata: Mapping[str, Any]) -> Optional[str]:
    user = metadata.get("user")
    if isinstance(user, Mapping) and user.get("id") is not None:
        return str(user["id"])
    user_id = metadata.get("user_id")
    return str(user_id) if user_id is not None else None


def _value(item: Any) -> str:
    return str(getattr(item, "value", item))


class SmartRouter:
    """Routes requests to providers under a routing policy and records their cost."""

    def __init__(
        self,
        registry: ProviderRegistry,
        policy: RoutingPolicy = DEFAULT_POLICY,
        ledger: Optional[CostLedger] = None,
        advisor: Optional[Any] = None,
        use_advisor: bool = True,
    ):
        """Initialize the router.

        Args:
            registry: Provider adapters keyed by ProviderId
            policy: Immutable routing policy
            ledger: Cost ledger; usage is not recorded when omitted
            advisor: Meta-routing advisor for chat; KeywordRoutingAdvisor by default
            use_advisor: Disable meta-routing entirely when False
        """
        self.registry = registry
        self.policy = policy
        self.ledger = ledger
        if not use_advisor:
            self.advisor = None
        else:
            self.advisor = advisor if advisor is not None else KeywordRoutingAdvisor()
        self.active_requests = ActiveRequestArena()
        self.routing_stats: Dict[ProviderId, int] = {provider: 0 for provider in ProviderId}

        self._strategies: Dict[ToolContext, Callable] = {
            ToolContext.CHAT: self._route_chat,
            ToolContext.POKER: self._route_poker,
            ToolContext.CODE: self._route_code,
            ToolContext.VOICE: self._route_voice,
            ToolContext.FRENCH: self._route_french,
            ToolContext.WORKOUT: self._route_workout,
        }

    # Selection

    async def select_provider(self, text: str, metadata: Optional[Mapping[str, Any]] = None) -> ProviderId:
        """Choose the provider for a request.

        Args:
            text: Request text
            metadata: tool_context (default chat), user/role (default demo),
                estimated_cost, is_transcription, cost_preference, on_fallback

        Returns:
            Selected provider id

        Raises:
            PermissionDenied: If the role may not use the tool
            BudgetExceeded: If estimated_cost exceeds the role's cap for the tool
            AllProvidersExhausted: If an advised chat provider and all its fallbacks are unavailable
        """
        metadata = metadata or {}
        tool_context = metadata.get("tool_context") or ToolContext.CHAT
        role = _role_of(metadata)

        if not self.policy.is_authorized(role, tool_context):
            logger.warning("routing_permission_denied", role=_value(role), tool_context=_value(tool_context))
            raise PermissionDenied(_value(role), _value(tool_context))

        estimated_cost = float(metadata.get("estimated_cost") or 0)
        max_cost = self.policy.max_cost(role, tool_context)
        if estimated_cost > max_cost:
            logger.warning(
                "routing_budget_exceeded",
                role=_value(role),
                tool_context=_value(tool_context),
                estimated_cost=estimated_cost,
                max_cost=max_cost,
            )
            raise BudgetExceeded(_value(role), _value(tool_context), estimated_cost, max_cost)

        tool = parse_tool_context(tool_context)
        if tool is None or self.policy.route_for(tool) is None:
            logger.warning("routing_unknown_tool", tool_context=_value(tool_context))
            tool = ToolContext.CHAT

        provider = await self._strategies[tool](text or "", metadata, tool)
        logger.debug("provider_selected", tool_context=tool.value, provider=provider.value)
        return provider

    async def _route_chat(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        advice = await self._advise(text, metadata)
        provider = ADVICE_TO_PROVIDER.get(advice) if advice is not None else None
        if provider is None:
            return self.policy.cost_optimized_provider(tool)
        return await self.execute_with_fallback(provider, metadata)

    async def _advise(self, text: str, metadata: Mapping[str, Any]):
        if self.advisor is None:
            return None
        try:
            check = getattr(self.advisor, "is_available", None)
            if check is not None and not await maybe_await(check()):
                return None
            return await maybe_await(self.advisor.advise(text, {
                "role": _value(_role_of(metadata)),
                "cost_preference": metadata.get("cost_preference"),
            }))
        except Exception as e:
            logger.error("routing_advisor_failed", error=str(e))
            return None

    async def _route_poker(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        kind = classify_poker(text)
        logger.debug("poker_query_classified", kind=kind)
        if kind == "compliance":
            return self.policy.cost_optimized_provider(tool)
        return self.policy.default_provider(tool)

    async def _route_code(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        preferred = self.policy.default_provider(tool)
        if await self.registry.is_available(preferred):
            return preferred
        return self.policy.fallback_provider(tool)

    async def _route_voice(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        if metadata.get("is_transcription"):
            return self.policy.transcription_provider(tool) or self.policy.default_provider(tool)
        return self.policy.default_provider(tool)

    async def _route_french(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        if contains_keyword(text, FRENCH_COMPLEX_KEYWORDS) or len(text) > FRENCH_COMPLEX_LENGTH:
            return self.policy.default_provider(tool)
        return self.policy.cost_optimized_provider(tool)

    async def _route_workout(self, text: str, metadata: Mapping[str, Any], tool: ToolContext) -> ProviderId:
        return self.policy.default_provider(tool)

    async def execute_with_fallback(
        self,
        primary: Union[ProviderId, str],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ProviderId:
        """Return the primary if available, else its first available static fallback.

        Raises:
            AllProvidersExhausted: If neither the primary nor any fallback is available
        """
        metadata = metadata or {}
        candidates = self.policy.candidate_chain(primary)
        if not candidates:
            raise AllProvidersExhausted(_value(primary))
        outcome = await run_fallback_chain(
            candidates,
            self.registry,
            on_fallback=metadata.get("on_fallback"),
        )
        return outcome.provider

    # Text

    async def process_text_command(
        self,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TextCommandResult:
        """Answer a text command through the selected provider and its fallback chain.

        Args:
            text: Command text
            context: session_id, request_id (generated when absent), metadata

        Returns:
            TextCommandResult of the first candidate that answered

        Raises:
            PermissionDenied: From provider selection
            BudgetExceeded: From provider selection
            AllProvidersExhausted: If no candidate could be executed
            Exception: The last provider error when every executed candidate failed
        """
        context = context or {}
        session_id = context.get("session_id")
        request_id = context.get("request_id") or uuid.uuid4().hex
        metadata = dict(context.get("metadata") or {})

        primary = await self.select_provider(text, metadata)
        entry = self.active_requests.start(request_id, RequestType.TEXT, primary, session_id)

        provider_context = {
            "request_id": request_id,
            "session_id": session_id,
            "metadata": metadata,
        }

        async def execute(provider: ProviderId) -> ProviderResponse:
            adapter = self.registry.require(provider)
            entry.provider = provider
            raw = await maybe_await(adapter.process_text(text, provider_context))
            return coerce_response(raw, provider)

        try:
            try:
                outcome = await run_fallback_chain(
                    self.policy.candidate_chain(primary),
                    self.registry,
                    execute,
                    on_fallback=metadata.get("on_fallback"),
                )
            except AllProvidersExhausted as e:
                if e.last_error is not None:
                    raise e.last_error
                raise

            response: ProviderResponse = outcome.value
            processing_time_ms = entry.elapsed_ms()
            self.routing_stats[outcome.provider] += 1

            usage = response.usage
            await self.record_cost_usage(UsageEvent(
                provider=outcome.provider.value,
                tool_context=_value(metadata.get("tool_context") or ToolContext.CHAT),
                input_tokens=usage.input_tokens if usage else estimate_tokens(text),
                output_tokens=usage.output_tokens if usage else estimate_tokens(response.content),
                model=response.model,
                user_id=_user_id_of(metadata),
                total_cost=Decimal(str(response.cost)) if response.cost is not None else None,
                conversation_id=metadata.get("conversation_id"),
                message_id=metadata.get("message_id"),
                processing_time_ms=processing_time_ms,
            ))

            logger.info(
                "text_command_completed",
                request_id=request_id,
                provider=outcome.provider.value,
                fallback_used=outcome.fallback_used,
                processing_time_ms=processing_time_ms,
            )
            return TextCommandResult(
                provider=outcome.provider,
                response=response,
                confidence=response.confidence,
                processing_time_ms=processing_time_ms,
                fallback_used=outcome.fallback_used,
            )
        finally:
            self.active_requests.finish(request_id, entry)

    # Audio

    async def process_audio_chunk(
        self,
        audio_bytes: bytes,
        context: Mapping[str, Any],
    ) -> Union[AudioChunkStatus, AudioResult]:
        """Accumulate an audio chunk; on the last one transcribe and answer.

        Args:
            audio_bytes: Chunk payload
            context: session_id, request_id (required), is_last_chunk,
                audio_format (default webm), metadata

        Returns:
            AudioChunkStatus for non-final chunks, AudioResult after the last one

        Raises:
            ValueError: If request_id is missing or already used by a text request
            TranscriptionFailure: If transcription errors or yields no text
        """
        request_id = context.get("request_id")
        if not request_id:
            raise ValueError("request_id is required for audio chunks")
        session_id = context.get("session_id")

        entry = self.active_requests.get(request_id)
        if entry is None:
            entry = self.active_requests.start(
                request_id,
                RequestType.AUDIO,
                self.policy.transcription_provider(ToolContext.VOICE),
                session_id,
            )
        elif entry.type != RequestType.AUDIO:
            raise ValueError(f"Request {request_id} is not an audio request")

        entry.add_chunk(audio_bytes)
        if not context.get("is_last_chunk"):
            return AudioChunkStatus(
                status="processing",
                chunks_received=len(entry.chunks),
                bytes_received=entry.bytes_received,
            )

        total_chunks = len(entry.chunks)
        total_bytes = entry.bytes_received
        try:
            transcription = await self._transcribe(
                entry.assemble(), context.get("audio_format") or "webm", entry.provider
            )
        finally:
            # The text request below registers its own entry under this id
            self.active_requests.finish(request_id, entry)

        metadata = dict(context.get("metadata") or {})
        metadata["source"] = "audio"
        metadata["transcription_confidence"] = transcription.confidence
        ai_response = await self.process_text_command(transcription.text, {
            "session_id": session_id,
            "request_id": request_id,
            "metadata": metadata,
        })
        return AudioResult(
            transcription=transcription,
            ai_response=ai_response,
            total_chunks=total_chunks,
            total_bytes=total_bytes,
        )

    async def _transcribe(
        self,
        audio: bytes,
        audio_format: str,
        provider: Optional[ProviderId],
    ) -> Transcription:
        adapter = self.registry.get(provider)
        if adapter is None or not hasattr(adapter, "transcribe_audio"):
            raise TranscriptionFailure(f"No transcription provider available ({_value(provider)})")
        try:
            raw = await maybe_await(adapter.transcribe_audio(audio, audio_format))
            transcription = coerce_transcription(raw)
        except Exception as e:
            logger.error("transcription_failed", provider=_value(provider), error=str(e))
            raise TranscriptionFailure(f"Transcription failed: {e}") from e

        if not transcription.text.strip():
            raise TranscriptionFailure("Transcription produced no text")
        return transcription

    # Bookkeeping

    async def cancel_request(self, session_id: Optional[str], request_id: str) -> bool:
        """Stop tracking a request and ask its provider to abort it.

        Returns:
            True if the request was tracked, False otherwise
        """
        entry = self.active_requests.get(request_id)
        if entry is None:
            return False
        if session_id and entry.session_id and session_id != entry.session_id:
            logger.warning(
                "cancel_session_mismatch",
                request_id=request_id,
                session_id=session_id,
                owner_session_id=entry.session_id,
            )

        adapter = self.registry.get(entry.provider)
        hook = getattr(adapter, "cancel_request", None) if adapter is not None else None
        if hook is not None:
            try:
                await maybe_await(hook(request_id))
            except Exception as e:
                logger.warning("provider_cancel_failed", provider=_value(entry.provider), error=str(e))

        self.active_requests.finish(request_id, entry)
        logger.info("request_cancelled", request_id=request_id, provider=_value(entry.provider))
        return True

    async def get_processing_status(self, request_id: str, session_id: Optional[str] = None) -> ProcessingStatus:
        entry = self.active_requests.get(request_id)
        if entry is None:
            return ProcessingStatus(status="not_found")
        return ProcessingStatus(
            status="processing",
            provider=entry.provider.value if entry.provider else None,
            type=entry.type.value,
            processing_time_ms=entry.elapsed_ms(),
            chunks_received=len(entry.chunks),
            session_id=entry.session_id,
        )

    # Streaming

    async def process_streaming_chat(
        self,
        messages: List[Mapping[str, Any]],
        on_stream: Callable,
        on_complete: Callable,
        on_error: Callable,
        user: Optional[Mapping[str, Any]] = None,
        user_message: str = "",
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        """Stream a chat answer through the selected provider.

        Errors never raise: selection and provider failures are logged and
        delivered to on_error.
        """
        start = time.monotonic()
        user = user or {}
        tool_context = ToolContext.CHAT.value
        try:
            first_metadata = (messages[0].get("metadata") or {}) if messages else {}
            tool_context = _value(first_metadata.get("tool_context") or ToolContext.CHAT)
            provider = await self.select_provider(user_message, {
                "tool_context": tool_context,
                "user": user,
                "conversation_context": messages,
            })
            adapter = self.registry.require(provider)
        except Exception as e:
            logger.error("streaming_selection_failed", tool_context=tool_context, error=str(e))
            await maybe_await(on_error(e))
            return

        async def complete(content: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
            metadata = dict(metadata or {})
            processing_time = int((time.monotonic() - start) * 1000)
            input_tokens = metadata.get("input_tokens")
            if input_tokens is None:
                prompt = " ".join(str(m.get("content") or "") for m in messages) or user_message
                input_tokens = estimate_tokens(prompt)
            output_tokens = metadata.get("output_tokens")
            if output_tokens is None:
                output_tokens = estimate_tokens(content)
            cost = metadata.get("cost")

            await self.record_cost_usage(UsageEvent(
                provider=provider.value,
                tool_context=tool_context,
                input_tokens=int(input_tokens),
                output_tokens=int(output_tokens),
                model=metadata.get("model"),
                user_id=_user_id_of({"user": user}),
                total_cost=Decimal(str(cost)) if cost is not None else None,
                conversation_id=conversation_id,
                message_id=message_id,
                processing_time_ms=processing_time,
            ))
            self.routing_stats[provider] += 1

            metadata.update({
                "provider": provider.value,
                "tool_context": tool_context,
                "processing_time": processing_time,
            })
            await maybe_await(on_complete(content, metadata))

        async def error(exc: BaseException) -> None:
            logger.error("streaming_chat_failed", provider=provider.value, error=str(exc))
            await maybe_await(on_error(exc))

        logger.info("streaming_chat_started", provider=provider.value, tool_context=tool_context)
        try:
            await maybe_await(adapter.process_streaming_chat(
                messages=messages,
                on_stream=on_stream,
                on_complete=complete,
                on_error=error,
            ))
        except Exception as e:
            await error(e)

    # Cost

    async def record_cost_usage(self, event: UsageEvent) -> bool:
        """Record usage without ever failing the caller.

        Returns:
            True if the usage was recorded
        """
        if self.ledger is None:
            return False
        try:
            record = await self.ledger.track_usage(event)
        except Exception as e:
            logger.error(
                "cost_recording_failed",
                provider=event.provider,
                tool_context=event.tool_context,
                error=str(e),
            )
            return False
        return record is not None

    async def get_stats(self) -> RouterStats:
        routing_stats = {provider.value: count for provider, count in self.routing_stats.items()}
        return RouterStats(
            routing_stats=routing_stats,
            active_requests=len(self.active_requests),
            total_requests=sum(routing_stats.values()),
        )
