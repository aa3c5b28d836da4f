"""
OpenAI provider adapter.

Serves OpenAI itself and any OpenAI-compatible endpoint (for example a
local Ollama server at http://localhost:11434/v1). In-flight calls are
tracked per request id so cancel_request can actually abort them.
"""

import asyncio
import math
from typing import Any, Dict, List, Mapping, Optional

import structlog
from openai import APITimeoutError, AsyncOpenAI

from ..core.enums import ProviderId
from ..core.token_counter import TokenUsage
from .providers import ProviderResponse, Transcription, maybe_await

logger = structlog.get_logger()

DEGRADED_CONFIDENCE = 0.1


class OpenAIProvider:
    """Adapter over the OpenAI chat completions and transcription APIs."""

    def __init__(
        self,
        provider: ProviderId = ProviderId.OPENAI,
        model: str = "gpt-4o-mini",
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        transcription_model: str = "whisper-1",
    ):
        """Initialize the adapter.

        Args:
            provider: Provider id reported on responses
            model: Chat model name (required)
            client: Preconfigured AsyncOpenAI client; built from api_key/base_url when omitted
            api_key: API key for a new client
            base_url: Endpoint for a new client
            system_prompt: Optional system message prepended to text requests
            max_tokens: Completion token limit
            transcription_model: Model used by transcribe_audio

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.provider = provider
        self.model = model
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.transcription_model = transcription_model
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def is_available(self) -> bool:
        try:
            await self.client.models.retrieve(self.model)
            return True
        except Exception as e:
            logger.warning("provider_check_failed", provider=self.provider.value, error=str(e))
            return False

    async def process_text(self, text: str, context: Mapping[str, Any]) -> ProviderResponse:
        """Answer a single text prompt.

        A request timeout yields a degraded low-confidence response so the
        caller still gets an answer; any other API error propagates.
        """
        messages: List[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": text})

        request_id = context.get("request_id")
        task = asyncio.ensure_future(self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
        ))
        if request_id:
            self._in_flight[request_id] = task

        try:
            completion = await task
        except APITimeoutError as e:
            logger.warning("provider_timeout", provider=self.provider.value, error=str(e))
            return ProviderResponse(
                content="The assistant took too long to respond. Please try again.",
                confidence=DEGRADED_CONFIDENCE,
                provider=self.provider.value,
                model=self.model,
                metadata={"degraded": True},
            )
        finally:
            if request_id:
                self._in_flight.pop(request_id, None)

        usage = None
        if completion.usage is not None:
            usage = TokenUsage(
                input_tokens=completion.usage.prompt_tokens,
                output_tokens=completion.usage.completion_tokens,
            )

        choice = completion.choices[0]
        return ProviderResponse(
            content=choice.message.content or "",
            confidence=0.85 if choice.finish_reason == "stop" else 0.6,
            provider=self.provider.value,
            usage=usage,
            model=completion.model or self.model,
        )

    async def process_streaming_chat(
        self,
        messages: List[Mapping[str, Any]],
        on_stream,
        on_complete,
        on_error,
    ) -> None:
        """Stream a chat completion, relaying each content delta as it arrives."""
        payload = [
            {"role": message.get("role", "user"), "content": message.get("content", "")}
            for message in messages
        ]
        content_parts: List[str] = []
        metadata: Dict[str, Any] = {"model": self.model}

        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=payload,
                max_tokens=self.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if chunk.usage is not None:
                    metadata["input_tokens"] = chunk.usage.prompt_tokens
                    metadata["output_tokens"] = chunk.usage.completion_tokens
                if chunk.model:
                    metadata["model"] = chunk.model
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    content_parts.append(delta)
                    await maybe_await(on_stream(delta))
        except Exception as e:
            logger.error("provider_stream_failed", provider=self.provider.value, error=str(e))
            await maybe_await(on_error(e))
            return

        await maybe_await(on_complete("".join(content_parts), metadata))

    async def transcribe_audio(self, audio: bytes, audio_format: str = "webm") -> Transcription:
        response = await self.client.audio.transcriptions.create(
            model=self.transcription_model,
            file=(f"audio.{audio_format}", audio),
            response_format="verbose_json",
        )
        text = (response.text or "").strip()
        segments = getattr(response, "segments", None) or []
        if segments:
            # avg_logprob is a natural log; exp() maps it back to a probability
            confidence = sum(math.exp(s.avg_logprob) for s in segments) / len(segments)
        else:
            confidence = 1.0 if text else 0.0
        return Transcription(
            text=text,
            confidence=round(confidence, 4),
            language=getattr(response, "language", None),
        )

    def cancel_request(self, request_id: str) -> bool:
        task = self._in_flight.pop(request_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("provider_request_cancelled", provider=self.provider.value, request_id=request_id)
        return True
