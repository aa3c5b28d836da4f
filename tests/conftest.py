"""
Shared test doubles for provider adapters.
"""

import pytest

from ai_cost_router.core.enums import ProviderId
from ai_cost_router.core.ledger import CostLedger
from ai_cost_router.routing.providers import ProviderRegistry, maybe_await
from ai_cost_router.storage.repository import InMemoryUsageRepository


class FakeProvider:
    """Scriptable adapter recording every call it receives."""

    def __init__(
        self,
        name,
        available=True,
        error=None,
        usage=None,
        transcription=None,
        stream_chunks=("Hello", " there"),
        stream_metadata=None,
    ):
        self.name = name
        self.available = available
        self.error = error
        self.usage = usage
        self.transcription = transcription
        self.stream_chunks = stream_chunks
        self.stream_metadata = stream_metadata
        self.text_calls = []
        self.audio_calls = []
        self.cancelled = []
        self.availability_checks = 0

    def is_available(self):
        self.availability_checks += 1
        if isinstance(self.available, Exception):
            raise self.available
        return self.available

    async def process_text(self, text, context):
        self.text_calls.append((text, context))
        if self.error is not None:
            raise self.error
        response = {
            "content": f"{self.name} response to: {text}",
            "confidence": 0.9,
            "provider": self.name,
        }
        if self.usage is not None:
            response["usage"] = self.usage
        return response

    async def transcribe_audio(self, audio, audio_format):
        self.audio_calls.append((audio, audio_format))
        if isinstance(self.transcription, Exception):
            raise self.transcription
        return self.transcription

    async def process_streaming_chat(self, messages, on_stream, on_complete, on_error):
        self.text_calls.append(("stream", messages))
        if self.error is not None:
            await maybe_await(on_error(self.error))
            return
        for chunk in self.stream_chunks:
            await maybe_await(on_stream(chunk))
        await maybe_await(on_complete("".join(self.stream_chunks), dict(self.stream_metadata or {})))

    def cancel_request(self, request_id):
        self.cancelled.append(request_id)
        return True


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider


@pytest.fixture
def providers():
    """One available fake adapter per provider id."""
    return {provider: FakeProvider(provider.value) for provider in ProviderId}


@pytest.fixture
def registry(providers):
    return ProviderRegistry(providers)


@pytest.fixture
def ledger():
    return CostLedger(InMemoryUsageRepository())
