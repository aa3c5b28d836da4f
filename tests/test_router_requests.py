"""
Tests for request processing through the router.

Covers text commands with candidate fallback, chunked audio,
cancellation, status, streaming chat and cost recording.
"""

import asyncio
import sqlite3
from unittest.mock import Mock

import pytest

from ai_cost_router.core.enums import ProviderId
from ai_cost_router.core.errors import (
    AllProvidersExhausted,
    PermissionDenied,
    TranscriptionFailure,
)
from ai_cost_router.core.ledger import CostLedger
from ai_cost_router.routing.router import AudioChunkStatus, AudioResult, SmartRouter
from ai_cost_router.storage.models import UsageEvent
from ai_cost_router.storage.repository import InMemoryUsageRepository

OWNER = {"id": "u1", "role": "owner"}


class BrokenRepository(InMemoryUsageRepository):
    async def increment(self, event, cost, now):
        raise sqlite3.OperationalError("database is locked")


class TestTextCommand:
    """Test process_text_command."""

    @pytest.mark.asyncio
    async def test_successful_command(self, registry, providers, ledger):
        providers[ProviderId.OPENAI].usage = {"input_tokens": 10, "output_tokens": 20}
        router = SmartRouter(registry, ledger=ledger)

        result = await router.process_text_command("hello", {"session_id": "s1", "request_id": "r1"})

        assert result.provider == ProviderId.OPENAI
        assert result.response.content == "openai response to: hello"
        assert result.confidence == 0.9
        assert result.fallback_used is False
        assert result.processing_time_ms >= 0
        assert len(router.active_requests) == 0
        assert (await router.get_stats()).routing_stats["openai"] == 1

        _, context = providers[ProviderId.OPENAI].text_calls[0]
        assert context["request_id"] == "r1"
        assert context["session_id"] == "s1"

        stats = await ledger.get_usage_stats()
        assert stats.providers["openai"].input_tokens == 10
        assert stats.providers["openai"].output_tokens == 20
        assert stats.summary.total_requests == 1

    @pytest.mark.asyncio
    async def test_request_is_tracked_while_in_flight(self, registry, providers):
        router = SmartRouter(registry)
        seen = []

        async def process_text(text, context):
            seen.append(await router.get_processing_status(context["request_id"]))
            return {"content": "ok", "confidence": 0.8}

        providers[ProviderId.OPENAI].process_text = process_text
        await router.process_text_command("hello", {"session_id": "s1", "request_id": "r1"})

        assert seen[0].status == "processing"
        assert seen[0].type == "text"
        assert seen[0].provider == "openai"
        assert seen[0].session_id == "s1"
        assert (await router.get_processing_status("r1")).status == "not_found"

    @pytest.mark.asyncio
    async def test_usage_is_estimated_when_provider_omits_it(self, registry, ledger):
        router = SmartRouter(registry, ledger=ledger)
        await router.process_text_command("hello", {"metadata": {"user": OWNER}})

        stats = await ledger.get_usage_stats()
        # "hello" -> 2 tokens, "openai response to: hello" -> 7 tokens
        assert stats.summary.input_tokens == 2
        assert stats.summary.output_tokens == 7

    @pytest.mark.asyncio
    async def test_failing_candidate_advances(self, registry, providers):
        providers[ProviderId.CLAUDE_HAIKU].error = RuntimeError("haiku down")
        router = SmartRouter(registry)

        result = await router.process_text_command("leg day", {
            "metadata": {"tool_context": "workout", "user": OWNER},
        })

        assert result.provider == ProviderId.OPENAI
        assert result.fallback_used is True
        assert len(providers[ProviderId.CLAUDE_HAIKU].text_calls) == 1
        assert (await router.get_stats()).routing_stats["claude-haiku"] == 0

    @pytest.mark.asyncio
    async def test_unavailable_candidate_is_skipped(self, registry, providers):
        providers[ProviderId.CLAUDE_HAIKU].available = False
        router = SmartRouter(registry)

        result = await router.process_text_command("leg day", {
            "metadata": {"tool_context": "workout", "user": OWNER},
        })

        assert result.provider == ProviderId.OPENAI
        assert providers[ProviderId.CLAUDE_HAIKU].text_calls == []

    @pytest.mark.asyncio
    async def test_all_failing_reraises_last_error(self, registry, providers):
        providers[ProviderId.CLAUDE_HAIKU].error = RuntimeError("haiku down")
        providers[ProviderId.OPENAI].error = RuntimeError("openai down")
        providers[ProviderId.CLAUDE].error = ConnectionError("claude down")
        router = SmartRouter(registry)

        with pytest.raises(ConnectionError, match="claude down"):
            await router.process_text_command("leg day", {
                "request_id": "r1",
                "metadata": {"tool_context": "workout", "user": OWNER},
            })
        assert "r1" not in router.active_requests

    @pytest.mark.asyncio
    async def test_nothing_available_raises_exhausted(self, registry, providers):
        for provider in providers.values():
            provider.available = False
        router = SmartRouter(registry)

        with pytest.raises(AllProvidersExhausted):
            await router.process_text_command("leg day", {
                "metadata": {"tool_context": "workout", "user": OWNER},
            })
        assert len(router.active_requests) == 0

    @pytest.mark.asyncio
    async def test_permission_denied_contacts_nobody(self, registry, providers):
        router = SmartRouter(registry)
        with pytest.raises(PermissionDenied):
            await router.process_text_command("fix it", {
                "metadata": {"tool_context": "code", "role": "friend"},
            })
        assert all(p.text_calls == [] for p in providers.values())
        assert len(router.active_requests) == 0

    @pytest.mark.asyncio
    async def test_cost_tracking_failure_does_not_fail_request(self, registry):
        router = SmartRouter(registry, ledger=CostLedger(BrokenRepository()))

        result = await router.process_text_command("hello", {})

        assert result.provider == ProviderId.OPENAI

    @pytest.mark.asyncio
    async def test_record_cost_usage(self, registry, ledger):
        event = UsageEvent(provider="openai", tool_context="chat", input_tokens=1, output_tokens=1)

        assert await SmartRouter(registry).record_cost_usage(event) is False
        assert await SmartRouter(registry, ledger=ledger).record_cost_usage(event) is True
        assert await SmartRouter(registry, ledger=CostLedger(BrokenRepository())).record_cost_usage(event) is False

    @pytest.mark.asyncio
    async def test_stats(self, registry):
        router = SmartRouter(registry)
        await router.process_text_command("hello", {})
        await router.process_text_command("leg day", {"metadata": {"tool_context": "workout", "user": OWNER}})

        stats = await router.get_stats()
        assert stats.total_requests == 2
        assert stats.active_requests == 0
        assert stats.routing_stats["openai"] == 1
        assert stats.routing_stats["claude-haiku"] == 1
        assert stats.to_dict()["total_requests"] == 2


class TestAudio:
    """Test chunked audio accumulation and transcription."""

    @pytest.mark.asyncio
    async def test_chunks_are_assembled_and_forwarded(self, registry, providers):
        openai = providers[ProviderId.OPENAI]
        openai.transcription = {"text": "what is the weather", "confidence": 0.92, "language": "en"}
        router = SmartRouter(registry)
        context = {"session_id": "s1", "request_id": "a1"}

        first = await router.process_audio_chunk(b"abc", context)
        second = await router.process_audio_chunk(b"defg", context)
        result = await router.process_audio_chunk(b"hi", dict(context, is_last_chunk=True))

        assert first == AudioChunkStatus(status="processing", chunks_received=1, bytes_received=3)
        assert second == AudioChunkStatus(status="processing", chunks_received=2, bytes_received=7)
        assert isinstance(result, AudioResult)
        assert result.total_chunks == 3
        assert result.total_bytes == len(b"abc") + len(b"defg") + len(b"hi")
        assert openai.audio_calls == [(b"abcdefghi", "webm")]

        assert result.transcription.text == "what is the weather"
        assert result.ai_response.provider == ProviderId.OPENAI
        text, text_context = openai.text_calls[-1]
        assert text == "what is the weather"
        assert text_context["metadata"]["source"] == "audio"
        assert text_context["metadata"]["transcription_confidence"] == 0.92
        assert len(router.active_requests) == 0

    @pytest.mark.asyncio
    async def test_audio_format_is_passed_through(self, registry, providers):
        providers[ProviderId.OPENAI].transcription = "hello"
        router = SmartRouter(registry)

        await router.process_audio_chunk(b"\x00\x01", {
            "request_id": "a1", "is_last_chunk": True, "audio_format": "wav",
        })
        assert providers[ProviderId.OPENAI].audio_calls == [(b"\x00\x01", "wav")]

    @pytest.mark.asyncio
    async def test_empty_transcription_fails(self, registry, providers):
        providers[ProviderId.OPENAI].transcription = {"text": "   ", "confidence": 0.1}
        router = SmartRouter(registry)

        with pytest.raises(TranscriptionFailure):
            await router.process_audio_chunk(b"abc", {"request_id": "a1", "is_last_chunk": True})

        assert providers[ProviderId.OPENAI].text_calls == []
        assert len(router.active_requests) == 0

    @pytest.mark.asyncio
    async def test_transcription_error_fails(self, registry, providers):
        providers[ProviderId.OPENAI].transcription = RuntimeError("whisper down")
        router = SmartRouter(registry)

        with pytest.raises(TranscriptionFailure) as exc_info:
            await router.process_audio_chunk(b"abc", {"request_id": "a1", "is_last_chunk": True})

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "a1" not in router.active_requests

    @pytest.mark.asyncio
    async def test_request_id_is_required(self, registry):
        router = SmartRouter(registry)
        with pytest.raises(ValueError):
            await router.process_audio_chunk(b"abc", {"session_id": "s1"})


class TestCancellationAndStatus:
    """Test cancel_request and get_processing_status."""

    @pytest.mark.asyncio
    async def test_cancel_unknown_request(self, registry):
        router = SmartRouter(registry)
        assert await router.cancel_request("s1", "missing") is False

    @pytest.mark.asyncio
    async def test_cancel_tracked_request(self, registry, providers):
        router = SmartRouter(registry)
        await router.process_audio_chunk(b"abc", {"session_id": "s1", "request_id": "a1"})

        assert await router.cancel_request("s1", "a1") is True
        assert providers[ProviderId.OPENAI].cancelled == ["a1"]
        assert (await router.get_processing_status("a1")).status == "not_found"
        assert await router.cancel_request("s1", "a1") is False

    @pytest.mark.asyncio
    async def test_cancelled_request_does_not_remove_reused_id(self, registry, providers):
        router = SmartRouter(registry)
        release = asyncio.Event()

        async def slow_process_text(text, context):
            await release.wait()
            return {"content": "late answer"}

        providers[ProviderId.OPENAI].process_text = slow_process_text
        first = asyncio.ensure_future(router.process_text_command("hello", {"request_id": "r1"}))
        while "r1" not in router.active_requests:
            await asyncio.sleep(0)

        assert await router.cancel_request(None, "r1") is True
        await router.process_audio_chunk(b"abc", {"session_id": "s2", "request_id": "r1"})

        release.set()
        await first

        status = await router.get_processing_status("r1")
        assert status.status == "processing"
        assert status.type == "audio"
        assert status.chunks_received == 1

    @pytest.mark.asyncio
    async def test_cancel_hook_errors_are_contained(self, registry, providers):
        providers[ProviderId.OPENAI].cancel_request = Mock(side_effect=RuntimeError("nope"))
        router = SmartRouter(registry)
        await router.process_audio_chunk(b"abc", {"session_id": "s1", "request_id": "a1"})

        assert await router.cancel_request("s1", "a1") is True
        assert "a1" not in router.active_requests

    @pytest.mark.asyncio
    async def test_status_of_audio_request(self, registry):
        router = SmartRouter(registry)
        await router.process_audio_chunk(b"abc", {"session_id": "s1", "request_id": "a1"})

        status = await router.get_processing_status("a1", "s1")
        assert status.status == "processing"
        assert status.provider == "openai"
        assert status.type == "audio"
        assert status.chunks_received == 1
        assert status.session_id == "s1"
        assert status.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_status_not_found(self, registry):
        router = SmartRouter(registry)
        assert (await router.get_processing_status("missing")).to_dict() == {"status": "not_found"}


class TestStreamingChat:
    """Test process_streaming_chat."""

    @pytest.mark.asyncio
    async def test_chunks_relayed_and_completion_enriched(self, registry, providers, ledger):
        providers[ProviderId.OPENAI].stream_metadata = {
            "input_tokens": 12, "output_tokens": 3, "model": "gpt-4o-mini",
        }
        router = SmartRouter(registry, ledger=ledger)
        streamed, completed, errors = [], [], []

        await router.process_streaming_chat(
            messages=[{"role": "user", "content": "hello", "metadata": {"tool_context": "chat"}}],
            on_stream=streamed.append,
            on_complete=lambda content, meta: completed.append((content, meta)),
            on_error=errors.append,
            user=OWNER,
            user_message="hello",
            conversation_id="c1",
            message_id="m1",
        )

        assert errors == []
        assert streamed == ["Hello", " there"]
        content, meta = completed[0]
        assert content == "Hello there"
        assert meta["provider"] == "openai"
        assert meta["tool_context"] == "chat"
        assert meta["model"] == "gpt-4o-mini"
        assert "processing_time" in meta
        assert (await router.get_stats()).routing_stats["openai"] == 1

        records = await ledger.repository.all_records()
        assert records[0].user_id == "u1"
        assert records[0].input_tokens == 12
        assert records[0].output_tokens == 3

    @pytest.mark.asyncio
    async def test_tokens_estimated_without_metadata(self, registry, ledger):
        router = SmartRouter(registry, ledger=ledger)
        completed = []

        async def on_complete(content, meta):
            completed.append(content)

        await router.process_streaming_chat(
            messages=[{"role": "user", "content": "hello"}],
            on_stream=lambda chunk: None,
            on_complete=on_complete,
            on_error=lambda e: None,
            user=OWNER,
            user_message="hello",
        )

        assert completed == ["Hello there"]
        stats = await ledger.get_usage_stats()
        assert stats.summary.input_tokens == 2
        assert stats.summary.output_tokens == 3

    @pytest.mark.asyncio
    async def test_selection_error_goes_to_on_error(self, registry, providers):
        router = SmartRouter(registry)
        errors = []

        await router.process_streaming_chat(
            messages=[{"role": "user", "content": "fix", "metadata": {"tool_context": "code"}}],
            on_stream=lambda chunk: None,
            on_complete=lambda content, meta: None,
            on_error=errors.append,
            user={"id": "u2", "role": "friend"},
            user_message="fix",
        )

        assert isinstance(errors[0], PermissionDenied)
        assert all(p.text_calls == [] for p in providers.values())

    @pytest.mark.asyncio
    async def test_provider_error_goes_to_on_error(self, registry, providers, ledger):
        providers[ProviderId.OPENAI].error = RuntimeError("stream broke")
        router = SmartRouter(registry, ledger=ledger)
        completed, errors = [], []

        await router.process_streaming_chat(
            messages=[{"role": "user", "content": "hello"}],
            on_stream=lambda chunk: None,
            on_complete=lambda content, meta: completed.append(content),
            on_error=errors.append,
            user=OWNER,
            user_message="hello",
        )

        assert completed == []
        assert str(errors[0]) == "stream broke"
        assert (await ledger.get_usage_stats()).summary.total_requests == 0
