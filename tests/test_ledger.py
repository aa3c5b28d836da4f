"""
Unit tests for the cost ledger.

Tests usage aggregation, stats shape, projections and threshold checks.
"""

import random
from decimal import Decimal

import pytest

from ai_cost_router.core.errors import CostTrackingFailure
from ai_cost_router.core.ledger import CostLedger, UsageSummary
from ai_cost_router.core.thresholds import CostThresholds, ThresholdPeriod
from ai_cost_router.storage.models import UsageEvent
from ai_cost_router.storage.repository import InMemoryUsageRepository


class FailingRepository(InMemoryUsageRepository):
    async def increment(self, event, cost, now):
        raise OSError("disk full")

    async def all_records(self):
        raise OSError("disk full")


def event(provider="openai", tool="chat", user_id=None, input_tokens=100, output_tokens=50, **kw):
    return UsageEvent(
        provider=provider,
        tool_context=tool,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        user_id=user_id,
        **kw
    )


class TestCalculation:
    """Test ledger pricing helpers."""

    def test_calculate_cost_is_linear(self):
        ledger = CostLedger()
        single = ledger.calculate_cost("claude", 300, 700)
        assert ledger.calculate_cost("claude", 600, 1400) == 2 * single

    def test_model_specific_pricing(self):
        ledger = CostLedger()
        sonnet = ledger.calculate_cost("claude", 1000, 1000)
        haiku = ledger.calculate_cost("claude", 1000, 1000, "claude-3-5-haiku-20241022")
        assert sonnet == Decimal("0.018")
        assert haiku == Decimal("0.0015")

    def test_unknown_provider(self):
        assert CostLedger().calculate_cost("mystery", 1000, 1000) == Decimal("0")

    def test_estimate_tokens(self):
        assert CostLedger.estimate_tokens("hello world") == 3
        assert CostLedger.estimate_tokens("") == 0


class TestTrackUsage:
    """Test usage aggregation."""

    @pytest.mark.asyncio
    async def test_repeated_usage_aggregates(self):
        ledger = CostLedger()
        for _ in range(5):
            record = await ledger.track_usage(event(user_id="u1"))

        assert record.requests == 5
        assert record.input_tokens == 500
        assert record.output_tokens == 250
        assert record.total_cost == 5 * ledger.calculate_cost("openai", 100, 50)

    @pytest.mark.asyncio
    async def test_aggregation_is_order_independent(self):
        events = [
            event(input_tokens=i * 10, output_tokens=i * 3, user_id="u1")
            for i in range(1, 20)
        ]
        shuffled = list(events)
        random.Random(7).shuffle(shuffled)

        forward, backward = CostLedger(), CostLedger()
        for e in events:
            await forward.track_usage(e)
        for e in shuffled:
            await backward.track_usage(e)

        a = (await forward.repository.all_records())[0]
        b = (await backward.repository.all_records())[0]
        assert (a.requests, a.input_tokens, a.output_tokens, a.total_cost) == \
            (b.requests, b.input_tokens, b.output_tokens, b.total_cost)

    @pytest.mark.asyncio
    async def test_keys_are_separate(self):
        ledger = CostLedger()
        await ledger.track_usage(event(user_id="u1"))
        await ledger.track_usage(event(user_id="u2"))
        await ledger.track_usage(event(tool="voice", user_id="u1"))
        await ledger.track_usage(event())

        records = await ledger.repository.all_records()
        assert len(records) == 4
        assert all(r.requests == 1 for r in records)

    @pytest.mark.asyncio
    async def test_reported_cost_is_used(self):
        ledger = CostLedger()
        record = await ledger.track_usage(event(total_cost=Decimal("0.5")))
        assert record.total_cost == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_unknown_provider_is_ignored(self):
        ledger = CostLedger()
        assert await ledger.track_usage(event(provider="mystery")) is None
        assert await ledger.repository.all_records() == []

    @pytest.mark.asyncio
    async def test_persistence_error_raises_tracking_failure(self):
        ledger = CostLedger(FailingRepository())
        with pytest.raises(CostTrackingFailure, match="disk full"):
            await ledger.track_usage(event())


class TestUsageStats:
    """Test summaries and per-provider breakdown."""

    @pytest.mark.asyncio
    async def test_empty_ledger(self):
        stats = await CostLedger().get_usage_stats()
        assert stats.summary.total_cost == 0
        assert stats.summary.total_requests == 0
        assert stats.summary.avg_cost_per_request == 0
        assert stats.providers == {}

    @pytest.mark.asyncio
    async def test_failing_store_returns_zeros(self):
        stats = await CostLedger(FailingRepository()).get_usage_stats()
        assert stats.summary.total_cost == 0
        assert stats.summary.total_requests == 0

    @pytest.mark.asyncio
    async def test_summary_and_breakdown(self):
        ledger = CostLedger()
        await ledger.track_usage(event(provider="claude", input_tokens=1000, output_tokens=500))
        await ledger.track_usage(event(provider="openai", input_tokens=200, output_tokens=100))
        await ledger.track_usage(event(provider="openai", input_tokens=50, output_tokens=25))

        stats = await ledger.get_usage_stats()

        assert stats.summary.total_requests == 3
        assert stats.summary.input_tokens == 1250
        assert stats.summary.output_tokens == 625
        assert stats.summary.total_tokens == 1875
        assert set(stats.providers) == {"claude", "openai"}

        openai = stats.providers["openai"]
        assert openai.total_requests == 2
        # 375 tokens over 2 requests rounds half up
        assert openai.avg_tokens_per_request == 188
        assert stats.providers["claude"].total_cost == pytest.approx(0.0105)
        assert stats.summary.currency == "USD"
        assert stats.to_dict()["summary"]["total_requests"] == 3

    def test_empty_summary(self):
        summary = UsageSummary.from_records([])
        assert summary.total_tokens == 0
        assert summary.last_reset is None

    @pytest.mark.asyncio
    async def test_reset(self):
        ledger = CostLedger()
        await ledger.track_usage(event(provider="claude"))
        await ledger.track_usage(event(provider="openai"))

        assert await ledger.reset_usage("openai") == 1
        stats = await ledger.get_usage_stats()
        assert stats.providers["openai"].total_requests == 0
        assert stats.providers["claude"].total_requests == 1

        await ledger.reset_usage()
        assert (await ledger.get_usage_stats()).summary.total_requests == 0


class TestProjectionAndThresholds:
    """Test linear projection and threshold checks."""

    @pytest.mark.asyncio
    async def test_projection(self):
        ledger = CostLedger()
        await ledger.track_usage(event(total_cost=Decimal("0.25")))

        projection = await ledger.get_cost_projection()
        assert projection.daily == 0.25
        assert projection.weekly == 1.75
        assert projection.monthly == 7.5

        assert (await ledger.get_cost_projection(days=31)).monthly == 7.75

    @pytest.mark.asyncio
    async def test_projection_days_must_be_positive(self):
        with pytest.raises(ValueError):
            await CostLedger().get_cost_projection(days=0)

    @pytest.mark.asyncio
    async def test_threshold_breaches(self):
        ledger = CostLedger()
        await ledger.track_usage(event(total_cost=Decimal("1.0")))

        breaches = await ledger.check_thresholds(CostThresholds())
        periods = [b.period for b in breaches]
        # daily 1.0 >= 1.0, weekly 7 >= 5, monthly 30 >= 20, total 1 < 50
        assert periods == [ThresholdPeriod.DAILY, ThresholdPeriod.WEEKLY, ThresholdPeriod.MONTHLY]

    @pytest.mark.asyncio
    async def test_repeated_checks_do_not_deduplicate(self):
        ledger = CostLedger()
        await ledger.track_usage(event(total_cost=Decimal("2.0")))

        first = await ledger.check_thresholds(CostThresholds())
        second = await ledger.check_thresholds(CostThresholds())
        assert first == second
