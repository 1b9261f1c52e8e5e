"""Tests for the quota oracle and its use as the loop's gate."""

from datetime import datetime

import pytest
from pydantic import BaseModel

from apexcore import (
    ApexLoop, OutputContract, ProviderDescriptor, ProviderLadder, RawResponse, RetryPolicy,
    TaskCategory, TaskRequest
)
from apexcore.quota import QuotaOracle, get_quota_oracle


class Answer(BaseModel):
    answer: int


class FakeClock:
    """A settable wall clock."""

    def __init__(self, now=None):
        self.now = now if now is not None else datetime(2026, 3, 1, 12, 0).timestamp()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingProvider:
    """Answers every call and attaches fixed rate-limit headers."""

    def __init__(self, ratelimit=None):
        self.ratelimit = ratelimit or {}
        self.calls = []

    async def invoke(self, provider_id, prompt, timeout, system=None):
        self.calls.append(provider_id)
        return RawResponse(text='{"answer": 1}', metadata={"ratelimit": self.ratelimit})


def make_request():
    return TaskRequest(category=TaskCategory.REFLEX, prompt="1?", output_contract=OutputContract(Answer))


class TestTelemetry:
    """Tests for the remaining-requests buffer."""

    def test_low_remaining_blocks_until_reset(self):
        clock = FakeClock()
        oracle = QuotaOracle(clock=clock)

        oracle.record_telemetry("gemini/gemini-2.5-flash", remaining=4, limit=15, reset_seconds=30)

        assert not oracle.is_safe("gemini/gemini-2.5-flash")
        clock.advance(31)
        assert oracle.is_safe("gemini/gemini-2.5-flash")

    def test_groq_buffer_is_larger(self):
        oracle = QuotaOracle(clock=FakeClock())

        oracle.record_telemetry("groq/llama-3.3-70b-versatile", remaining=8, reset_seconds=60)
        oracle.record_telemetry("gemini/gemini-2.5-flash", remaining=8, reset_seconds=60)

        assert not oracle.is_safe("groq/llama-3.3-70b-versatile")
        assert oracle.is_safe("gemini/gemini-2.5-flash")

    def test_unknown_remaining_is_ignored(self):
        oracle = QuotaOracle(clock=FakeClock())

        oracle.record_telemetry("gemini/gemini-2.5-flash", remaining=-1, reset_seconds=60)

        assert oracle.telemetry("gemini/gemini-2.5-flash") is None
        assert oracle.is_safe("gemini/gemini-2.5-flash")

    @pytest.mark.parametrize("headers,remaining,limit,reset", [
        ({"x-ratelimit-remaining": "2", "x-ratelimit-limit": "10", "x-ratelimit-reset": "12"}, 2, 10, 12.0),
        ({"X-RateLimit-Remaining-Requests": "7", "x-ratelimit-reset-requests": "1m30s"}, 7, -1, 90.0),
        ({"llm_provider-x-ratelimit-remaining-requests": "1", "llm_provider-x-ratelimit-reset-requests": "250ms"}, 1, -1, 0.25),
    ])
    def test_record_headers(self, headers, remaining, limit, reset):
        clock = FakeClock()
        oracle = QuotaOracle(clock=clock)

        oracle.record_headers("p", headers)

        state = oracle.telemetry("p")
        assert state.remaining == remaining
        assert state.limit == limit
        assert state.reset_at == pytest.approx(clock.now + reset)

    def test_headers_without_remaining_are_ignored(self):
        oracle = QuotaOracle(clock=FakeClock())

        oracle.record_headers("p", {"content-type": "application/json"})

        assert oracle.telemetry("p") is None


class TestDailyUsage:
    """Tests for per-family daily thresholds."""

    @pytest.mark.parametrize("model_id,threshold", [
        ("gemini/gemini-2.5-flash", 1400),
        ("gemini/gemini-2.5-pro", 45),
        ("gemini/gemma-3-27b-it", 14000),
        ("gemini/gemini-robotics-er-1.5-preview", 18),
        ("gemini/gemini-2.5-flash-preview-tts", 8),
        ("groq/llama-3.3-70b-versatile", 1000),
        ("groq/llama-3.1-8b-instant", 14400),
    ])
    def test_safe_threshold(self, model_id, threshold):
        assert QuotaOracle.safe_threshold(model_id) == threshold

    def test_usage_reaching_threshold_blocks(self):
        oracle = QuotaOracle(clock=FakeClock())

        for _ in range(44):
            oracle.record_success("gemini/gemini-2.5-pro")
        assert oracle.is_safe("gemini/gemini-2.5-pro")

        oracle.record_success("gemini/gemini-2.5-pro")
        assert oracle.usage("gemini/gemini-2.5-pro") == 45
        assert not oracle.is_safe("gemini/gemini-2.5-pro")
        assert oracle("gemini/gemini-2.5-flash")

    def test_usage_resets_on_a_new_day(self):
        clock = FakeClock()
        oracle = QuotaOracle(clock=clock)
        for _ in range(8):
            oracle.record_success("gemini/gemini-2.5-flash-preview-tts")
        assert not oracle.is_safe("gemini/gemini-2.5-flash-preview-tts")

        clock.advance(24 * 3600)

        assert oracle.usage("gemini/gemini-2.5-flash-preview-tts") == 0
        assert oracle.is_safe("gemini/gemini-2.5-flash-preview-tts")

    def test_default_oracle_is_shared(self):
        assert get_quota_oracle() is get_quota_oracle()


class TestQuotaGate:
    """Tests for the oracle wired into ApexLoop."""

    @pytest.mark.asyncio
    async def test_unsafe_provider_is_skipped(self):
        oracle = QuotaOracle(clock=FakeClock())
        oracle.record_telemetry("p1", remaining=0, reset_seconds=60)
        adapter = RecordingProvider()
        loop = ApexLoop(
            adapter=adapter,
            ladder=ProviderLadder({TaskCategory.REFLEX: [ProviderDescriptor(id="p1"), ProviderDescriptor(id="p2")]}),
            retry_policy=RetryPolicy(base_delay=0),
            quota=oracle
        )

        result = await loop.execute(make_request())

        assert result.success
        assert adapter.calls == ["p2"]

    @pytest.mark.asyncio
    async def test_success_and_headers_are_recorded(self):
        clock = FakeClock()
        oracle = QuotaOracle(clock=clock)
        adapter = RecordingProvider(ratelimit={"x-ratelimit-remaining-requests": "2", "x-ratelimit-reset-requests": "20"})
        loop = ApexLoop(
            adapter=adapter,
            ladder=ProviderLadder({TaskCategory.REFLEX: [ProviderDescriptor(id="p1"), ProviderDescriptor(id="p2")]}),
            retry_policy=RetryPolicy(base_delay=0),
            quota=oracle
        )

        first = await loop.execute(make_request())
        second = await loop.execute(make_request())

        assert first.success and second.success
        assert oracle.usage("p1") == 1
        assert oracle.usage("p2") == 1
        # p1 reported 2 remaining, so the second request went to p2
        assert adapter.calls == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_explicit_gate_wins(self):
        oracle = QuotaOracle(clock=FakeClock())
        oracle.record_telemetry("p2", remaining=0, reset_seconds=60)
        adapter = RecordingProvider()
        loop = ApexLoop(
            adapter=adapter,
            ladder=ProviderLadder({TaskCategory.REFLEX: [ProviderDescriptor(id="p1"), ProviderDescriptor(id="p2")]}),
            retry_policy=RetryPolicy(base_delay=0),
            gate=lambda provider_id: provider_id == "p2",
            quota=oracle
        )

        await loop.execute(make_request())

        assert adapter.calls == ["p2"]
        assert oracle.usage("p2") == 1
