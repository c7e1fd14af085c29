"""
Unit tests for request orchestration.

Upstream providers are in-process fakes; time is injected so TTL, window and
cooldown behavior is deterministic.
"""

import asyncio
import logging
import math

import pytest

from ai_orchestrator.config.loader import default_config
from ai_orchestrator.core.cache import SemanticCache
from ai_orchestrator.core.circuit_breaker import CircuitBreakerRegistry, CircuitStatus
from ai_orchestrator.core.cost_tracker import CostTracker
from ai_orchestrator.core.errors import ProviderUnavailable, RateLimited, UpstreamError, UpstreamTimeout
from ai_orchestrator.core.orchestrator import (
    CACHE_PROVIDER,
    GenerationRequest,
    Orchestrator,
    ResultStatus,
)
from ai_orchestrator.core.pricing import DEFAULT_PROFILES
from ai_orchestrator.core.providers import Completion, Provider
from ai_orchestrator.core.rate_limiter import LimitClass, RateLimit, RateLimiter
from ai_orchestrator.core.router import ProviderRouter, RoutingTable
from ai_orchestrator.core.tasks import SubjectTier, TaskComplexity
from ai_orchestrator.core.token_counter import TokenUsage

ROUTING = RoutingTable(quality="claude", balanced="openai", cheapest="fallback")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(Provider):
    """Scriptable provider: can fail, stall, or break mid-stream."""

    def __init__(self, provider_id, fail=False, delay=0.0, usage=None, fragments=None, fail_after=None):
        self.provider_id = provider_id
        self.fail = fail
        self.delay = delay
        self.usage = usage
        self.fragments = fragments
        self.fail_after = fail_after
        self.calls = []

    def reply(self, prompt):
        return f"{self.provider_id} says: {prompt}"

    async def invoke(self, prompt, max_tokens):
        self.calls.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.provider_id} is down")
        return Completion(text=self.reply(prompt), usage=self.usage)

    async def invoke_streaming(self, prompt, max_tokens):
        self.calls.append(prompt)
        fragments = self.fragments or [self.reply(prompt)]
        fail_after = 0 if self.fail else self.fail_after
        for i, fragment in enumerate(fragments):
            if fail_after is not None and i >= fail_after:
                raise RuntimeError(f"{self.provider_id} stream broke")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield fragment


def build_orchestrator(providers=None, clock=None, ai_limit=100, threshold=5, **options):
    clock = clock or FakeClock()
    providers = providers or {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
    breakers = CircuitBreakerRegistry(failure_threshold=threshold, cooldown_seconds=300, clock=clock)
    return Orchestrator(
        providers=providers,
        router=ProviderRouter(DEFAULT_PROFILES, breakers, ROUTING),
        cache=SemanticCache(approximate=False, clock=clock),
        rate_limiter=RateLimiter({LimitClass.AI: RateLimit(ai_limit, 60)}, clock=clock),
        cost_tracker=CostTracker(DEFAULT_PROFILES, clock=clock),
        **options
    )


class TestGenerationRequest:
    """Test request construction."""

    def test_empty_prompt_rejected(self):
        with pytest.raises(ValueError, match="prompt is required"):
            GenerationRequest(prompt="   ")

    def test_coerces_strings(self):
        request = GenerationRequest(prompt="hi", complexity="complex", tier="premium")
        assert request.complexity is TaskComplexity.COMPLEX
        assert request.tier is SubjectTier.PREMIUM

    def test_degrade_steps_down_once(self):
        request = GenerationRequest(prompt="hi", complexity=TaskComplexity.COMPLEX)
        degraded = request.degrade()
        assert degraded.complexity is TaskComplexity.MEDIUM
        assert degraded.degraded is True
        assert request.degraded is False
        assert degraded.degrade().degrade().complexity is TaskComplexity.SIMPLE

    def test_for_task(self):
        request = GenerationRequest.for_task("tip please", "daily-tip")
        assert request.complexity is TaskComplexity.MEDIUM
        assert request.cache_category == "daily_tip"
        unknown = GenerationRequest.for_task("hi", "something-new")
        assert unknown.cache_category == "ai_response"


class TestServing:
    """Test cache and fresh paths."""

    def setup_method(self):
        self.providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
        self.orchestrator = build_orchestrator(self.providers)

    def test_fresh_then_cached(self):
        request = GenerationRequest(prompt="Suggest a breakfast")

        first = asyncio.run(self.orchestrator.generate(request))
        second = asyncio.run(self.orchestrator.generate(request))

        assert first.status == ResultStatus.FRESH
        assert first.provider_id == "openai"
        assert first.cost > 0
        assert first.attempts == ("openai",)
        assert second.status == ResultStatus.CACHED
        assert second.from_cache is True
        assert second.provider_id == CACHE_PROVIDER
        assert second.cost == 0.0
        assert second.value == first.value
        assert len(self.providers["openai"].calls) == 1

    def test_reported_usage_is_used(self):
        self.providers["openai"].usage = TokenUsage(prompt_tokens=10, completion_tokens=30)
        result = asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="Hello")))
        assert result.tokens == 40
        assert result.cost == 0.0004

    def test_usage_estimated_when_not_reported(self):
        request = GenerationRequest(prompt="Hello")
        result = asyncio.run(self.orchestrator.generate(request))
        assert result.tokens == math.ceil((len("Hello") + len(result.value)) / 4)

    def test_cost_recorded_per_subject(self):
        asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="Hello", subject_id="user-1")))
        totals = self.orchestrator.cost_tracker.totals("user-1")
        assert totals.requests == 1
        assert "openai" in totals.by_provider

    def test_generate_for_task_uses_category(self):
        result = asyncio.run(self.orchestrator.generate_for_task("Give me a tip", "daily-tip"))
        assert result.provider_id == "openai"
        assert self.orchestrator.cache.lookup("Give me a tip", "daily_tip") == result.value
        assert self.orchestrator.cache.lookup("Give me a tip") is None

    def test_premium_complex_uses_quality(self):
        request = GenerationRequest(prompt="Analyze this", complexity="complex", tier="premium")
        assert asyncio.run(self.orchestrator.generate(request)).provider_id == "claude"

    def test_metrics(self):
        asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="Hello")))
        metrics = self.orchestrator.metrics()
        assert metrics["cache"]["size"] == 1
        assert metrics["costs"]["requests"] == 1
        assert metrics["providers"] == {"claude": True, "openai": True, "fallback": True}

    def test_missing_adapter(self):
        with pytest.raises(ValueError, match="No provider adapter"):
            build_orchestrator({"claude": FakeProvider("claude")})

    def test_from_config(self):
        providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
        orchestrator = Orchestrator.from_config(default_config(), providers=providers)
        assert orchestrator.timeout == 30.0
        assert orchestrator.max_retries == 1
        assert orchestrator.cache.max_entries == 10000
        result = asyncio.run(orchestrator.generate(GenerationRequest(prompt="Hi", complexity="simple")))
        assert result.provider_id == "fallback"


class TestStreaming:
    """Test streamed delivery for cached and fresh responses."""

    def setup_method(self):
        self.providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
        self.providers["openai"].fragments = ["Eat ", "more ", "greens."]
        self.orchestrator = build_orchestrator(self.providers)

    def test_fresh_stream_forwards_in_order(self):
        received = []
        request = GenerationRequest(prompt="Food tip", streaming=True)
        result = asyncio.run(self.orchestrator.generate(request, received.append))

        assert received == ["Eat ", "more ", "greens."]
        assert result.value == "Eat more greens."
        assert result.chunks == 3

    def test_cached_response_is_replayed_as_stream(self):
        request = GenerationRequest(prompt="Food tip", streaming=True)
        asyncio.run(self.orchestrator.generate(request))

        received = []
        result = asyncio.run(self.orchestrator.generate(request, received.append))

        assert result.from_cache is True
        assert "".join(received) == "Eat more greens."
        assert result.chunks == len(received)

    def test_stream_failure_before_first_chunk_is_retried(self):
        self.providers["claude"].fail = True
        received = []
        request = GenerationRequest(prompt="Deep dive", complexity="complex", streaming=True)
        result = asyncio.run(self.orchestrator.generate(request, received.append))

        assert result.provider_id == "openai"
        assert result.degraded is True
        assert "".join(received) == "Eat more greens."

    def test_stream_failure_after_chunks_is_not_retried(self):
        self.providers["openai"].fail_after = 2
        received = []
        request = GenerationRequest(prompt="Food tip", streaming=True)

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(self.orchestrator.generate(request, received.append))

        assert received == ["Eat ", "more "]
        assert [pid for pid, _ in exc_info.value.attempts] == ["openai"]
        assert exc_info.value.last_error.chunks_forwarded == 2
        assert self.providers["fallback"].calls == []
        assert self.orchestrator.cache.lookup("Food tip") is None

    def test_stream_deadline_applies_across_chunks(self):
        self.providers["openai"].delay = 0.2
        orchestrator = build_orchestrator(self.providers, timeout=0.5)
        received = []
        request = GenerationRequest(prompt="Food tip", streaming=True)

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(orchestrator.generate(request, received.append))

        assert isinstance(exc_info.value.last_error, UpstreamTimeout)
        assert received == ["Eat ", "more "]


class TestFailureHandling:
    """Test retries, circuit breaking and typed failures."""

    def setup_method(self):
        self.clock = FakeClock()
        self.providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}

    def test_retry_on_degraded_route(self):
        self.providers["claude"].fail = True
        orchestrator = build_orchestrator(self.providers, self.clock)
        request = GenerationRequest(prompt="Analyze my week", complexity="complex")

        result = asyncio.run(orchestrator.generate(request))

        assert result.provider_id == "openai"
        assert result.degraded is True
        assert result.attempts == ("claude", "openai")
        assert orchestrator.router.breakers.get_state("claude").consecutive_failures == 1

    def test_all_attempts_fail(self):
        self.providers["claude"].fail = True
        self.providers["openai"].fail = True
        orchestrator = build_orchestrator(self.providers, self.clock)
        request = GenerationRequest(prompt="Analyze my week", complexity="complex")

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(orchestrator.generate(request))

        assert [pid for pid, _ in exc_info.value.attempts] == ["claude", "openai"]
        assert isinstance(exc_info.value.__cause__, UpstreamError)
        assert self.providers["fallback"].calls == []
        assert orchestrator.cost_tracker.totals().requests == 0

    def test_last_resort_failure_is_not_retried(self):
        self.providers["fallback"].fail = True
        orchestrator = build_orchestrator(self.providers, self.clock)
        request = GenerationRequest(prompt="Hi", complexity="simple")

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(orchestrator.generate(request))
        assert len(exc_info.value.attempts) == 1

    def test_try_generate_returns_failed_result(self):
        self.providers["fallback"].fail = True
        orchestrator = build_orchestrator(self.providers, self.clock)

        result = asyncio.run(orchestrator.try_generate(GenerationRequest(prompt="Hi", complexity="simple")))

        assert result.status == ResultStatus.FAILED
        assert result.ok is False
        assert result.attempts == ("fallback",)
        assert isinstance(result.error, ProviderUnavailable)

    def test_timeout_counts_as_failure(self):
        self.providers["openai"].delay = 1.0
        orchestrator = build_orchestrator(self.providers, self.clock, timeout=0.05, max_retries=0)

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(orchestrator.generate(GenerationRequest(prompt="Hello")))

        assert isinstance(exc_info.value.last_error, UpstreamTimeout)
        assert orchestrator.router.breakers.get_state("openai").consecutive_failures == 1

    def test_empty_response_is_a_failure(self):
        self.providers["fallback"].reply = lambda prompt: ""
        orchestrator = build_orchestrator(self.providers, self.clock)

        with pytest.raises(ProviderUnavailable):
            asyncio.run(orchestrator.generate(GenerationRequest(prompt="Hi", complexity="simple")))
        assert orchestrator.cache.lookup("Hi") is None

    def test_circuit_opens_then_recovers(self):
        """Five failures open the circuit; traffic moves until the cooldown ends."""
        claude = self.providers["claude"]
        claude.fail = True
        orchestrator = build_orchestrator(self.providers, self.clock, max_retries=0)

        def ask(i):
            request = GenerationRequest(prompt=f"premium question {i}", complexity="complex", tier="premium")
            return asyncio.run(orchestrator.try_generate(request))

        for i in range(5):
            assert ask(i).status == ResultStatus.FAILED
        assert orchestrator.router.breakers.get_state("claude").status == CircuitStatus.OPEN

        claude.fail = False
        served_by = [ask(i).provider_id for i in range(5, 15)]
        assert served_by == ["openai"] * 10
        assert len(claude.calls) == 5

        self.clock.advance(300)
        assert ask(15).provider_id == "claude"
        state = orchestrator.router.breakers.get_state("claude")
        assert state.status == CircuitStatus.CLOSED
        assert state.consecutive_failures == 0


class TestAdmission:
    """Test rate limiting at the front door."""

    def setup_method(self):
        self.providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
        self.orchestrator = build_orchestrator(self.providers, ai_limit=2)

    def test_rate_limited_before_any_provider_call(self):
        for i in range(2):
            asyncio.run(self.orchestrator.generate(GenerationRequest(prompt=f"q{i}", subject_id="user-1")))

        with pytest.raises(RateLimited) as exc_info:
            asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="q9", subject_id="user-1")))

        assert exc_info.value.limit_class == "ai"
        assert exc_info.value.subject_key == "user-1"
        assert len(self.providers["openai"].calls) == 2

    def test_cache_hits_are_not_rate_limited(self):
        for i in range(2):
            asyncio.run(self.orchestrator.generate(GenerationRequest(prompt=f"q{i}", subject_id="user-1")))
        result = asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="q0", subject_id="user-1")))
        assert result.from_cache is True

    def test_subjects_have_separate_limits(self):
        for i in range(2):
            asyncio.run(self.orchestrator.generate(GenerationRequest(prompt=f"q{i}", subject_id="user-1")))
        result = asyncio.run(self.orchestrator.generate(GenerationRequest(prompt="q9", subject_id="user-2")))
        assert result.status == ResultStatus.FRESH

    def test_concurrent_requests_admitted_exactly(self):
        orchestrator = build_orchestrator(ai_limit=10)

        async def burst():
            requests = [GenerationRequest(prompt=f"burst {i}", subject_id="user-1") for i in range(20)]
            return await asyncio.gather(
                *(orchestrator.generate(r) for r in requests), return_exceptions=True
            )

        outcomes = asyncio.run(burst())
        assert sum(1 for o in outcomes if isinstance(o, RateLimited)) == 10
        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 10

    def test_global_denial_does_not_consume_subject_quota(self):
        clock = FakeClock()
        orchestrator = build_orchestrator(clock=clock)
        orchestrator.rate_limiter = RateLimiter(
            {
                LimitClass.AI: RateLimit(5, 60),
                LimitClass.GLOBAL: RateLimit(1, 60),
            },
            clock=clock,
        )
        asyncio.run(orchestrator.generate(GenerationRequest(prompt="first", subject_id="user-0")))

        for i in range(3):
            with pytest.raises(RateLimited) as exc_info:
                asyncio.run(orchestrator.generate(GenerationRequest(prompt=f"q{i}", subject_id="user-1")))
            assert exc_info.value.limit_class == "global"

        assert orchestrator.rate_limiter.remaining("user-1", LimitClass.AI) == 5


class TestCancellation:
    """Test that a cancelled request leaves no trace."""

    def setup_method(self):
        self.clock = FakeClock()
        self.providers = {pid: FakeProvider(pid) for pid in ROUTING.ordered()}
        self.providers["openai"].delay = 5.0
        self.orchestrator = build_orchestrator(self.providers, self.clock)

    def _cancel_midway(self, request):
        async def scenario():
            task = asyncio.ensure_future(self.orchestrator.generate(request))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

    def test_no_cost_cache_or_failure_recorded(self):
        self._cancel_midway(GenerationRequest(prompt="Hello"))

        assert self.orchestrator.cost_tracker.totals().requests == 0
        assert self.orchestrator.cache.lookup("Hello") is None
        assert self.orchestrator.router.breakers.get_state("openai").consecutive_failures == 0

    def test_half_open_probe_released(self):
        breakers = self.orchestrator.router.breakers
        for _ in range(5):
            breakers.record_failure("openai")
        self.clock.advance(300)

        self._cancel_midway(GenerationRequest(prompt="Hello"))

        state = breakers.get_state("openai")
        assert state.status == CircuitStatus.HALF_OPEN
        assert state.probe_in_flight is False

    def test_raising_chunk_callback_releases_probe(self):
        self.providers["openai"].delay = 0.0
        breakers = self.orchestrator.router.breakers
        for _ in range(5):
            breakers.record_failure("openai")
        self.clock.advance(300)

        def on_chunk(fragment):
            raise RuntimeError("client went away")

        with pytest.raises(RuntimeError, match="client went away"):
            asyncio.run(self.orchestrator.generate(
                GenerationRequest(prompt="Hello", streaming=True), on_chunk
            ))

        state = breakers.get_state("openai")
        assert state.status == CircuitStatus.HALF_OPEN
        assert state.probe_in_flight is False
        assert self.orchestrator.cost_tracker.totals().requests == 0
        assert breakers.try_acquire("openai") is True


class TestBudget:
    def test_budget_warning_logged(self, caplog):
        orchestrator = build_orchestrator(monthly_budget=0.000001)
        with caplog.at_level(logging.WARNING, logger="ai_orchestrator.core.orchestrator"):
            asyncio.run(orchestrator.generate(GenerationRequest(prompt="Hello")))
        assert "over the monthly budget" in caplog.text
