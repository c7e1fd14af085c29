"""
Unit tests for per-provider circuit breakers.
"""

import pytest

from ai_orchestrator.core.circuit_breaker import CircuitBreakerRegistry, CircuitStatus


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCircuitTransitions:
    """Test closed -> open -> half-open -> closed/open."""

    def setup_method(self):
        self.clock = FakeClock()
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=5, cooldown_seconds=300, clock=self.clock
        )

    def _fail(self, provider_id: str, times: int) -> None:
        for _ in range(times):
            self.breakers.record_failure(provider_id)

    def test_unknown_provider_starts_closed(self):
        assert self.breakers.is_open("claude") is False
        assert self.breakers.get_state("claude").status == CircuitStatus.CLOSED

    def test_stays_closed_below_threshold(self):
        self._fail("claude", 4)
        assert self.breakers.is_open("claude") is False
        assert self.breakers.get_state("claude").consecutive_failures == 4

    def test_opens_at_threshold(self):
        self._fail("claude", 5)
        state = self.breakers.get_state("claude")
        assert state.status == CircuitStatus.OPEN
        assert state.opened_at == 1000.0
        assert self.breakers.is_open("claude") is True
        assert self.breakers.try_acquire("claude") is False

    def test_success_resets_failures(self):
        self._fail("claude", 4)
        self.breakers.record_success("claude")
        self._fail("claude", 4)
        assert self.breakers.is_open("claude") is False

    def test_circuits_are_independent(self):
        self._fail("claude", 5)
        assert self.breakers.is_open("openai") is False

    def test_half_open_admits_single_probe(self):
        self._fail("claude", 5)
        self.clock.advance(300)

        assert self.breakers.is_open("claude") is False
        assert self.breakers.try_acquire("claude") is True
        assert self.breakers.get_state("claude").status == CircuitStatus.HALF_OPEN
        assert self.breakers.try_acquire("claude") is False
        assert self.breakers.is_open("claude") is True

    def test_probe_success_closes_and_resets(self):
        self._fail("claude", 5)
        self.clock.advance(300)
        self.breakers.try_acquire("claude")
        self.breakers.record_success("claude")

        state = self.breakers.get_state("claude")
        assert state.status == CircuitStatus.CLOSED
        assert state.consecutive_failures == 0
        assert state.opened_at is None

    def test_probe_failure_reopens_with_fresh_cooldown(self):
        self._fail("claude", 5)
        self.clock.advance(300)
        self.breakers.try_acquire("claude")
        self.breakers.record_failure("claude")

        state = self.breakers.get_state("claude")
        assert state.status == CircuitStatus.OPEN
        assert state.opened_at == 1300.0
        self.clock.advance(299)
        assert self.breakers.try_acquire("claude") is False

    def test_release_returns_probe(self):
        self._fail("claude", 5)
        self.clock.advance(300)
        assert self.breakers.try_acquire("claude") is True
        self.breakers.release("claude")
        assert self.breakers.try_acquire("claude") is True

    def test_get_state_is_a_copy(self):
        state = self.breakers.get_state("claude")
        state.consecutive_failures = 99
        assert self.breakers.get_state("claude").consecutive_failures == 0

    def test_reset(self):
        self._fail("claude", 5)
        self.breakers.reset("claude")
        assert self.breakers.is_open("claude") is False
        self._fail("openai", 5)
        self.breakers.reset()
        assert self.breakers.snapshot() == {}

    def test_invalid_settings(self):
        with pytest.raises(ValueError, match="failure_threshold"):
            CircuitBreakerRegistry(failure_threshold=0)
        with pytest.raises(ValueError, match="cooldown_seconds"):
            CircuitBreakerRegistry(cooldown_seconds=0)
