"""
Per-provider circuit breakers.

Closed -> (threshold consecutive failures) -> Open -> (cooldown) -> Half-Open
-> probe success -> Closed, probe failure -> Open with a fresh cooldown.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SECONDS = 300.0


class CircuitStatus(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Fault barrier state for one provider."""
    provider_id: str
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    status: CircuitStatus = CircuitStatus.CLOSED
    probe_in_flight: bool = False


class CircuitBreakerRegistry:
    """Tracks consecutive failures per provider and gates requests.

    The registry only reports; it never retries or suppresses anything.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[str, CircuitState] = {}

    def _state(self, provider_id: str) -> CircuitState:
        state = self._states.get(provider_id)
        if state is None:
            state = CircuitState(provider_id=provider_id)
            self._states[provider_id] = state
        return state

    def _cooled_down(self, state: CircuitState) -> bool:
        return (
            state.opened_at is not None
            and self._clock() - state.opened_at >= self.cooldown_seconds
        )

    def is_open(self, provider_id: str) -> bool:
        """Whether the provider would currently be bypassed.

        Read-only: does not reserve a half-open probe.
        """
        with self._lock:
            state = self._state(provider_id)
            if state.status == CircuitStatus.CLOSED:
                return False
            if state.status == CircuitStatus.OPEN:
                return not self._cooled_down(state)
            return state.probe_in_flight

    def try_acquire(self, provider_id: str) -> bool:
        """Ask permission to send a request to the provider.

        A cooled-down open circuit moves to half-open and admits exactly one
        probe; further requests are refused until that probe is reported.

        Returns:
            True if the request may be sent
        """
        with self._lock:
            state = self._state(provider_id)
            if state.status == CircuitStatus.CLOSED:
                return True
            if state.status == CircuitStatus.OPEN:
                if not self._cooled_down(state):
                    return False
                state.status = CircuitStatus.HALF_OPEN
                logger.info("Circuit for %s half-open, admitting probe", provider_id)
            if state.probe_in_flight:
                return False
            state.probe_in_flight = True
            return True

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            state = self._state(provider_id)
            if state.status != CircuitStatus.CLOSED:
                logger.info("Circuit for %s closed after successful probe", provider_id)
            state.status = CircuitStatus.CLOSED
            state.consecutive_failures = 0
            state.opened_at = None
            state.probe_in_flight = False

    def record_failure(self, provider_id: str) -> None:
        with self._lock:
            state = self._state(provider_id)
            state.consecutive_failures += 1
            state.probe_in_flight = False
            if state.status == CircuitStatus.HALF_OPEN:
                state.status = CircuitStatus.OPEN
                state.opened_at = self._clock()
                logger.warning("Probe to %s failed, circuit re-opened", provider_id)
            elif (state.status == CircuitStatus.CLOSED
                  and state.consecutive_failures >= self.failure_threshold):
                state.status = CircuitStatus.OPEN
                state.opened_at = self._clock()
                logger.warning(
                    "Circuit for %s opened after %d consecutive failures",
                    provider_id, state.consecutive_failures,
                )

    def release(self, provider_id: str) -> None:
        """Give back a half-open probe that was abandoned (e.g. cancelled)."""
        with self._lock:
            self._state(provider_id).probe_in_flight = False

    def get_state(self, provider_id: str) -> CircuitState:
        """Copy of the provider's current state."""
        with self._lock:
            state = self._state(provider_id)
            return CircuitState(
                provider_id=state.provider_id,
                consecutive_failures=state.consecutive_failures,
                opened_at=state.opened_at,
                status=state.status,
                probe_in_flight=state.probe_in_flight,
            )

    def snapshot(self) -> Dict[str, CircuitState]:
        with self._lock:
            ids = list(self._states)
        return {provider_id: self.get_state(provider_id) for provider_id in ids}

    def reset(self, provider_id: Optional[str] = None) -> None:
        """Force circuits closed (one provider, or all)."""
        with self._lock:
            if provider_id is None:
                self._states.clear()
            else:
                self._states.pop(provider_id, None)
