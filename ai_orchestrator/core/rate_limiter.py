"""
Fixed-window rate limiting keyed by (subject, limit class).

Denial is returned as a decision value, not raised, so the caller can decide
how to surface it and report a retry-after time.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

GLOBAL_SUBJECT = "global"


class LimitClass(str, Enum):
    """Admission ceilings, from loosest to strictest."""
    GLOBAL = "global"    # Whole process
    SUBJECT = "subject"  # One end-user, any request
    AI = "ai"            # One end-user, AI generation requests


@dataclass(frozen=True)
class RateLimit:
    """Ceiling for one limit class."""
    requests: int
    window_seconds: float

    def __post_init__(self):
        if self.requests < 1:
            raise ValueError("requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


DEFAULT_LIMITS: Dict[LimitClass, RateLimit] = {
    LimitClass.GLOBAL: RateLimit(requests=1000, window_seconds=60),
    LimitClass.SUBJECT: RateLimit(requests=100, window_seconds=60),
    LimitClass.AI: RateLimit(requests=10, window_seconds=60),
}


@dataclass
class RateWindow:
    """Counter for one (subject, limit class) within the current window."""
    subject_key: str
    limit_class: LimitClass
    window_start: float
    count: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an admission check."""
    allowed: bool
    limit_class: LimitClass
    subject_key: str
    remaining: int
    reset_at: datetime


class RateLimiter:
    """Sliding sequence of fixed windows per (subject, limit class)."""

    def __init__(
        self,
        limits: Optional[Dict[LimitClass, RateLimit]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = dict(DEFAULT_LIMITS)
        if limits:
            self.limits.update(limits)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, LimitClass], RateWindow] = {}
        self._last_sweep = clock()

    def _limit(self, limit_class: LimitClass) -> RateLimit:
        try:
            return self.limits[LimitClass(limit_class)]
        except (KeyError, ValueError):
            raise ValueError(f"Unknown limit class: {limit_class}") from None

    def _live_window(
        self, key: Tuple[str, LimitClass], limit: RateLimit, now: float
    ) -> Optional[RateWindow]:
        window = self._windows.get(key)
        if window is None or now >= window.window_start + limit.window_seconds:
            return None
        return window

    def check_and_increment(
        self,
        subject_key: str,
        limit_class: LimitClass = LimitClass.AI,
    ) -> RateLimitDecision:
        """Admit or deny one request, counting it on admission.

        Args:
            subject_key: End-user (or ``"global"``) the request is attributed to
            limit_class: Which ceiling applies

        Returns:
            RateLimitDecision carrying the window's reset time
        """
        limit = self._limit(limit_class)
        limit_class = LimitClass(limit_class)
        key = (subject_key, limit_class)

        with self._lock:
            now = self._clock()
            # Expired windows are dropped at most once per longest window
            if now - self._last_sweep >= max(r.window_seconds for r in self.limits.values()):
                self._drop_expired(now)
            window = self._live_window(key, limit, now)
            if window is None:
                window = RateWindow(subject_key, limit_class, window_start=now, count=1)
                self._windows[key] = window
                allowed = True
            elif window.count < limit.requests:
                window.count += 1
                allowed = True
            else:
                allowed = False
            remaining = max(0, limit.requests - window.count)
            reset_at = datetime.fromtimestamp(window.window_start + limit.window_seconds)

        if not allowed:
            logger.warning(
                "Rate limit %s exceeded for %s (resets %s)",
                limit_class.value, subject_key, reset_at.isoformat(),
            )
        return RateLimitDecision(
            allowed=allowed,
            limit_class=limit_class,
            subject_key=subject_key,
            remaining=remaining,
            reset_at=reset_at,
        )

    def remaining(self, subject_key: str, limit_class: LimitClass = LimitClass.AI) -> int:
        """Requests still admissible in the current window, without consuming."""
        limit = self._limit(limit_class)
        limit_class = LimitClass(limit_class)
        with self._lock:
            window = self._live_window((subject_key, limit_class), limit, self._clock())
            return limit.requests if window is None else max(0, limit.requests - window.count)

    def reset_time(
        self, subject_key: str, limit_class: LimitClass = LimitClass.AI
    ) -> Optional[datetime]:
        """When the current window ends, or None if no window is open."""
        limit = self._limit(limit_class)
        limit_class = LimitClass(limit_class)
        with self._lock:
            window = self._live_window((subject_key, limit_class), limit, self._clock())
            if window is None:
                return None
            return datetime.fromtimestamp(window.window_start + limit.window_seconds)

    def release(self, subject_key: str, limit_class: LimitClass = LimitClass.AI) -> None:
        """Give back one admission counted in the current window.

        Used when a request admitted here was denied by another ceiling.
        """
        limit = self._limit(limit_class)
        limit_class = LimitClass(limit_class)
        with self._lock:
            window = self._live_window((subject_key, limit_class), limit, self._clock())
            if window is not None and window.count > 0:
                window.count -= 1

    def sweep(self) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: float) -> int:
        expired = [
            key for key, window in self._windows.items()
            if now >= window.window_start + self._limit(window.limit_class).window_seconds
        ]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        if expired:
            logger.debug("Dropped %d expired rate windows", len(expired))
        return len(expired)

    def clear(self, subject_key: Optional[str] = None) -> int:
        """Forget windows for one subject, or for everyone."""
        with self._lock:
            keys = [k for k in self._windows if subject_key is None or k[0] == subject_key]
            for key in keys:
                del self._windows[key]
        return len(keys)
