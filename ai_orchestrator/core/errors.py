"""
Typed failures raised by the orchestration core.

Callers branch on the class (rate limit vs. upstream failure vs. cache
corruption) rather than on message text.
"""

from datetime import datetime
from typing import List, Optional, Tuple


class OrchestrationError(Exception):
    """Base class for every failure surfaced by the orchestrator."""
    code = "UNKNOWN_ERROR"


class RateLimited(OrchestrationError):
    """Caller exceeded an admission ceiling. Never retried by the core."""
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, limit_class: str, subject_key: str, reset_at: datetime):
        super().__init__(
            f"Rate limit '{limit_class}' exceeded for {subject_key}. "
            f"Try again at {reset_at.isoformat()}"
        )
        self.limit_class = limit_class
        self.subject_key = subject_key
        self.reset_at = reset_at

    def retry_after(self, now: Optional[datetime] = None) -> float:
        """Seconds until the window resets (never negative)."""
        now = now or datetime.now()
        return max(0.0, (self.reset_at - now).total_seconds())


class UpstreamError(OrchestrationError):
    """A provider call failed."""
    code = "UPSTREAM_ERROR"

    def __init__(self, provider_id: str, message: str, chunks_forwarded: int = 0):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
        # Fragments already delivered to the caller before the failure
        self.chunks_forwarded = chunks_forwarded

    @property
    def retryable(self) -> bool:
        return self.chunks_forwarded == 0


class UpstreamTimeout(UpstreamError):
    """A provider call exceeded its fixed timeout."""
    code = "TIMEOUT"

    def __init__(self, provider_id: str, timeout: float, chunks_forwarded: int = 0):
        super().__init__(
            provider_id, f"no response within {timeout:g}s", chunks_forwarded
        )
        self.timeout = timeout


class ProviderUnavailable(OrchestrationError):
    """Every attempted provider failed."""
    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, attempts: List[Tuple[str, UpstreamError]]):
        tried = ", ".join(provider_id for provider_id, _ in attempts) or "none"
        super().__init__(f"No provider could serve the request (tried: {tried})")
        self.attempts = attempts

    @property
    def last_error(self) -> Optional[UpstreamError]:
        return self.attempts[-1][1] if self.attempts else None


class CacheCorruption(OrchestrationError):
    """A cache entry is malformed. Treated as a miss and evicted."""
    code = "CACHE_ERROR"

    def __init__(self, fingerprint: str, reason: str):
        super().__init__(f"Corrupt cache entry {fingerprint!r}: {reason}")
        self.fingerprint = fingerprint
        self.reason = reason
