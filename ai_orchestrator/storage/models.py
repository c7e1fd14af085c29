"""
Data models for storage layer.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable copy of one cost tracker bucket at a point in time.

    Snapshots are append-only; a later snapshot of the same bucket supersedes
    earlier ones when totals are computed.
    """
    captured_at: datetime
    provider_id: str
    period: str
    tokens: int
    cost: float
    requests: int
    subject_id: Optional[str] = None
