"""
Provider selection by task complexity and subject tier.

The policy table picks a preferred role (quality, balanced, cheapest); the
router then walks down the preference list until it finds a provider whose
circuit admits a request. The cheapest provider is the unconditional last
resort, so an open circuit never leaves the system unable to answer.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Collection, Dict, List, Tuple

from .circuit_breaker import CircuitBreakerRegistry
from .pricing import ProviderCatalog
from .tasks import SubjectTier, TaskComplexity

logger = logging.getLogger(__name__)


class ProviderRole(str, Enum):
    QUALITY = "quality"
    BALANCED = "balanced"
    CHEAPEST = "cheapest"


PREFERENCE_ORDER = [ProviderRole.QUALITY, ProviderRole.BALANCED, ProviderRole.CHEAPEST]

ROUTING_POLICY: Dict[Tuple[TaskComplexity, SubjectTier], ProviderRole] = {
    (TaskComplexity.COMPLEX, SubjectTier.FREE): ProviderRole.QUALITY,
    (TaskComplexity.MEDIUM, SubjectTier.FREE): ProviderRole.BALANCED,
    (TaskComplexity.SIMPLE, SubjectTier.FREE): ProviderRole.CHEAPEST,
    (TaskComplexity.COMPLEX, SubjectTier.PREMIUM): ProviderRole.QUALITY,
    (TaskComplexity.MEDIUM, SubjectTier.PREMIUM): ProviderRole.QUALITY,
    (TaskComplexity.SIMPLE, SubjectTier.PREMIUM): ProviderRole.BALANCED,
}


@dataclass(frozen=True)
class RoutingTable:
    """Which provider plays each role."""
    quality: str
    balanced: str
    cheapest: str

    def provider_for(self, role: ProviderRole) -> str:
        return getattr(self, ProviderRole(role).value)

    def ordered(self) -> List[str]:
        """Provider ids in preference order, without duplicates."""
        ids: List[str] = []
        for role in PREFERENCE_ORDER:
            provider_id = self.provider_for(role)
            if provider_id not in ids:
                ids.append(provider_id)
        return ids


class ProviderRouter:
    """Chooses which provider serves a request. Performs no I/O."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        breakers: CircuitBreakerRegistry,
        routing: RoutingTable,
    ):
        for provider_id in (routing.quality, routing.balanced, routing.cheapest):
            if provider_id not in catalog:
                raise ValueError(f"Routing refers to unknown provider: {provider_id}")
        self.catalog = catalog
        self.breakers = breakers
        self.routing = routing

    @property
    def last_resort(self) -> str:
        return self.routing.cheapest

    def preferred(self, complexity: TaskComplexity, tier: SubjectTier) -> str:
        """Policy choice before circuit state is considered."""
        role = ROUTING_POLICY[(TaskComplexity(complexity), SubjectTier(tier))]
        return self.routing.provider_for(role)

    def select(
        self,
        complexity: TaskComplexity,
        tier: SubjectTier,
        exclude: Collection[str] = (),
    ) -> str:
        """Pick a provider for a request.

        Selecting a provider whose circuit is half-open reserves its single
        probe slot; the caller must report the outcome (or ``release`` it).

        Args:
            complexity: Task complexity class
            tier: Subject's subscription tier
            exclude: Providers that must not be chosen (already failed)

        Returns:
            Provider id; the cheapest provider if nothing else is available
        """
        complexity, tier = TaskComplexity(complexity), SubjectTier(tier)
        preferred = self.preferred(complexity, tier)
        ordered = self.routing.ordered()
        candidates = ordered[ordered.index(preferred):]

        for provider_id in candidates:
            if provider_id in exclude:
                continue
            if provider_id == self.last_resort:
                break
            if self.breakers.try_acquire(provider_id):
                if provider_id != preferred:
                    logger.info(
                        "Routing %s/%s request to %s instead of %s",
                        complexity.value, tier.value, provider_id, preferred,
                    )
                return provider_id

        # Reserve a probe if the last resort is half-open, but never refuse it
        self.breakers.try_acquire(self.last_resort)
        if preferred != self.last_resort:
            logger.info(
                "Falling back to last-resort provider %s for %s/%s request",
                self.last_resort, complexity.value, tier.value,
            )
        return self.last_resort

    def health(self) -> Dict[str, bool]:
        """Provider id -> whether its circuit currently admits traffic."""
        return {pid: not self.breakers.is_open(pid) for pid in self.catalog.ids()}
