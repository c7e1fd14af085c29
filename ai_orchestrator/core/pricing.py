"""
Provider profiles and cost calculation.

Each upstream provider is described by a static profile; costs are derived
from its per-token price.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, List

RELATIVE_SPEEDS = ("fastest", "fast", "medium", "slow")

# Costs are tracked to a hundred-millionth of a currency unit
COST_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class ProviderProfile:
    """Static configuration for one upstream provider."""
    id: str
    model: str
    cost_per_token: float
    max_tokens: int
    relative_speed: str = "medium"
    reliability: float = 0.9
    kind: str = "echo"  # Adapter used to reach it: openai, anthropic, echo
    api_key_env: str = ""

    def __post_init__(self):
        """Validate profile values are reasonable."""
        if not self.id:
            raise ValueError("provider id cannot be empty")
        if self.cost_per_token < 0:
            raise ValueError(f"cost_per_token for {self.id} cannot be negative")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens for {self.id} must be > 0")
        if self.relative_speed not in RELATIVE_SPEEDS:
            raise ValueError(
                f"relative_speed for {self.id} must be one of: {list(RELATIVE_SPEEDS)}"
            )
        if not 0.0 <= self.reliability <= 1.0:
            raise ValueError(f"reliability for {self.id} must be between 0 and 1")


@dataclass(frozen=True)
class ProviderCatalog:
    """Read-only table of provider profiles keyed by id."""
    profiles: Dict[str, ProviderProfile]

    def get_profile(self, provider_id: str) -> ProviderProfile:
        """Get the profile for a specific provider.

        Args:
            provider_id: Provider identifier

        Returns:
            ProviderProfile for the provider

        Raises:
            ValueError: If provider is not registered
        """
        if provider_id not in self.profiles:
            raise ValueError(f"Unsupported provider: {provider_id}")
        return self.profiles[provider_id]

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self.profiles

    def ids(self) -> List[str]:
        return list(self.profiles)

    def cheapest(self) -> ProviderProfile:
        """Profile with the lowest per-token cost (ties broken by id)."""
        if not self.profiles:
            raise ValueError("Provider catalog is empty")
        return min(self.profiles.values(), key=lambda p: (p.cost_per_token, p.id))


# Values used by the application before any configuration is loaded
DEFAULT_PROFILES = ProviderCatalog({
    "claude": ProviderProfile(
        id="claude",
        model="claude-3-5-sonnet-20241022",
        cost_per_token=0.000003,
        max_tokens=4000,
        relative_speed="fast",
        reliability=0.95,
        kind="anthropic",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    "openai": ProviderProfile(
        id="openai",
        model="gpt-4o",
        cost_per_token=0.000010,
        max_tokens=4000,
        relative_speed="medium",
        reliability=0.93,
        kind="openai",
        api_key_env="OPENAI_API_KEY",
    ),
    "fallback": ProviderProfile(
        id="fallback",
        model="gpt-3.5-turbo",
        cost_per_token=0.0000015,
        max_tokens=4000,
        relative_speed="fastest",
        reliability=0.90,
        kind="openai",
        api_key_env="OPENAI_API_KEY",
    ),
})


def calculate_cost(profile: ProviderProfile, tokens: int) -> float:
    """Calculate cost for a number of tokens with conservative rounding.

    Args:
        profile: Provider that served the tokens
        tokens: Number of tokens consumed

    Returns:
        Cost rounded UP to the tracking quantum

    Raises:
        ValueError: If tokens is negative
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")

    # str() keeps the float's shortest repr, avoiding binary noise
    cost = Decimal(tokens) * Decimal(str(profile.cost_per_token))
    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
