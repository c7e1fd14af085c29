"""
Configuration management and loading.

Handles orchestrator settings: provider profiles, routing roles, cache,
circuit breaker, rate limit and upstream parameters.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_orchestrator.core.pricing import DEFAULT_PROFILES, ProviderCatalog, ProviderProfile
from ai_orchestrator.core.rate_limiter import DEFAULT_LIMITS, LimitClass, RateLimit
from ai_orchestrator.core.router import RoutingTable

CONFIG_ENV_VAR = "AI_ORCHESTRATOR_CONFIG"

PROVIDER_KINDS = ("openai", "anthropic", "echo")


@dataclass(frozen=True)
class CacheConfig:
    """Semantic cache settings."""
    max_entries: int = 10000
    default_ttl_seconds: float = 3600.0
    similarity_threshold: float = 0.85
    approximate: bool = True
    ttl_seconds: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        """Validate cache values."""
        if self.max_entries < 1:
            raise ValueError("cache.max_entries must be >= 1")
        if self.default_ttl_seconds <= 0:
            raise ValueError("cache.default_ttl_seconds must be > 0")
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("cache.similarity_threshold must be in (0, 1]")
        for category, ttl in self.ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(f"cache.ttl_seconds.{category} must be > 0")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown_seconds: float = 300.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("circuit_breaker.failure_threshold must be >= 1")
        if self.cooldown_seconds <= 0:
            raise ValueError("circuit_breaker.cooldown_seconds must be > 0")


@dataclass(frozen=True)
class UpstreamConfig:
    """Per-call limits applied to provider requests."""
    timeout_seconds: float = 30.0
    max_retries: int = 1

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("upstream.timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("upstream.max_retries cannot be negative")


@dataclass(frozen=True)
class BudgetConfig:
    """Monthly spend used for budget warnings."""
    monthly: float

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete orchestrator configuration."""
    providers: Dict[str, ProviderProfile]
    routing: RoutingTable
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    rate_limits: Dict[LimitClass, RateLimit] = field(default_factory=lambda: dict(DEFAULT_LIMITS))
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    budget: Optional[BudgetConfig] = None

    def __post_init__(self):
        """Validate routing refers to configured providers."""
        if not self.providers:
            raise ValueError("At least one provider must be configured")
        for role in ("quality", "balanced", "cheapest"):
            provider_id = getattr(self.routing, role)
            if provider_id not in self.providers:
                raise ValueError(f"routing.{role} refers to unknown provider: {provider_id}")
        missing = set(LimitClass) - set(self.rate_limits)
        if missing:
            raise ValueError(f"Missing rate limits for: {sorted(m.value for m in missing)}")

    def catalog(self) -> ProviderCatalog:
        return ProviderCatalog(dict(self.providers))


def default_config() -> OrchestratorConfig:
    """Configuration used when no file is given."""
    return OrchestratorConfig(
        providers=dict(DEFAULT_PROFILES.profiles),
        routing=RoutingTable(quality="claude", balanced="openai", cheapest="fallback"),
    )


def resolve_config_path(path: Optional[str] = None) -> Optional[str]:
    """Explicit path, else the environment variable, else None."""
    return path or os.environ.get(CONFIG_ENV_VAR) or None


def load_config(path: str) -> OrchestratorConfig:
    """Load and validate orchestrator configuration from a YAML file.

    Strict validation ensures a typo in a key is reported instead of silently
    falling back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated OrchestratorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Orchestrator config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {
        'providers', 'routing', 'cache', 'circuit_breaker',
        'rate_limits', 'upstream', 'budget',
    }
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    # Providers and routing are required; every other section has defaults
    if 'providers' not in raw_config:
        raise ValueError("Missing required 'providers' section")
    providers_data = _section(raw_config, 'providers')
    providers = {
        provider_id: _parse_provider(provider_id, data)
        for provider_id, data in providers_data.items()
    }

    if 'routing' not in raw_config:
        raise ValueError("Missing required 'routing' section")
    routing_data = _section(raw_config, 'routing')
    _reject_unknown(routing_data, {'quality', 'balanced', 'cheapest'}, "routing")
    for role in ('quality', 'balanced', 'cheapest'):
        if role not in routing_data:
            raise ValueError(f"Missing required 'routing.{role}'")
    routing = RoutingTable(
        quality=str(routing_data['quality']),
        balanced=str(routing_data['balanced']),
        cheapest=str(routing_data['cheapest']),
    )

    cache_data = _section(raw_config, 'cache')
    _reject_unknown(
        cache_data,
        {'max_entries', 'default_ttl_seconds', 'similarity_threshold', 'approximate', 'ttl_seconds'},
        "cache",
    )
    ttl_data = cache_data.get('ttl_seconds', {}) or {}
    if not isinstance(ttl_data, dict):
        raise ValueError("'cache.ttl_seconds' must be a dictionary")
    cache = CacheConfig(
        max_entries=int(_number(cache_data, 'max_entries', 10000, "cache")),
        default_ttl_seconds=_number(cache_data, 'default_ttl_seconds', 3600, "cache"),
        similarity_threshold=_number(cache_data, 'similarity_threshold', 0.85, "cache"),
        approximate=bool(cache_data.get('approximate', True)),
        ttl_seconds={
            str(category): _number(ttl_data, category, None, "cache.ttl_seconds")
            for category in ttl_data
        },
    )

    breaker_data = _section(raw_config, 'circuit_breaker')
    _reject_unknown(breaker_data, {'failure_threshold', 'cooldown_seconds'}, "circuit_breaker")
    circuit_breaker = CircuitBreakerConfig(
        failure_threshold=int(_number(breaker_data, 'failure_threshold', 5, "circuit_breaker")),
        cooldown_seconds=_number(breaker_data, 'cooldown_seconds', 300, "circuit_breaker"),
    )

    limits_data = _section(raw_config, 'rate_limits')
    _reject_unknown(limits_data, {c.value for c in LimitClass}, "rate_limits")
    rate_limits = dict(DEFAULT_LIMITS)
    for class_name, data in limits_data.items():
        rate_limits[LimitClass(class_name)] = _parse_rate_limit(data, f"rate_limits.{class_name}")

    upstream_data = _section(raw_config, 'upstream')
    _reject_unknown(upstream_data, {'timeout_seconds', 'max_retries'}, "upstream")
    upstream = UpstreamConfig(
        timeout_seconds=_number(upstream_data, 'timeout_seconds', 30, "upstream"),
        max_retries=int(_number(upstream_data, 'max_retries', 1, "upstream")),
    )

    budget = None
    if raw_config.get('budget') is not None:
        budget_data = _section(raw_config, 'budget')
        _reject_unknown(budget_data, {'monthly'}, "budget")
        if 'monthly' not in budget_data:
            raise ValueError("Missing required 'monthly' budget")
        budget = BudgetConfig(monthly=_number(budget_data, 'monthly', None, "budget"))

    return OrchestratorConfig(
        providers=providers,
        routing=routing,
        cache=cache,
        circuit_breaker=circuit_breaker,
        rate_limits=rate_limits,
        upstream=upstream,
        budget=budget,
    )


def _section(raw: Dict, key: str) -> Dict:
    data = raw.get(key, {}) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{key}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, default: Any, path: str) -> float:
    """Numeric value at ``path.key``; required when default is None."""
    if key not in data:
        if default is None:
            raise ValueError(f"Missing required '{key}' in {path}")
        return float(default)
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_provider(provider_id: str, data: Dict) -> ProviderProfile:
    """Parse and validate one provider profile.

    Args:
        provider_id: Key under ``providers``
        data: Provider configuration data

    Returns:
        Validated ProviderProfile

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"providers.{provider_id}"
    if not isinstance(data, dict):
        raise ValueError(f"Provider '{provider_id}' must be a dictionary")
    allowed_keys = {
        'kind', 'model', 'cost_per_token', 'max_tokens',
        'relative_speed', 'reliability', 'api_key_env',
    }
    _reject_unknown(data, allowed_keys, path)

    for key in ('kind', 'model'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        if not isinstance(data[key], str) or not data[key]:
            raise ValueError(f"'{key}' in {path} must be a non-empty string")

    kind = data['kind'].lower()
    if kind not in PROVIDER_KINDS:
        raise ValueError(f"'kind' in {path} must be one of: {list(PROVIDER_KINDS)}")

    return ProviderProfile(
        id=str(provider_id),
        model=data['model'],
        cost_per_token=_number(data, 'cost_per_token', None, path),
        max_tokens=int(_number(data, 'max_tokens', 4000, path)),
        relative_speed=str(data.get('relative_speed', 'medium')),
        reliability=_number(data, 'reliability', 0.9, path),
        kind=kind,
        api_key_env=str(data.get('api_key_env', '') or ''),
    )


def _parse_rate_limit(data: Dict, path: str) -> RateLimit:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _reject_unknown(data, {'requests', 'window_seconds'}, path)
    return RateLimit(
        requests=int(_number(data, 'requests', None, path)),
        window_seconds=_number(data, 'window_seconds', None, path),
    )
