"""
Provider adapters for the orchestrator.

Each adapter implements ``ai_orchestrator.core.providers.Provider`` for one
upstream SDK.
"""

from typing import Dict

from ..core.pricing import ProviderCatalog, ProviderProfile
from ..core.providers import Provider
from .anthropic_client import AnthropicProvider
from .echo import EchoProvider
from .openai_client import OpenAIProvider

ADAPTERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "echo": EchoProvider,
}


def build_provider(profile: ProviderProfile) -> Provider:
    """Create the adapter named by ``profile.kind``.

    Raises:
        ValueError: If the kind has no adapter
    """
    try:
        adapter = ADAPTERS[profile.kind]
    except KeyError:
        raise ValueError(f"No adapter for provider kind: {profile.kind}") from None
    return adapter(profile)


def build_providers(catalog: ProviderCatalog) -> Dict[str, Provider]:
    return {pid: build_provider(catalog.get_profile(pid)) for pid in catalog.ids()}


__all__ = [
    "AnthropicProvider",
    "EchoProvider",
    "OpenAIProvider",
    "build_provider",
    "build_providers",
]
