"""
OpenAI provider adapter.

Wraps chat completions behind the orchestrator's provider contract. Usage
reported by the API is passed through; errors propagate unchanged so the
orchestrator can count them against the provider's circuit.
"""

import os
from typing import Any, AsyncIterator, Optional

from openai import AsyncOpenAI

from ..core.pricing import ProviderProfile
from ..core.providers import Completion, Provider
from ..core.token_counter import TokenUsage


class OpenAIProvider(Provider):
    """Provider backed by ``openai.AsyncOpenAI`` chat completions."""

    def __init__(self, profile: ProviderProfile, client: Optional[AsyncOpenAI] = None, **options: Any):
        """Initialize the adapter.

        Args:
            profile: Provider profile (model and API key variable)
            client: Preconfigured client; created on first use if None
            **options: Extra chat completion parameters (temperature, ...)
        """
        if not profile.model or not profile.model.strip():
            raise ValueError("model is required and cannot be empty")
        self.provider_id = profile.id
        self.model = profile.model
        self.api_key_env = profile.api_key_env
        self.options = options
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Built lazily so a missing key only fails the call that needs it
        if self._client is None:
            api_key = os.environ.get(self.api_key_env) if self.api_key_env else None
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def invoke(self, prompt: str, max_tokens: int) -> Completion:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            **self.options
        )

        text = response.choices[0].message.content if response.choices else None
        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return Completion(text=text or "", usage=usage, request_id=response.id)

    async def invoke_streaming(self, prompt: str, max_tokens: int) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            stream=True,
            **self.options
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content
