"""
Anthropic provider adapter.
"""

import os
from typing import Any, AsyncIterator, Optional

from anthropic import AsyncAnthropic

from ..core.pricing import ProviderProfile
from ..core.providers import Completion, Provider
from ..core.token_counter import TokenUsage


class AnthropicProvider(Provider):
    """Provider backed by ``anthropic.AsyncAnthropic`` messages."""

    def __init__(self, profile: ProviderProfile, client: Optional[AsyncAnthropic] = None, **options: Any):
        if not profile.model or not profile.model.strip():
            raise ValueError("model is required and cannot be empty")
        self.provider_id = profile.id
        self.model = profile.model
        self.api_key_env = profile.api_key_env
        self.options = options
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            api_key = os.environ.get(self.api_key_env) if self.api_key_env else None
            self._client = AsyncAnthropic(api_key=api_key)
        return self._client

    async def invoke(self, prompt: str, max_tokens: int) -> Completion:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            **self.options
        )

        # Only text blocks carry the answer
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            )
        return Completion(text=text, usage=usage, request_id=response.id)

    async def invoke_streaming(self, prompt: str, max_tokens: int) -> AsyncIterator[str]:
        async with self.client.messages.stream(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            **self.options
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text
