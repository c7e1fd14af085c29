"""
Offline provider for local development and demos.

Answers deterministically without network access, so the CLI and the
orchestrator can be exercised with no API keys configured.
"""

import asyncio
from typing import AsyncIterator

from ..core.pricing import ProviderProfile
from ..core.providers import Completion, Provider
from ..core.streaming import chunk_text
from ..core.token_counter import TokenUsage, estimate_tokens


class EchoProvider(Provider):
    """Replies with a canned response derived from the prompt."""

    def __init__(self, profile: ProviderProfile, delay: float = 0.0, chunks: int = 8):
        self.provider_id = profile.id
        self.model = profile.model
        self.delay = delay
        self.chunks = chunks

    def respond(self, prompt: str) -> str:
        return f"[{self.model}] {prompt.strip()}"

    async def invoke(self, prompt: str, max_tokens: int) -> Completion:
        if self.delay:
            await asyncio.sleep(self.delay)
        text = self.respond(prompt)
        usage = TokenUsage(
            prompt_tokens=estimate_tokens(prompt),
            completion_tokens=min(estimate_tokens(text), max_tokens),
        )
        return Completion(text=text, usage=usage)

    async def invoke_streaming(self, prompt: str, max_tokens: int) -> AsyncIterator[str]:
        for fragment in chunk_text(self.respond(prompt), self.chunks):
            if self.delay:
                await asyncio.sleep(self.delay / self.chunks)
            yield fragment
