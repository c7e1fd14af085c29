"""
Contract between the orchestrator and upstream LLM providers.

The core never depends on a provider's wire protocol; adapters in
``ai_orchestrator.sdk`` implement this interface.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Optional

from .token_counter import TokenUsage


@dataclass(frozen=True)
class Completion:
    """Full response from a non-streaming call."""
    text: str
    usage: Optional[TokenUsage] = None
    request_id: Optional[str] = None


class Provider:
    """Opaque upstream capability.

    Subclasses implement ``invoke`` and, where the upstream supports it,
    ``invoke_streaming``. The default streaming implementation yields the
    full completion as one fragment.
    """

    provider_id: str = ""

    async def invoke(self, prompt: str, max_tokens: int) -> Completion:
        raise NotImplementedError

    async def invoke_streaming(self, prompt: str, max_tokens: int) -> AsyncIterator[str]:
        completion = await self.invoke(prompt, max_tokens)
        if completion.text:
            yield completion.text
