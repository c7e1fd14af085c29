"""
Token counting and usage estimation.

Providers report exact token usage when they can. When they don't (streamed
responses, offline stubs), usage is approximated from character length.
"""

import math
from dataclasses import dataclass

# Rough average for English prose across current tokenizers
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int
    estimated: bool = False

    def __post_init__(self):
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Approximate the token count of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt: str, response: str) -> TokenUsage:
    """Estimate usage for a prompt/response pair.

    The total is computed over the combined length so that
    ``estimate_usage(p, r).total_tokens == ceil((len(p) + len(r)) / 4)``.

    Args:
        prompt: Text sent upstream
        response: Full text received

    Returns:
        TokenUsage flagged as estimated
    """
    total = math.ceil((len(prompt) + len(response)) / CHARS_PER_TOKEN)
    prompt_tokens = min(estimate_tokens(prompt), total)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=total - prompt_tokens,
        estimated=True,
    )
