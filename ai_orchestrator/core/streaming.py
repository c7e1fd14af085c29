"""
One stream abstraction for cached and upstream responses.

A ``TextStream`` is a lazy, finite, single-use async iterator of text
fragments. Callers consume it the same way whether the fragments are being
replayed from the cache or produced by a provider.
"""

import asyncio
import inspect
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]

DEFAULT_REPLAY_CHUNKS = 20


def chunk_text(text: str, chunks: int = DEFAULT_REPLAY_CHUNKS) -> List[str]:
    """Split text into roughly ``chunks`` word-aligned fragments.

    Joining the fragments reproduces ``text`` exactly.
    """
    if not text:
        return []
    words = text.split(" ")
    size = max(1, len(words) // max(1, chunks))
    fragments = []
    for i in range(0, len(words), size):
        fragment = " ".join(words[i:i + size])
        if i + size < len(words):
            fragment += " "
        fragments.append(fragment)
    return fragments


async def _replay(fragments: List[str], delay: float) -> AsyncIterator[str]:
    for fragment in fragments:
        yield fragment
        if delay:
            await asyncio.sleep(delay)


class TextStream:
    """Single-use async iterator of text fragments.

    Collects every fragment it yields so the full text is available once the
    stream is exhausted.
    """

    def __init__(self, source: AsyncIterator[str], origin: str = "upstream"):
        self._source = source
        self.origin = origin
        self._parts: List[str] = []
        self._started = False
        self.finished = False

    @classmethod
    def from_text(
        cls,
        text: str,
        chunks: int = DEFAULT_REPLAY_CHUNKS,
        delay: float = 0.0,
    ) -> "TextStream":
        """Simulated stream over an already-complete response."""
        return cls(_replay(chunk_text(text, chunks), delay), origin="cache")

    def __aiter__(self) -> "TextStream":
        if self._started:
            raise RuntimeError("TextStream cannot be restarted")
        self._started = True
        return self

    async def __anext__(self) -> str:
        try:
            fragment = await self._source.__anext__()
        except StopAsyncIteration:
            self.finished = True
            raise
        self._parts.append(fragment)
        return fragment

    @property
    def text(self) -> str:
        """Fragments received so far, joined."""
        return "".join(self._parts)

    @property
    def chunk_count(self) -> int:
        return len(self._parts)

    async def aclose(self) -> None:
        close = getattr(self._source, "aclose", None)
        if close is not None:
            await close()


async def emit(on_chunk: Optional[ChunkCallback], fragment: str) -> None:
    """Deliver a fragment to a sync or async callback."""
    if on_chunk is None:
        return
    result = on_chunk(fragment)
    if inspect.isawaitable(result):
        await result


async def drain(stream: TextStream, on_chunk: Optional[ChunkCallback] = None) -> str:
    """Consume a stream, forwarding each fragment as it arrives."""
    async for fragment in stream:
        await emit(on_chunk, fragment)
    return stream.text
