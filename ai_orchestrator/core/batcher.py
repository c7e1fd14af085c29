"""
Short-window request batching.

Requests arriving within a small window are collected, grouped by cache
category and dispatched together, so a burst of near-identical prompts hits
the cache after the first one is served.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .orchestrator import GenerationRequest, GenerationResult, Orchestrator

logger = logging.getLogger(__name__)

DEFAULT_BATCH_WINDOW = 0.15
DEFAULT_MAX_BATCH_SIZE = 10

_Pending = Tuple[GenerationRequest, "asyncio.Future[GenerationResult]"]


class RequestBatcher:
    """Collects requests for ``window`` seconds or ``max_batch_size`` items."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        window: float = DEFAULT_BATCH_WINDOW,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ):
        if window < 0:
            raise ValueError("window cannot be negative")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.orchestrator = orchestrator
        self.window = window
        self.max_batch_size = max_batch_size
        self._pending: List[_Pending] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: List[asyncio.Task] = []
        self._closed = False

    async def submit(self, request: GenerationRequest) -> GenerationResult:
        """Queue a request and wait for its own result.

        Raises:
            RuntimeError: If the batcher has been closed
            OrchestrationError: Whatever ``Orchestrator.generate`` raised
        """
        if self._closed:
            raise RuntimeError("RequestBatcher is closed")
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[GenerationResult]" = loop.create_future()
        self._pending.append((request, future))

        if len(self._pending) >= self.max_batch_size:
            self._flush()
        elif self._timer is None:
            self._timer = loop.call_later(self.window, self._flush)
        return await future

    def _flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, []
        if not batch:
            return

        groups: Dict[str, List[_Pending]] = defaultdict(list)
        for request, future in batch:
            groups[request.cache_category or ""].append((request, future))
        logger.debug("Flushing %d requests in %d groups", len(batch), len(groups))

        for category, items in groups.items():
            task = asyncio.ensure_future(self._dispatch(items))
            self._inflight.append(task)
            task.add_done_callback(self._inflight.remove)

    async def _dispatch(self, items: List[_Pending]) -> None:
        # First request of a group warms the cache for the rest
        first, rest = items[0], items[1:]
        await self._run(*first)
        await asyncio.gather(*(self._run(request, future) for request, future in rest))

    async def _run(
        self,
        request: GenerationRequest,
        future: "asyncio.Future[GenerationResult]",
    ) -> None:
        if future.cancelled():
            return
        task = asyncio.ensure_future(self.orchestrator.generate(request))
        # A submitter that stops waiting cancels its generation
        future.add_done_callback(lambda f: task.cancel() if f.cancelled() else None)
        try:
            result = await task
        except asyncio.CancelledError:
            if future.cancelled():
                # Only this submitter gave up; the rest of the group goes on
                return
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            return
        if not future.done():
            future.set_result(result)

    async def close(self) -> None:
        """Flush outstanding requests and wait for them to finish."""
        self._closed = True
        self._flush()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
