"""
Request orchestration façade.

Cache lookup -> rate check -> provider selection -> upstream call (plain or
streamed) -> circuit/cost/cache bookkeeping, with a single bounded retry on a
degraded route when the first provider fails.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ai_orchestrator.config.loader import OrchestratorConfig
from ai_orchestrator.sdk import build_providers

from .cache import SemanticCache
from .circuit_breaker import CircuitBreakerRegistry
from .cost_tracker import BudgetLevel, CostTracker
from .errors import (
    OrchestrationError,
    ProviderUnavailable,
    RateLimited,
    UpstreamError,
    UpstreamTimeout,
)
from .providers import Provider
from .rate_limiter import GLOBAL_SUBJECT, LimitClass, RateLimiter
from .router import ProviderRouter
from .streaming import ChunkCallback, TextStream, drain, emit
from .tasks import SubjectTier, TaskComplexity, task_profile
from .token_counter import TokenUsage, estimate_usage

logger = logging.getLogger(__name__)

CACHE_PROVIDER = "cache"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 1


class ResultStatus(Enum):
    CACHED = "cached"
    FRESH = "fresh"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationRequest:
    """One generation call. Discarded once the result is returned."""
    prompt: str
    complexity: TaskComplexity = TaskComplexity.MEDIUM
    tier: SubjectTier = SubjectTier.FREE
    subject_id: str = "anonymous"
    streaming: bool = False
    task_type: str = "general"
    cache_category: Optional[str] = None
    max_tokens: Optional[int] = None
    degraded: bool = False

    def __post_init__(self):
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if not self.subject_id:
            raise ValueError("subject_id cannot be empty")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        object.__setattr__(self, "complexity", TaskComplexity(self.complexity))
        object.__setattr__(self, "tier", SubjectTier(self.tier))

    @classmethod
    def for_task(cls, prompt: str, task_type: str, **kwargs: Any) -> "GenerationRequest":
        """Build a request whose complexity and cache category come from the task."""
        profile = task_profile(task_type)
        kwargs.setdefault("complexity", profile.complexity)
        kwargs.setdefault("cache_category", profile.cache_category)
        return cls(prompt=prompt, task_type=task_type, **kwargs)

    def degrade(self) -> "GenerationRequest":
        """Copy routed one complexity class cheaper, marked as degraded."""
        return replace(self, complexity=self.complexity.downgraded(), degraded=True)


@dataclass(frozen=True)
class GenerationResult:
    """Structured outcome: served from cache, served fresh, or failed."""
    value: str
    provider_id: str
    from_cache: bool
    cost: float
    status: ResultStatus
    tokens: int = 0
    degraded: bool = False
    attempts: Tuple[str, ...] = ()
    chunks: int = 0
    error: Optional[OrchestrationError] = None

    @property
    def ok(self) -> bool:
        return self.status != ResultStatus.FAILED


class Orchestrator:
    """Serves generation requests through cache, router and providers.

    All collaborators are injected; nothing here is process-global.
    """

    def __init__(
        self,
        providers: Mapping[str, Provider],
        router: ProviderRouter,
        cache: SemanticCache,
        rate_limiter: RateLimiter,
        cost_tracker: CostTracker,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        replay_chunks: int = 20,
        replay_delay: float = 0.0,
        monthly_budget: Optional[float] = None,
    ):
        missing = [pid for pid in router.routing.ordered() if pid not in providers]
        if missing:
            raise ValueError(f"No provider adapter registered for: {missing}")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.providers = dict(providers)
        self.router = router
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.cost_tracker = cost_tracker
        self.timeout = timeout
        self.max_retries = max_retries
        self.replay_chunks = replay_chunks
        self.replay_delay = replay_delay
        self.monthly_budget = monthly_budget

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        providers: Optional[Mapping[str, Provider]] = None,
    ) -> "Orchestrator":
        """Wire every service from a loaded configuration.

        Args:
            config: Validated configuration
            providers: Adapters by provider id; built from the profiles if None
        """
        catalog = config.catalog()
        if providers is None:
            providers = build_providers(catalog)
        breakers = CircuitBreakerRegistry(
            failure_threshold=config.circuit_breaker.failure_threshold,
            cooldown_seconds=config.circuit_breaker.cooldown_seconds,
        )
        return cls(
            providers=providers,
            router=ProviderRouter(catalog, breakers, config.routing),
            cache=SemanticCache(
                max_entries=config.cache.max_entries,
                default_ttl=config.cache.default_ttl_seconds,
                similarity_threshold=config.cache.similarity_threshold,
                category_ttls=config.cache.ttl_seconds,
                approximate=config.cache.approximate,
            ),
            rate_limiter=RateLimiter(config.rate_limits),
            cost_tracker=CostTracker(catalog),
            timeout=config.upstream.timeout_seconds,
            max_retries=config.upstream.max_retries,
            monthly_budget=config.budget.monthly if config.budget else None,
        )

    async def generate(
        self,
        request: GenerationRequest,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> GenerationResult:
        """Serve one request.

        Args:
            request: What to generate and for whom
            on_chunk: Receives fragments in order when ``request.streaming``

        Returns:
            GenerationResult with status CACHED or FRESH

        Raises:
            RateLimited: Admission ceiling reached; nothing was called
            ProviderUnavailable: Every attempted provider failed
            asyncio.CancelledError: Caller cancelled; nothing was recorded
        """
        cached = self.cache.lookup(request.prompt, request.cache_category)
        if cached is not None:
            return await self._serve_cached(request, cached, on_chunk)

        self._admit(request)

        attempts: List[Tuple[str, UpstreamError]] = []
        exclude: List[str] = []
        current = request
        while True:
            provider_id = self.router.select(current.complexity, current.tier, exclude=exclude)
            try:
                text, usage, chunks = await self._call(provider_id, current, on_chunk)
            except UpstreamError as e:
                self.router.breakers.record_failure(provider_id)
                attempts.append((provider_id, e))
                logger.error("Provider %s failed: %s", provider_id, e)
                if (provider_id == self.router.last_resort
                        or len(attempts) > self.max_retries
                        or not e.retryable):
                    raise ProviderUnavailable(attempts) from e
                exclude.append(provider_id)
                current = current.degrade()
                logger.warning(
                    "Retrying request for %s as %s after %s failed",
                    request.subject_id, current.complexity.value, provider_id,
                )
                continue
            except asyncio.CancelledError:
                self.router.breakers.release(provider_id)
                logger.info("Request for %s cancelled during %s call", request.subject_id, provider_id)
                raise
            except BaseException:
                # Caller's on_chunk raised; no outcome to report for the provider
                self.router.breakers.release(provider_id)
                raise

            self.router.breakers.record_success(provider_id)
            return self._complete(
                request, current, provider_id, text, usage, chunks,
                tuple(pid for pid, _ in attempts) + (provider_id,),
            )

    async def try_generate(
        self,
        request: GenerationRequest,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> GenerationResult:
        """Like ``generate`` but failures come back as a FAILED result."""
        try:
            return await self.generate(request, on_chunk)
        except OrchestrationError as e:
            attempts = ()
            if isinstance(e, ProviderUnavailable):
                attempts = tuple(pid for pid, _ in e.attempts)
            return GenerationResult(
                value="",
                provider_id="",
                from_cache=False,
                cost=0.0,
                status=ResultStatus.FAILED,
                attempts=attempts,
                error=e,
            )

    async def generate_for_task(
        self,
        prompt: str,
        task_type: str,
        on_chunk: Optional[ChunkCallback] = None,
        **options: Any,
    ) -> GenerationResult:
        """Generate using the task catalog's complexity and cache category."""
        request = GenerationRequest.for_task(prompt, task_type, **options)
        return await self.generate(request, on_chunk)

    async def _serve_cached(
        self,
        request: GenerationRequest,
        value: str,
        on_chunk: Optional[ChunkCallback],
    ) -> GenerationResult:
        chunks = 0
        if request.streaming:
            stream = TextStream.from_text(value, self.replay_chunks, self.replay_delay)
            await drain(stream, on_chunk)
            chunks = stream.chunk_count
        logger.debug("Cache hit for %s (%s)", request.subject_id, request.task_type)
        return GenerationResult(
            value=value,
            provider_id=CACHE_PROVIDER,
            from_cache=True,
            cost=0.0,
            status=ResultStatus.CACHED,
            chunks=chunks,
        )

    def _admit(self, request: GenerationRequest) -> None:
        checks = (
            (request.subject_id, LimitClass.AI),
            (GLOBAL_SUBJECT, LimitClass.GLOBAL),
        )
        admitted = []
        for subject_key, limit_class in checks:
            decision = self.rate_limiter.check_and_increment(subject_key, limit_class)
            if not decision.allowed:
                # A request denied by a later ceiling is not counted by earlier ones
                for key, cls in admitted:
                    self.rate_limiter.release(key, cls)
                raise RateLimited(limit_class.value, subject_key, decision.reset_at)
            admitted.append((subject_key, limit_class))

    async def _call(
        self,
        provider_id: str,
        request: GenerationRequest,
        on_chunk: Optional[ChunkCallback],
    ) -> Tuple[str, Optional[TokenUsage], int]:
        provider = self.providers[provider_id]
        profile = self.router.catalog.get_profile(provider_id)
        max_tokens = min(request.max_tokens or profile.max_tokens, profile.max_tokens)

        if request.streaming:
            text, chunks = await self._call_streaming(provider_id, provider, request.prompt, max_tokens, on_chunk)
            return text, None, chunks

        try:
            completion = await asyncio.wait_for(
                provider.invoke(request.prompt, max_tokens), self.timeout
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeout(provider_id, self.timeout) from None
        except UpstreamError:
            raise
        except Exception as e:
            # Provider SDKs raise their own hierarchies
            raise UpstreamError(provider_id, f"{type(e).__name__}: {e}") from e

        if not isinstance(completion.text, str) or not completion.text:
            raise UpstreamError(provider_id, "empty response")
        return completion.text, completion.usage, 0

    async def _call_streaming(
        self,
        provider_id: str,
        provider: Provider,
        prompt: str,
        max_tokens: int,
        on_chunk: Optional[ChunkCallback],
    ) -> Tuple[str, int]:
        stream = TextStream(provider.invoke_streaming(prompt, max_tokens))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        fragments = stream.__aiter__()
        try:
            while True:
                try:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    fragment = await asyncio.wait_for(fragments.__anext__(), remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise UpstreamTimeout(provider_id, self.timeout, stream.chunk_count) from None
                except UpstreamError:
                    raise
                except Exception as e:
                    raise UpstreamError(
                        provider_id, f"{type(e).__name__}: {e}", stream.chunk_count
                    ) from e
                await emit(on_chunk, fragment)
        finally:
            await stream.aclose()

        if not stream.text:
            raise UpstreamError(provider_id, "empty response")
        return stream.text, stream.chunk_count

    def _complete(
        self,
        request: GenerationRequest,
        served: GenerationRequest,
        provider_id: str,
        text: str,
        usage: Optional[TokenUsage],
        chunks: int,
        attempts: Tuple[str, ...],
    ) -> GenerationResult:
        if usage is None:
            usage = estimate_usage(request.prompt, text)
        cost = self.cost_tracker.record(provider_id, usage.total_tokens, request.subject_id)
        self.cache.store(request.prompt, text, category=request.cache_category)
        logger.info(
            "Served %s request for %s via %s (%d tokens, $%.6f)",
            request.task_type, request.subject_id, provider_id, usage.total_tokens, cost,
        )
        self._check_budget()
        return GenerationResult(
            value=text,
            provider_id=provider_id,
            from_cache=False,
            cost=cost,
            status=ResultStatus.FRESH,
            tokens=usage.total_tokens,
            degraded=served.degraded,
            attempts=attempts,
            chunks=chunks,
        )

    def _check_budget(self) -> None:
        if not self.monthly_budget:
            return
        state = self.cost_tracker.budget_status(self.monthly_budget)
        if state.level != BudgetLevel.OK:
            logger.warning(
                "AI spend $%.4f is %s the monthly budget of $%.2f",
                state.amount_used,
                "over" if state.level == BudgetLevel.EXCEEDED else "approaching",
                self.monthly_budget,
            )

    def metrics(self) -> Dict[str, Any]:
        """Snapshot of cache, cost and provider health for monitoring."""
        totals = self.cost_tracker.totals()
        return {
            "cache": asdict(self.cache.stats()),
            "costs": {
                "total": totals.total,
                "tokens": totals.tokens,
                "requests": totals.requests,
                "by_provider": {pid: asdict(u) for pid, u in totals.by_provider.items()},
            },
            "providers": self.router.health(),
            "circuits": {
                pid: {
                    "status": state.status.value,
                    "consecutive_failures": state.consecutive_failures,
                }
                for pid, state in self.router.breakers.snapshot().items()
            },
        }
