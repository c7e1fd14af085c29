"""
Semantic response cache.

Prompts are reduced to a fingerprint (lower-cased, punctuation stripped,
tokens sorted) so that trivially different phrasings share an entry. When no
exact fingerprint matches, live entries of the same category are compared
with a normalized edit-distance ratio and the closest one scoring above the
similarity threshold is returned.

The cache is best-effort: a miss only costs money and latency, and a
malformed entry is evicted and treated as a miss.
"""

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from rapidfuzz import fuzz

from .errors import CacheCorruption

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10000
DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_SIMILARITY_THRESHOLD = 0.85
# Upper bound on entries compared during one approximate lookup
DEFAULT_MAX_CANDIDATES = 500

_PUNCTUATION = re.compile(r"[^\w\s]")

CacheKey = Tuple[str, str]


def fingerprint(prompt: str) -> str:
    """Normalize a prompt into an order-insensitive token multiset."""
    tokens = _PUNCTUATION.sub("", prompt.lower()).split()
    return " ".join(sorted(tokens))


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity between two fingerprints (0..1)."""
    return fuzz.ratio(a, b) / 100.0


@dataclass
class CacheEntry:
    """One cached prompt -> response pair."""
    fingerprint: str
    value: str
    created_at: float
    ttl: float
    category: str = ""
    hits: int = 0
    last_accessed: float = 0.0

    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at()


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float
    oldest: Optional[datetime]
    newest: Optional[datetime]


def _validate(entry: CacheEntry) -> None:
    """Raise CacheCorruption if an entry cannot be served."""
    if not isinstance(entry.value, str):
        raise CacheCorruption(entry.fingerprint, "value is not text")
    if not isinstance(entry.created_at, (int, float)):
        raise CacheCorruption(entry.fingerprint, "created_at is not a timestamp")
    if not isinstance(entry.ttl, (int, float)) or entry.ttl <= 0:
        raise CacheCorruption(entry.fingerprint, "ttl must be a positive number")


class SemanticCache:
    """Bounded prompt -> response cache with approximate matching."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        category_ttls: Optional[Dict[str, float]] = None,
        approximate: bool = True,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        if not 0.0 < similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.similarity_threshold = similarity_threshold
        self.category_ttls = dict(category_ttls or {})
        self.approximate = approximate
        self.max_candidates = max_candidates
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def ttl_for(self, category: Optional[str]) -> float:
        """TTL applied when ``store`` is called without an explicit one."""
        return self.category_ttls.get(category or "", self.default_ttl)

    def lookup(self, prompt: str, category: Optional[str] = None) -> Optional[str]:
        """Return a cached response for the prompt, or None on a miss.

        Args:
            prompt: Prompt text as sent by the caller
            category: Cache namespace; approximate matches never cross it

        Returns:
            Cached response text, or None
        """
        key = (category or "", fingerprint(prompt))
        with self._lock:
            now = self._clock()
            entry = self._serve(key, now)
            if entry is None and self.approximate:
                entry = self._closest(key, now)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            entry.hits += 1
            entry.last_accessed = now
            self._entries.move_to_end((entry.category, entry.fingerprint))
            return entry.value

    def _serve(self, key: CacheKey, now: float) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            _validate(entry)
        except CacheCorruption as e:
            logger.warning("%s; evicting", e)
            del self._entries[key]
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def _closest(self, key: CacheKey, now: float) -> Optional[CacheEntry]:
        category, target = key
        cutoff = self.similarity_threshold * 100
        best: Optional[CacheEntry] = None
        best_score = 0.0
        corrupt: List[CacheKey] = []
        for candidate_key, entry in self._candidates(category):
            try:
                _validate(entry)
            except CacheCorruption as e:
                logger.warning("%s; evicting", e)
                corrupt.append(candidate_key)
                continue
            if entry.is_expired(now):
                continue
            score = fuzz.ratio(target, entry.fingerprint, score_cutoff=cutoff)
            # Must exceed the threshold; a score equal to it is a miss
            if score > cutoff and score > best_score:
                best, best_score = entry, score
        for candidate_key in corrupt:
            del self._entries[candidate_key]
        if best is not None:
            logger.debug(
                "Approximate cache hit (%.2f) for %r -> %r",
                best_score / 100, target, best.fingerprint,
            )
        return best

    def _candidates(self, category: str) -> Iterator[Tuple[CacheKey, CacheEntry]]:
        # Most recently used first, bounded
        seen = 0
        for candidate_key in reversed(list(self._entries)):
            if seen >= self.max_candidates:
                return
            if candidate_key[0] != category:
                continue
            seen += 1
            yield candidate_key, self._entries[candidate_key]

    def store(
        self,
        prompt: str,
        value: str,
        ttl: Optional[float] = None,
        category: Optional[str] = None,
    ) -> None:
        """Insert or overwrite the entry for the prompt's fingerprint.

        Raises:
            ValueError: If value is not text or ttl is not positive
        """
        if not isinstance(value, str):
            raise ValueError("cached value must be a string")
        ttl = self.ttl_for(category) if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")

        key = (category or "", fingerprint(prompt))
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(
                fingerprint=key[1],
                value=value,
                created_at=now,
                ttl=ttl,
                category=key[0],
                last_accessed=now,
            )
            self._entries.move_to_end(key)
            self._ensure_capacity(now)

    def _ensure_capacity(self, now: float) -> None:
        if len(self._entries) <= self.max_entries:
            return
        for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Swept %d expired cache entries", len(expired))
        return len(expired)

    def invalidate(
        self,
        category: Optional[str] = None,
        contains: Optional[str] = None,
    ) -> int:
        """Drop entries by category and/or prompt words.

        ``contains`` matches entries whose fingerprint has every word of it.
        With no filters every entry is dropped.
        """
        needle = set(fingerprint(contains).split()) if contains else None
        with self._lock:
            doomed = [
                key for key in self._entries
                if (category is None or key[0] == category)
                and (needle is None or needle <= set(key[1].split()))
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = self._misses = self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            created = [e.created_at for e in self._entries.values()]
            return CacheStats(
                size=len(self._entries),
                max_entries=self.max_entries,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                hit_rate=self._hits / lookups if lookups else 0.0,
                oldest=datetime.fromtimestamp(min(created)) if created else None,
                newest=datetime.fromtimestamp(max(created)) if created else None,
            )

    def export(self) -> str:
        """Serialize live entries to JSON."""
        with self._lock:
            now = self._clock()
            entries = [asdict(e) for e in self._entries.values() if not e.is_expired(now)]
        return json.dumps({"version": 1, "entries": entries})

    def load(self, data: str) -> int:
        """Merge entries from an ``export`` payload.

        Malformed entries are skipped with a warning.

        Returns:
            Number of entries loaded

        Raises:
            ValueError: If the payload itself is not a cache export
        """
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid cache export: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("entries"), list):
            raise ValueError("Invalid cache export: missing 'entries' list")

        loaded = 0
        with self._lock:
            for raw in payload["entries"]:
                try:
                    entry = _entry_from_dict(raw)
                    _validate(entry)
                except CacheCorruption as e:
                    logger.warning("Skipping %s", e)
                    continue
                self._entries[(entry.category, entry.fingerprint)] = entry
                loaded += 1
            self._ensure_capacity(self._clock())
        logger.info("Loaded %d cache entries", loaded)
        return loaded


def _entry_from_dict(raw) -> CacheEntry:
    if not isinstance(raw, dict) or not isinstance(raw.get("fingerprint"), str):
        raise CacheCorruption(str(raw)[:40], "entry has no fingerprint")
    try:
        return CacheEntry(
            fingerprint=raw["fingerprint"],
            value=raw["value"],
            created_at=raw["created_at"],
            ttl=raw["ttl"],
            category=raw.get("category", "") or "",
            hits=int(raw.get("hits", 0)),
            last_accessed=raw.get("last_accessed", raw["created_at"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruption(raw["fingerprint"], f"missing or invalid field {e}") from e
