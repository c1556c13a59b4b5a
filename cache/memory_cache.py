# In-process caches for retrieval results and embeddings
# TTL- and size-bounded; owned by and injected into each service rather than shared globally

import logging
import math
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Statistics for cache performance monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            "hit_rate": self.hit_rate,
            "total_requests": self.hits + self.misses,
        }


@dataclass
class CacheEntry:
    value: Any
    timestamp: float


class TTLCache:
    """
    Dictionary cache with a time-to-live and a maximum size.

    Writes replace whole entries under a lock. When the cache grows past
    ``max_size`` the oldest entries are evicted first; expired entries are
    dropped on read and swept after every write.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = threading.RLock()
        self.stats = CacheStats()

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_seconds

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry.value

    def set(self, key: Hashable, value: Any):
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(value=value, timestamp=self._clock())
            self._evict_overflow()
            self._sweep_expired()

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry, self._clock())

    def _oldest_keys(self, count: int) -> list[Hashable]:
        ordered = sorted(self._entries.items(), key=lambda item: item[1].timestamp)
        return [key for key, _ in ordered[:count]]

    def _evict_overflow(self):
        overflow = len(self._entries) - self.max_size
        if overflow <= 0:
            return
        for key in self._oldest_keys(overflow):
            del self._entries[key]
        self.stats.evictions += overflow
        logger.debug(f"[{self.name}] evicted {overflow} oldest entries")

    def _sweep_expired(self):
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for key in expired:
            del self._entries[key]

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            **self.stats.to_dict(),
        }


class EmbeddingCache(TTLCache):
    """
    Embedding cache keyed by a cheap text fingerprint.

    The key is the normalized length plus the first and last 50 characters
    of the first 500, so long texts are never hashed in full. When full,
    expired entries go first, then the oldest 20%.
    """

    FINGERPRINT_WINDOW = 500
    EDGE_LENGTH = 50
    EVICT_FRACTION = 0.2

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(ttl_seconds, max_size, name="embeddings", clock=clock)

    @classmethod
    def fingerprint(cls, text: str) -> str:
        normalized = text.strip().lower()[:cls.FINGERPRINT_WINDOW]
        return f"{len(normalized)}:{normalized[:cls.EDGE_LENGTH]}{normalized[-cls.EDGE_LENGTH:]}"

    def get_embedding(self, text: str) -> list[float] | None:
        return self.get(self.fingerprint(text))

    def set_embedding(self, text: str, embedding: list[float]):
        with self._lock:
            if len(self._entries) >= self.max_size:
                self._make_room()
            self._entries[self.fingerprint(text)] = CacheEntry(
                value=embedding, timestamp=self._clock()
            )

    def _make_room(self):
        self._sweep_expired()
        if len(self._entries) < self.max_size:
            return
        count = math.ceil(self.max_size * self.EVICT_FRACTION)
        for key in self._oldest_keys(count):
            del self._entries[key]
        self.stats.evictions += count

    def embed_with_cache(
        self,
        texts: list[str],
        embed_fn: Callable[[list[str]], list[list[float]]],
    ) -> list[list[float]]:
        """
        Return embeddings for ``texts``, calling ``embed_fn`` once for the misses.
        """
        results: list[list[float] | None] = [self.get_embedding(t) for t in texts]
        missing = [i for i, r in enumerate(results) if r is None]

        if missing:
            fresh = embed_fn([texts[i] for i in missing])
            for i, embedding in zip(missing, fresh):
                results[i] = embedding
                self.set_embedding(texts[i], embedding)

        return results
