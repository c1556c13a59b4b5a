# Redis-backed result cache for retrieval services
# Drop-in alternative to TTLCache when several worker processes should share cached retrievals

import hashlib
import json
import logging
import os
from collections.abc import Callable, Hashable
from typing import Any

import redis

from .memory_cache import CacheStats

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Shared cache with the same get/set surface as TTLCache.

    Features:
    - Values serialized to JSON through optional encode/decode hooks
    - Cache key hashing for consistent lookups
    - Statistics tracking for monitoring
    - Graceful degradation when Redis is unavailable: every call becomes a
      miss and retrieval proceeds uncached
    """

    def __init__(
        self,
        ttl_seconds: int,
        namespace: str,
        redis_url: str | None = None,
        encode: Callable[[Any], Any] | None = None,
        decode: Callable[[Any], Any] | None = None,
    ):
        """
        Initialize the cache with a Redis connection.

        Args:
            ttl_seconds: Time-to-live for every entry
            namespace: Key namespace (e.g. "gen", "editor")
            redis_url: Redis connection URL (defaults to REDIS_URL env var)
            encode: Turns a value into JSON-serializable data
            decode: Rebuilds a value from decoded JSON
        """
        self.ttl_seconds = int(ttl_seconds)
        self.namespace = namespace
        self.redis_url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        self._encode = encode or (lambda value: value)
        self._decode = decode or (lambda data: data)
        self._redis: redis.Redis | None = None
        self._connected = False
        self.stats = CacheStats()

        self._connect()

    def _connect(self) -> bool:
        """Establish Redis connection with error handling."""
        try:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            self._redis.ping()
            self._connected = True
            logger.info(f"Redis cache connected: {self._safe_url}")
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}. Cache will be disabled.")
            self._connected = False
            return False

    @property
    def _safe_url(self) -> str:
        return self.redis_url.split("@")[-1]

    @property
    def is_connected(self) -> bool:
        """Check if Redis is available."""
        if not self._connected or not self._redis:
            return False
        try:
            self._redis.ping()
            return True
        except redis.RedisError:
            self._connected = False
            return False

    def _make_key(self, key: Hashable) -> str:
        content_hash = hashlib.sha256(str(key).encode()).hexdigest()[:16]
        return f"scholar:{self.namespace}:{content_hash}"

    def get(self, key: Hashable) -> Any | None:
        if not self.is_connected:
            self.stats.misses += 1
            return None

        redis_key = self._make_key(key)
        try:
            data = self._redis.get(redis_key)
            if data:
                self.stats.hits += 1
                return self._decode(json.loads(data.decode("utf-8")))
            self.stats.misses += 1
            return None
        except (redis.RedisError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Cache get error for key {redis_key}: {e}")
            self.stats.errors += 1
            self.stats.misses += 1
            return None

    def set(self, key: Hashable, value: Any):
        if not self.is_connected:
            return

        redis_key = self._make_key(key)
        try:
            payload = json.dumps(self._encode(value)).encode("utf-8")
            self._redis.setex(redis_key, self.ttl_seconds, payload)
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {redis_key}: {e}")
            self.stats.errors += 1

    def delete(self, key: Hashable) -> bool:
        if not self.is_connected:
            return False
        try:
            return bool(self._redis.delete(self._make_key(key)))
        except redis.RedisError as e:
            logger.error(f"Cache delete error: {e}")
            return False

    def clear(self):
        """Delete every key in this cache's namespace."""
        if not self.is_connected:
            return
        try:
            keys = list(self._redis.scan_iter(match=f"scholar:{self.namespace}:*"))
            if keys:
                self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.error(f"Failed to clear namespace {self.namespace}: {e}")

    def get_stats(self) -> dict:
        return {
            "name": self.namespace,
            "connected": self.is_connected,
            "redis_url": self._safe_url,
            "ttl_seconds": self.ttl_seconds,
            **self.stats.to_dict(),
        }
