# Result and embedding caches for the retrieval services
from .memory_cache import CacheStats, EmbeddingCache, TTLCache
from .redis_cache import RedisCache

__all__ = ["CacheStats", "EmbeddingCache", "TTLCache", "RedisCache"]
