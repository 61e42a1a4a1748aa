"""
Cache package for Entitlements Service.

Provides a Redis-backed cache for role and subscription reads with an
explicit TTL and per-user invalidation. Caching is off unless
``ACCESS_CACHE_ENABLED`` is set.
"""

from .redis_cache import RedisCache

__all__ = ["RedisCache"]
