"""
Redis caching layer for provider results.
"""

import json
from datetime import datetime
from typing import Dict, Any, Optional, List, Set

import redis.asyncio as redis

from shared.logging import get_logger
from shared.errors import AccessLayerException
from ..rules.models import Role, Subscription


class RedisCache:
    """Caches each user's roles and subscription list with an explicit TTL.

    Entries are invalidated on role changes and subscription creation; the
    TTL bounds staleness for changes made outside this service.
    """

    ROLES_PREFIX = "access:roles:"
    SUBSCRIPTIONS_PREFIX = "access:subs:"

    def __init__(self, redis_url: str, ttl_seconds: int = 60, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = client

        self.min_ttl = 5
        self.max_ttl = 3600
        self.ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl_seconds))

    async def start(self):
        """Start the Redis cache."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )

            await self.redis.ping()
            self.logger.info("Redis cache started", ttl_seconds=self.ttl_seconds)

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    async def _get_json(self, key: str) -> Optional[Any]:
        try:
            cached = await self.redis.get(key)
        except Exception as e:
            self.logger.error("Error reading cache", key=key, error=str(e))
            return None
        if not cached:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            self.logger.warning("Discarding unreadable cache entry", key=key)
            return None

    async def _set_json(self, key: str, value: Any) -> bool:
        try:
            await self.redis.setex(key, self.ttl_seconds, json.dumps(value))
            return True
        except Exception as e:
            self.logger.error("Error writing cache", key=key, error=str(e))
            return False

    async def get_roles(self, user_id: str) -> Optional[Set[Role]]:
        data = await self._get_json(f"{self.ROLES_PREFIX}{user_id}")
        if data is None:
            return None
        return {Role(r) for r in data if r in Role._value2member_map_}

    async def set_roles(self, user_id: str, roles: Set[Role]) -> bool:
        return await self._set_json(f"{self.ROLES_PREFIX}{user_id}", sorted(r.value for r in roles))

    async def get_subscriptions(self, user_id: str) -> Optional[List[Subscription]]:
        data = await self._get_json(f"{self.SUBSCRIPTIONS_PREFIX}{user_id}")
        if data is None:
            return None
        try:
            return [_subscription_from_dict(item) for item in data]
        except (KeyError, ValueError, TypeError) as e:
            self.logger.warning("Discarding malformed cached subscriptions", user_id=user_id, error=str(e))
            return None

    async def set_subscriptions(self, user_id: str, subscriptions: List[Subscription]) -> bool:
        return await self._set_json(
            f"{self.SUBSCRIPTIONS_PREFIX}{user_id}",
            [_subscription_to_dict(s) for s in subscriptions]
        )

    async def invalidate_roles(self, user_id: str) -> int:
        return await self._delete(f"{self.ROLES_PREFIX}{user_id}")

    async def invalidate_subscriptions(self, user_id: str) -> int:
        return await self._delete(f"{self.SUBSCRIPTIONS_PREFIX}{user_id}")

    async def invalidate_user(self, user_id: str) -> int:
        """Invalidate all cached provider data for a user."""
        count = await self._delete(
            f"{self.ROLES_PREFIX}{user_id}",
            f"{self.SUBSCRIPTIONS_PREFIX}{user_id}"
        )
        self.logger.info("Invalidated user cache", user_id=user_id, count=count)
        return count

    async def _delete(self, *keys: str) -> int:
        try:
            return int(await self.redis.delete(*keys))
        except Exception as e:
            self.logger.error("Error invalidating cache", keys=list(keys), error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()
            return {
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "keyspace_hits": info.get("keyspace_hits"),
                "keyspace_misses": info.get("keyspace_misses"),
                "ttl_seconds": self.ttl_seconds,
                "hit_rate": self._calculate_hit_rate(info)
            }
        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses
        if total == 0:
            return 0.0
        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False


def _subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    return {
        "subscription_id": subscription.subscription_id,
        "user_id": subscription.user_id,
        "subject_id": subscription.subject_id,
        "tier": subscription.tier.value,
        "status": subscription.status.value,
        "started_at": subscription.started_at.isoformat(),
        "expires_at": subscription.expires_at.isoformat() if subscription.expires_at else None,
    }


def _subscription_from_dict(data: Dict[str, Any]) -> Subscription:
    return Subscription(
        subscription_id=data["subscription_id"],
        user_id=data["user_id"],
        subject_id=data["subject_id"],
        tier=data["tier"],
        status=data["status"],
        started_at=datetime.fromisoformat(data["started_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
    )
