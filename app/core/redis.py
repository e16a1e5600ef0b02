import json
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from app.core.config import settings

logger = structlog.get_logger(__name__)

SERVICE_TYPE_KEY_PREFIX = "service_type_rules"


class RedisClient:
    """Redis client used as a read-through cache for service type rules.

    Every operation logs and swallows connection errors so that a cache outage
    degrades to a cache miss.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url
        self.redis_pool = None

    async def init_redis(self):
        """Initialize Redis connection pool."""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.url,
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
                socket_keepalive_options={},
            )

            # Test connection
            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.ping()
                logger.info("Redis connection established")

        except Exception as e:
            self.redis_pool = None
            logger.error("Failed to connect to Redis", exc_info=e)
            raise

    async def get_redis(self) -> redis.Redis:
        """Get Redis client instance."""
        if not self.redis_pool:
            await self.init_redis()
        return redis.Redis(connection_pool=self.redis_pool)

    async def close(self):
        if self.redis_pool:
            await self.redis_pool.disconnect()
            self.redis_pool = None

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Set a key-value pair in Redis."""
        try:
            client = await self.get_redis()
            serialized_value = json.dumps(value) if not isinstance(value, str) else value

            if expire:
                return bool(await client.setex(key, expire, serialized_value))
            return bool(await client.set(key, serialized_value))

        except Exception as e:
            logger.error("Redis SET error", key=key, exc_info=e)
            return False

    async def get(self, key: str) -> Optional[Any]:
        """Get a value from Redis."""
        try:
            client = await self.get_redis()
            value = await client.get(key)

            if value is None:
                return None

            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except Exception as e:
            logger.error("Redis GET error", key=key, exc_info=e)
            return None

    async def delete(self, key: str) -> bool:
        """Delete a key from Redis."""
        try:
            client = await self.get_redis()
            result = await client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE error", key=key, exc_info=e)
            return False

    async def cache_service_type(
        self, service_type_id: str, rules: dict[str, Any]
    ) -> bool:
        """Store a service type rule snapshot."""
        key = f"{SERVICE_TYPE_KEY_PREFIX}:{service_type_id}"
        return await self.set(key, rules, expire=settings.RULE_CACHE_TTL_SECONDS)

    async def get_cached_service_type(self, service_type_id: str) -> Optional[dict]:
        """Read a service type rule snapshot, None on miss."""
        key = f"{SERVICE_TYPE_KEY_PREFIX}:{service_type_id}"
        cached = await self.get(key)
        return cached if isinstance(cached, dict) else None

    async def invalidate_service_type(self, service_type_id: str) -> bool:
        """Drop a cached service type after it changed."""
        return await self.delete(f"{SERVICE_TYPE_KEY_PREFIX}:{service_type_id}")


# Global Redis client instance (None when caching is disabled)
redis_client = RedisClient(settings.REDIS_URL) if settings.REDIS_URL else None
