"""Redis connection service.

The pipeline store and work queue use Redis when REDIS_ENABLED=true and the
server answers a ping at startup. Otherwise the engine runs on the in-memory
store (single-process deployments and tests).
"""

from typing import Optional

import redis.asyncio as redis

from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger

logger = get_logger(__name__)


class CacheService:
    """Owns the optional async Redis client."""

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = client
        self.use_redis = client is not None or settings.use_redis

    async def startup(self) -> None:
        """Initialize the Redis connection, falling back to memory on failure."""
        if self.redis is not None:
            return

        if not self.use_redis:
            logger.info("Using in-memory pipeline store",
                       redis_enabled=self.settings.redis_enabled)
            return

        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis connection initialized", url=self.settings.redis_url)
        except (redis.RedisError, OSError) as e:
            logger.warning("Redis connection failed, falling back to memory", error=str(e))
            self.use_redis = False
            self.redis = None

    async def shutdown(self) -> None:
        """Close the Redis connection."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis connection closed")
            self.redis = None

    def is_redis_available(self) -> bool:
        """Check if Redis is connected."""
        return self.use_redis and self.redis is not None
