"""
Redis manager for handling Redis connections and related utilities.

This module provides the RedisManager class, which lazily creates a single
asynchronous Redis client for the application (OTP tickets, rate limiting).

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
"""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.logger = logger
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        The client connects on first command; connection errors surface from
        the command that triggered them.
        """
        if self._redis is None:
            self.logger.info("Creating async Redis client for %s", self.redis_url)
            self._redis = redis_async.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def health_check(self) -> bool:
        """Ping Redis; returns False instead of raising when it is unreachable."""
        try:
            client = await self.get_redis()
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            self.logger.error("Redis health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


redis_manager = RedisManager()
