"""
Security manager for IP rate limiting and abuse prevention using Redis.
Provides per-action rate limiting, IP blacklisting, and abuse tracking for ceremony starts.
"""

from typing import Optional

from redis.exceptions import RedisError

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.managers.redis_manager import redis_manager
from passkey_readiness.routes.auth.services.errors import RateLimitedError

RATE_LIMIT_SCRIPT = """
local rate_key = KEYS[1]
local abuse_key = KEYS[2]
local blacklist_key = KEYS[3]
local requests_allowed = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local blacklist_threshold = tonumber(ARGV[3])
local blacklist_duration = tonumber(ARGV[4])
if redis.call('EXISTS', blacklist_key) == 1 then
    return {0, 0, 'BLACKLISTED'}
end
local count = redis.call('INCR', rate_key)
if count == 1 then
    redis.call('EXPIRE', rate_key, period)
end
if count > requests_allowed then
    local abuse_count = redis.call('INCR', abuse_key)
    if abuse_count == 1 then
        redis.call('EXPIRE', abuse_key, blacklist_duration)
    end
    if abuse_count >= blacklist_threshold then
        redis.call('SET', blacklist_key, 1, 'EX', blacklist_duration)
        return {count, abuse_count, 'BLACKLISTED'}
    end
    return {count, abuse_count, 'RATE_LIMITED'}
end
return {count, 0, 'OK'}
"""

TRUSTED_IPS = ("127.0.0.1", "::1", "0.0.0.0")


class SecurityManager:
    """Manages rate limiting and blacklisting for ceremony actions using Redis."""

    def __init__(self, redis=None, enabled: Optional[bool] = None) -> None:
        self._redis = redis
        self.enabled = settings.RATE_LIMIT_ENABLED if enabled is None else enabled
        self.rate_limit_requests: int = settings.RATE_LIMIT_REQUESTS
        self.rate_limit_period: int = settings.RATE_LIMIT_PERIOD_SECONDS
        self.blacklist_threshold: int = settings.BLACKLIST_THRESHOLD
        self.blacklist_duration: int = settings.BLACKLIST_DURATION
        self.env_prefix: str = settings.ENV_PREFIX
        self.logger = get_logger(prefix="[SecurityManager]")

    async def get_redis(self):
        if self._redis is None:
            return await redis_manager.get_redis()
        return self._redis

    def is_trusted_ip(self, ip: Optional[str]) -> bool:
        """Return True if the IP is localhost."""
        return ip in TRUSTED_IPS

    async def check_rate_limit(
        self,
        action: str,
        client_ip: Optional[str],
        rate_limit_requests: Optional[int] = None,
        rate_limit_period: Optional[int] = None,
    ) -> None:
        """
        Check rate limit for a given action and IP.

        Args:
            action: The ceremony action being limited (registration_start, otp_send, ...).
            client_ip: Source address of the request.
            rate_limit_requests: Custom requests allowed per period.
            rate_limit_period: Custom period in seconds.

        Raises:
            RateLimitedError: error code RATE_LIMITED, or BLACKLISTED once abuse crosses the threshold.
        """
        if not self.enabled or not client_ip or self.is_trusted_ip(client_ip):
            return

        redis_conn = await self.get_redis()
        requests_allowed = rate_limit_requests if rate_limit_requests is not None else self.rate_limit_requests
        period = rate_limit_period if rate_limit_period is not None else self.rate_limit_period
        try:
            count, abuse_count, status_flag = await redis_conn.eval(
                RATE_LIMIT_SCRIPT,
                3,
                f"{self.env_prefix}:ratelimit:{action}:{client_ip}",
                f"{self.env_prefix}:abuse:{client_ip}",
                f"{self.env_prefix}:blacklist:{client_ip}",
                requests_allowed,
                period,
                self.blacklist_threshold,
                self.blacklist_duration,
            )
        except RedisError as e:
            # Fail open while Redis is unavailable.
            self.logger.error("Rate limit check failed for %s (action: %s): %s", client_ip, action, e)
            return

        if isinstance(status_flag, bytes):
            status_flag = status_flag.decode()
        if status_flag == "BLACKLISTED":
            self.logger.error("Blocked blacklisted IP %s (action: %s, abuse count: %s)", client_ip, action, abuse_count)
            raise RateLimitedError(
                "Client temporarily blacklisted", error_code="BLACKLISTED", retry_after=self.blacklist_duration
            )
        if status_flag == "RATE_LIMITED":
            self.logger.warning(
                "Rate limit exceeded for IP %s (action: %s). Count: %s, abuse count: %s",
                client_ip,
                action,
                count,
                abuse_count,
            )
            raise RateLimitedError(retry_after=period)


security_manager = SecurityManager()
