"""
Rate Limiter Service using Redis sorted sets (sliding window).

Guards the public subscription endpoint, which sends an email per call.
Each client (by IP) gets RATE_LIMIT_REQUESTS calls per
RATE_LIMIT_WINDOW_SECONDS. If Redis is unreachable requests are let
through: sign-ups should not fail because the limiter is down.
"""
import time
import uuid

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from app.config import settings


logger = structlog.get_logger()


class RateLimiter:
    """Per-client rate limiter using Redis sorted sets."""

    def __init__(self, redis_url: str = None, limit: int = None, window: int = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = None
        self.limit = limit or settings.RATE_LIMIT_REQUESTS
        self.window = window or settings.RATE_LIMIT_WINDOW_SECONDS

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def is_allowed(self, client_key: str) -> tuple[bool, int]:
        """
        Record a call for the client and decide whether it may proceed.

        The call is added and counted in one MULTI block, so concurrent
        calls cannot all slip under the limit. A rejected call is removed
        again and does not extend the client's window.

        Returns:
            (allowed: bool, retry_after: int seconds)
        """
        key = f"ratelimit:subscriptions:{client_key}"
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"

        try:
            r = await self.get_redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now - self.window)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.expire(key, self.window)
                _, _, request_count, _ = await pipe.execute()

            if request_count <= self.limit:
                return True, 0

            await r.zrem(key, member)
            oldest = await r.zrange(key, 0, 0, withscores=True)
            if oldest:
                retry_after = int(self.window - (now - oldest[0][1]))
            else:
                retry_after = self.window
            return False, max(retry_after, 1)

        except (RedisError, OSError) as e:
            logger.warning("rate_limiter_unavailable", error=str(e))
            return True, 0


# Singleton instance
rate_limiter = RateLimiter()
