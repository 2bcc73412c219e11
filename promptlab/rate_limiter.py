"""Sliding window rate limiter backed by Redis sorted sets.

Each identifier owns a sorted set of request timestamps (scores in seconds).
Trimming, inserting, counting and refreshing the key's expiry run in a single
MULTI/EXEC pipeline. A denied request removes its own entry afterwards, so two
requests racing at the boundary can both see themselves admitted; the limiter
tolerates that one-request overshoot.

If Redis cannot be reached the limiter fails open: the request is admitted and
a warning is logged. Throttling is protective, not a correctness guarantee.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

from redis.exceptions import RedisError

from . import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int
    key_prefix: str = "ratelimit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    total: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.total),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


class RateLimiter:
    def __init__(self, redis_client, clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._clock = clock

    @staticmethod
    def _key(identifier: str, config: RateLimitConfig) -> str:
        return f"{config.key_prefix}:{identifier}"

    async def admit(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        key = self._key(identifier, config)
        member = f"{now}-{uuid.uuid4().hex[:12]}"

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - config.window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.expire(key, config.window_seconds * 2)
            results = await pipe.execute()

            count = int(results[2])
            oldest = results[3]
            allowed = count <= config.max_requests
            if not allowed:
                await self._redis.zrem(key, member)
        except (RedisError, OSError) as exc:
            metrics.rate_limiter_fail_open_total.inc()
            logger.warning("rate limit store unavailable, admitting %s: %s", identifier, exc)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                reset_at=_to_datetime(now + config.window_seconds),
                total=config.max_requests,
            )

        window_start = oldest[0][1] if oldest else now
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count),
            reset_at=_to_datetime(window_start + config.window_seconds),
            total=config.max_requests,
        )

    async def reset(self, identifier: str, config: RateLimitConfig):
        await self._redis.delete(self._key(identifier, config))


def _to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
