import logging
from typing import Optional

from redis.exceptions import RedisError

from . import metrics

logger = logging.getLogger(__name__)


class ResultCache:
    """Maps a content hash to the id of the job that produced its result.

    Purely an accelerator over the job store: every failure is logged and
    reported as a miss (or a skipped write), never raised.
    """

    def __init__(self, redis_client, ttl_seconds: int = 3600, key_prefix: str = "cache:job-hash"):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, content_hash: str) -> str:
        return f"{self.key_prefix}:{content_hash}"

    async def get(self, content_hash: str) -> Optional[str]:
        try:
            return await self._redis.get(self._key(content_hash))
        except (RedisError, OSError) as exc:
            metrics.cache_errors_total.labels(operation="get").inc()
            logger.warning("cache get failed for %s: %s", content_hash, exc)
            return None

    async def set(self, content_hash: str, job_id: str, ttl_seconds: Optional[int] = None) -> bool:
        try:
            await self._redis.set(self._key(content_hash), job_id, ex=ttl_seconds or self.ttl_seconds)
            return True
        except (RedisError, OSError) as exc:
            metrics.cache_errors_total.labels(operation="set").inc()
            logger.warning("cache set failed for %s: %s", content_hash, exc)
            return False

    async def delete(self, content_hash: str) -> bool:
        try:
            await self._redis.delete(self._key(content_hash))
            return True
        except (RedisError, OSError) as exc:
            metrics.cache_errors_total.labels(operation="delete").inc()
            logger.warning("cache delete failed for %s: %s", content_hash, exc)
            return False
