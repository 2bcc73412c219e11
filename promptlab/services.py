import logging
from dataclasses import dataclass
from typing import Optional

from .cache import ResultCache
from .config import Settings
from .dedup import Deduplicator
from .providers.registry import ProviderRegistry
from .rate_limiter import RateLimitConfig, RateLimiter
from .redis_helper import create_redis
from .scheduler import JobScheduler, RetryPolicy
from .store import JobStore, RedisJobStore, RedisTemplateStore, TemplateStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Clients shared by the API and the worker, built once per process."""

    settings: Settings
    redis: object
    jobs: JobStore
    templates: TemplateStore
    cache: ResultCache
    rate_limiter: RateLimiter
    rate_limit: RateLimitConfig
    deduplicator: Deduplicator

    async def close(self):
        await self.redis.aclose()
        logger.info("redis connection closed")


def build_services(settings: Settings, redis_client=None) -> Services:
    redis_client = redis_client if redis_client is not None else create_redis(settings)
    jobs = RedisJobStore(redis_client)
    cache = ResultCache(redis_client, ttl_seconds=settings.result_cache_ttl_seconds)
    return Services(
        settings=settings,
        redis=redis_client,
        jobs=jobs,
        templates=RedisTemplateStore(redis_client),
        cache=cache,
        rate_limiter=RateLimiter(redis_client),
        rate_limit=RateLimitConfig(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            key_prefix=settings.rate_limit_key_prefix,
        ),
        deduplicator=Deduplicator(jobs, cache),
    )


def build_scheduler(services: Services, providers: Optional[ProviderRegistry] = None) -> JobScheduler:
    settings = services.settings
    return JobScheduler(
        store=services.jobs,
        templates=services.templates,
        providers=providers if providers is not None else ProviderRegistry.from_settings(settings),
        cache=services.cache,
        policy=RetryPolicy(max_attempts=settings.job_max_attempts, backoff_ms=tuple(settings.backoff_schedule_ms())),
        batch_size=settings.worker_batch_size,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_seconds,
        generation_timeout=settings.generation_timeout_seconds,
        claim_ttl_seconds=settings.worker_claim_ttl_seconds,
    )
