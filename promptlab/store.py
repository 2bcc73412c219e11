"""Job and template persistence.

``JobStore`` and ``TemplateStore`` are the contracts the pipeline depends on;
the Redis implementations keep each record as JSON in a hash and maintain a few
sorted-set/set indexes next to it:

- ``jobs:created``   every job, scored by creation time
- ``jobs:queued``    queued jobs ready to run, scored by creation time
- ``jobs:delayed``   queued jobs waiting out a backoff, scored by ``available_at``
- ``jobs:running``   running jobs, scored by the claim's lease deadline
- ``jobs:hash:<h>``  ids of non-failed jobs sharing an input hash
- ``jobs:owner:<o>`` a caller's jobs, scored by creation time

Records are validated through the pydantic models on every read and write.
"""

import abc
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from redis.exceptions import RedisError

from .redis_helper import (
    DELAYED_ZSET,
    JOBS_BY_CREATED_ZSET,
    JOBS_HASH,
    QUEUED_ZSET,
    RUNNING_ZSET,
    TEMPLATES_HASH,
    claim_key,
    hash_index_key,
    owner_index_key,
)
from .schemas import Job, JobStatus, Template, check_transition, utcnow

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


class JobNotFound(StoreError):
    pass


@asynccontextmanager
async def _store_errors(operation: str):
    try:
        yield
    except (RedisError, OSError) as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


class JobStore(abc.ABC):
    @abc.abstractmethod
    async def create(self, job: Job) -> Job:
        ...

    @abc.abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abc.abstractmethod
    async def find_by_hash(self, input_hash: str, statuses: Iterable[JobStatus]) -> Optional[Job]:
        """Oldest job with this hash whose status is one of ``statuses``."""

    @abc.abstractmethod
    async def update(self, job_id: str, **fields: Any) -> Job:
        ...

    @abc.abstractmethod
    async def list_recent(self, limit: int, owner_id: Optional[str] = None) -> List[Job]:
        ...

    @abc.abstractmethod
    async def list_queued(self, limit: int, now: datetime) -> List[Job]:
        """Up to ``limit`` queued jobs eligible at ``now``, oldest first."""

    @abc.abstractmethod
    async def list_expired(self, limit: int, now: datetime) -> List[Job]:
        """Running jobs whose claim lease ran out before ``now``."""

    @abc.abstractmethod
    async def claim(self, job: Job, now: datetime, worker_id: str, ttl_seconds: int = 300) -> Optional[Job]:
        """Atomically move a queued job to running.

        Returns the running job, or None when another worker got there first
        or the job is no longer queued. The running job holds a lease of
        ``ttl_seconds``; once it lapses ``list_expired`` reports the job.
        """


class RedisJobStore(JobStore):
    def __init__(self, redis_client):
        self._redis = redis_client

    @staticmethod
    def _score(job: Job) -> float:
        return job.created_at.timestamp()

    async def _load_many(self, job_ids: List[str]) -> List[Job]:
        if not job_ids:
            return []
        raws = await self._redis.hmget(JOBS_HASH, job_ids)
        return [Job.model_validate_json(raw) for raw in raws if raw is not None]

    def _index(self, pipe, job: Job, lease_deadline: Optional[datetime] = None):
        pipe.hset(JOBS_HASH, job.id, job.model_dump_json())
        if job.status == JobStatus.queued and job.available_at is not None:
            pipe.zrem(QUEUED_ZSET, job.id)
            pipe.zadd(DELAYED_ZSET, {job.id: job.available_at.timestamp()})
        elif job.status == JobStatus.queued:
            pipe.zrem(DELAYED_ZSET, job.id)
            pipe.zadd(QUEUED_ZSET, {job.id: self._score(job)})
        else:
            pipe.zrem(QUEUED_ZSET, job.id)
            pipe.zrem(DELAYED_ZSET, job.id)

        if job.status != JobStatus.running:
            pipe.zrem(RUNNING_ZSET, job.id)
        elif lease_deadline is not None:
            pipe.zadd(RUNNING_ZSET, {job.id: lease_deadline.timestamp()})

        # dedup never reuses failed jobs, so they leave the hash index
        if job.status == JobStatus.failed:
            pipe.srem(hash_index_key(job.input_hash), job.id)

    async def create(self, job: Job) -> Job:
        async with _store_errors("create job"):
            score = self._score(job)
            pipe = self._redis.pipeline(transaction=True)
            pipe.zadd(JOBS_BY_CREATED_ZSET, {job.id: score})
            if job.status != JobStatus.failed:
                pipe.sadd(hash_index_key(job.input_hash), job.id)
            if job.owner_id:
                pipe.zadd(owner_index_key(job.owner_id), {job.id: score})
            self._index(pipe, job)
            await pipe.execute()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with _store_errors("get job"):
            raw = await self._redis.hget(JOBS_HASH, job_id)
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def find_by_hash(self, input_hash: str, statuses: Iterable[JobStatus]) -> Optional[Job]:
        wanted = set(statuses)
        async with _store_errors("find job by hash"):
            ids = await self._redis.smembers(hash_index_key(input_hash))
            jobs = await self._load_many(sorted(ids))
        matches = sorted((job for job in jobs if job.status in wanted), key=lambda job: job.created_at)
        return matches[0] if matches else None

    async def update(self, job_id: str, **fields: Any) -> Job:
        current = await self.get(job_id)
        if current is None:
            raise JobNotFound(job_id)
        target = JobStatus(fields.get("status", current.status))
        if current.status.is_terminal or target != current.status:
            check_transition(job_id, current.status, target)
        data = current.model_dump()
        data.update(fields)
        if "updated_at" not in fields:
            data["updated_at"] = utcnow()
        updated = Job.model_validate(data)
        await self._write(updated)
        return updated

    async def _write(self, job: Job, lease_deadline: Optional[datetime] = None):
        async with _store_errors("update job"):
            pipe = self._redis.pipeline(transaction=True)
            self._index(pipe, job, lease_deadline)
            await pipe.execute()

    async def list_recent(self, limit: int, owner_id: Optional[str] = None) -> List[Job]:
        index = owner_index_key(owner_id) if owner_id else JOBS_BY_CREATED_ZSET
        async with _store_errors("list jobs"):
            ids = await self._redis.zrevrange(index, 0, limit - 1)
            return await self._load_many(ids)

    async def list_queued(self, limit: int, now: datetime) -> List[Job]:
        async with _store_errors("list queued jobs"):
            await self._promote_due(limit, now)
            ids = await self._redis.zrange(QUEUED_ZSET, 0, limit - 1)
            jobs = await self._load_many(ids)
            stale = set(ids) - {job.id for job in jobs if job.status == JobStatus.queued}
            if stale:
                await self._redis.zrem(QUEUED_ZSET, *stale)
        return [job for job in jobs if job.is_eligible(now)]

    async def _promote_due(self, limit: int, now: datetime):
        """Move up to ``limit`` jobs whose backoff has elapsed into the ready index."""
        due = await self._redis.zrangebyscore(DELAYED_ZSET, "-inf", now.timestamp(), start=0, num=limit)
        if not due:
            return
        jobs = {job.id: job for job in await self._load_many(due)}
        pipe = self._redis.pipeline(transaction=True)
        for job_id in due:
            pipe.zrem(DELAYED_ZSET, job_id)
            job = jobs.get(job_id)
            if job is not None and job.status == JobStatus.queued:
                pipe.zadd(QUEUED_ZSET, {job_id: self._score(job)})
        await pipe.execute()

    async def list_expired(self, limit: int, now: datetime) -> List[Job]:
        async with _store_errors("list expired leases"):
            ids = await self._redis.zrangebyscore(RUNNING_ZSET, "-inf", now.timestamp(), start=0, num=limit)
            jobs = await self._load_many(ids)
        return [job for job in jobs if job.status == JobStatus.running]

    async def claim(self, job: Job, now: datetime, worker_id: str, ttl_seconds: int = 300) -> Optional[Job]:
        async with _store_errors("claim job"):
            acquired = await self._redis.set(claim_key(job.id, job.attempts), worker_id, ex=ttl_seconds, nx=True)
        if not acquired:
            logger.debug("job %s attempt %d already claimed", job.id, job.attempts + 1)
            return None
        current = await self.get(job.id)
        if current is None or current.status != JobStatus.queued or current.attempts != job.attempts:
            return None
        running = current.start(now)
        await self._write(running, lease_deadline=now + timedelta(seconds=ttl_seconds))
        return running


class TemplateStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, template_id: str) -> Optional[Template]:
        ...

    @abc.abstractmethod
    async def put(self, template: Template) -> Template:
        ...

    @abc.abstractmethod
    async def list(self) -> List[Template]:
        ...


class RedisTemplateStore(TemplateStore):
    def __init__(self, redis_client):
        self._redis = redis_client

    async def get(self, template_id: str) -> Optional[Template]:
        async with _store_errors("get template"):
            raw = await self._redis.hget(TEMPLATES_HASH, template_id)
        if raw is None:
            return None
        return Template.model_validate_json(raw)

    async def put(self, template: Template) -> Template:
        async with _store_errors("put template"):
            await self._redis.hset(TEMPLATES_HASH, template.id, template.model_dump_json())
        return template

    async def list(self) -> List[Template]:
        async with _store_errors("list templates"):
            raw = await self._redis.hgetall(TEMPLATES_HASH)
        templates = [Template.model_validate_json(value) for value in raw.values()]
        return sorted(templates, key=lambda t: t.created_at, reverse=True)
