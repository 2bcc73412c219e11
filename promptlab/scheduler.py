"""Worker loop that drains queued jobs.

Job lifecycle::

    queued --claim--> running --ok--------------------> completed
                        |----retryable, budget left---> queued (after backoff)
                        `----otherwise----------------> failed

The backoff delay is stored on the job as ``available_at``; the loop never
sleeps on behalf of a single job. A running job whose claim lease lapses
(its worker died or its store writes failed) goes through the same retry
decision on the next poll of any worker.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from . import metrics
from .cache import ResultCache
from .providers.base import GenerationRequest, ProviderError
from .providers.registry import ProviderRegistry
from .schemas import InvalidTransition, Job, utcnow
from .store import JobStore, StoreError, TemplateStore

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_MS = (1000, 3000, 10000)


def compute_backoff_ms(attempts: int, schedule: Sequence[int] = DEFAULT_BACKOFF_MS) -> int:
    """Delay before the next attempt, saturating at the last entry of ``schedule``."""
    index = min(max(attempts - 1, 0), len(schedule) - 1)
    return schedule[index]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_ms: Sequence[int] = DEFAULT_BACKOFF_MS

    def should_retry(self, attempts: int, retryable: bool) -> bool:
        return retryable and attempts < self.max_attempts

    def delay(self, attempts: int) -> timedelta:
        return timedelta(milliseconds=compute_backoff_ms(attempts, self.backoff_ms))


class JobScheduler:
    def __init__(
        self,
        store: JobStore,
        templates: TemplateStore,
        providers: ProviderRegistry,
        cache: Optional[ResultCache] = None,
        policy: RetryPolicy = RetryPolicy(),
        batch_size: int = 10,
        concurrency: int = 1,
        poll_interval: float = 5.0,
        generation_timeout: float = 30.0,
        claim_ttl_seconds: int = 300,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.templates = templates
        self.providers = providers
        self.cache = cache
        self.policy = policy
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.generation_timeout = generation_timeout
        self.claim_ttl_seconds = claim_ttl_seconds
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.clock = clock
        self._stop = asyncio.Event()

    def stop(self):
        if not self._stop.is_set():
            logger.info("%s: stop requested, finishing in-flight jobs", self.worker_id)
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self):
        logger.info(
            "%s: polling every %.1fs (batch=%d, concurrency=%d)",
            self.worker_id, self.poll_interval, self.batch_size, self.concurrency,
        )
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s: poll cycle failed", self.worker_id)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("%s: stopped", self.worker_id)

    async def run_once(self) -> int:
        """Process one batch of eligible jobs; returns how many were picked up."""
        await self.recover_expired()
        jobs = await self.store.list_queued(self.batch_size, self.clock())
        if not jobs:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(job: Job):
            async with semaphore:
                await self.process_job(job)

        # tasks are created in creation order, so the semaphore hands out slots FIFO
        await asyncio.gather(*(guarded(job) for job in jobs))
        return len(jobs)

    async def recover_expired(self) -> int:
        """Put running jobs whose claim lease lapsed back through the retry policy.

        The lapsed attempt counts against the budget, like a timed-out call.
        """
        expired = await self.store.list_expired(self.batch_size, self.clock())
        for job in expired:
            logger.warning("%s: lease on job %s expired during attempt %d", self.worker_id, job.id, job.attempts)
            try:
                await self._record_failure(job, "Worker lease expired before the attempt finished", retryable=True)
            except (StoreError, InvalidTransition) as exc:
                logger.warning("%s: could not recover job %s: %s", self.worker_id, job.id, exc)
        return len(expired)

    async def process_job(self, job: Job) -> Optional[Job]:
        """Claim and execute one attempt. Never raises; returns the stored result."""
        try:
            running = await self.store.claim(job, self.clock(), self.worker_id, self.claim_ttl_seconds)
        except Exception:
            logger.exception("%s: could not claim job %s", self.worker_id, job.id)
            return None
        if running is None:
            logger.debug("%s: job %s taken by another worker", self.worker_id, job.id)
            return None

        logger.info("processing job %s (attempt %d/%d)", running.id, running.attempts, self.policy.max_attempts)
        try:
            return await self._execute(running)
        except Exception:
            logger.exception("%s: job %s could not be recorded", self.worker_id, running.id)
            return None

    async def _execute(self, job: Job) -> Job:
        try:
            template = await self.templates.get(job.template_id)
        except StoreError as exc:
            logger.warning("job %s: template lookup failed: %s", job.id, exc)
            return await self._record_failure(job, "Template store unavailable", retryable=True)
        if template is None:
            return await self._record_failure(job, "Template not found", retryable=False)

        request = GenerationRequest(
            system_prompt=template.system_prompt,
            user_prompt=template.render(job.input),
            timeout=self.generation_timeout,
        )

        start = time.monotonic()
        try:
            provider = self.providers.get(job.provider.value)
            result = await provider.generate(request)
        except ProviderError as exc:
            return await self._record_failure(job, exc.message, exc.is_retryable)
        except Exception as exc:
            logger.exception("unexpected error generating job %s", job.id)
            return await self._record_failure(job, str(exc) or "Unknown error", retryable=False)
        finally:
            metrics.execution_latency_seconds.observe(time.monotonic() - start)

        completed = job.complete(result.text, result.model, result.usage, self.clock())
        completed = await self._save(job, completed)
        metrics.jobs_executed_total.labels(outcome="completed").inc()
        metrics.generation_cost_usd_total.labels(provider=job.provider.value).inc(result.usage.estimated_cost_usd)
        if self.cache is not None:
            await self.cache.set(completed.input_hash, completed.id)
        logger.info(
            "job %s completed: %d tokens, $%.6f", completed.id, result.usage.total_tokens,
            result.usage.estimated_cost_usd,
        )
        return completed

    async def _record_failure(self, job: Job, message: str, retryable: bool) -> Job:
        now = self.clock()
        if self.policy.should_retry(job.attempts, retryable):
            delay = self.policy.delay(job.attempts)
            updated = await self._save(job, job.requeue(message, delay, now))
            metrics.jobs_executed_total.labels(outcome="retry").inc()
            logger.warning(
                "job %s attempt %d failed (%s), retrying in %.1fs",
                job.id, job.attempts, message, delay.total_seconds(),
            )
            return updated

        updated = await self._save(job, job.fail(message, now))
        metrics.jobs_executed_total.labels(outcome="failed").inc()
        logger.error(
            "job %s failed after %d attempt(s): %s", job.id, job.attempts, message
        )
        return updated

    async def _save(self, before: Job, after: Job) -> Job:
        changes = {
            field: getattr(after, field)
            for field in Job.model_fields
            if getattr(after, field) != getattr(before, field)
        }
        return await self.store.update(after.id, **changes)
