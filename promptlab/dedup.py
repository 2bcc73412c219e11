import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from . import metrics
from .cache import ResultCache
from .errors import InternalError
from .schemas import PENDING_STATUSES, Job, JobStatus, ProviderName
from .store import JobStore, StoreError

logger = logging.getLogger(__name__)


def compute_input_hash(
    template_id: str, provider: Union[ProviderName, str], input_text: str, template_version: int
) -> str:
    """SHA-256 over the compact JSON of the fields that define equivalent work.

    Key order and separators are fixed so the digest is reproducible across
    processes and implementations.
    """
    provider_value = provider.value if isinstance(provider, ProviderName) else str(provider)
    canonical = json.dumps(
        {
            "templateId": template_id,
            "provider": provider_value,
            "input": input_text,
            "version": template_version,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Submission:
    job_id: str
    cached: bool
    created: bool = False


class Deduplicator:
    def __init__(self, store: JobStore, cache: ResultCache):
        self._store = store
        self._cache = cache

    async def submit(
        self,
        template_id: str,
        provider: ProviderName,
        input_text: str,
        template_version: int,
        caller_id: Optional[str] = None,
    ) -> Submission:
        input_hash = compute_input_hash(template_id, provider, input_text, template_version)

        cached_id = await self._cache.get(input_hash)
        if cached_id:
            metrics.jobs_deduplicated_total.labels(source="cache").inc()
            return Submission(job_id=cached_id, cached=True)

        try:
            completed = await self._store.find_by_hash(input_hash, [JobStatus.completed])
            if completed is not None:
                await self._cache.set(input_hash, completed.id)
                metrics.jobs_deduplicated_total.labels(source="completed").inc()
                return Submission(job_id=completed.id, cached=True)

            pending = await self._store.find_by_hash(input_hash, PENDING_STATUSES)
            if pending is not None:
                metrics.jobs_deduplicated_total.labels(source="pending").inc()
                return Submission(job_id=pending.id, cached=False)

            job = await self._store.create(
                Job(
                    template_id=template_id,
                    template_version=template_version,
                    provider=provider,
                    input=input_text,
                    input_hash=input_hash,
                    owner_id=caller_id,
                )
            )
        except StoreError as exc:
            logger.error("job submission for template %s failed: %s", template_id, exc)
            raise InternalError("Job store unavailable, please retry", retryable=True) from exc

        metrics.jobs_created_total.labels(provider=job.provider.value).inc()
        logger.info("created job %s for template %s (hash %s)", job.id, template_id, input_hash[:12])
        return Submission(job_id=job.id, cached=False, created=True)
