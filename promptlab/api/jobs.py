from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from .. import metrics
from ..auth import caller_identity, rate_limit_identifier
from ..errors import NotFoundError, RateLimitedError
from ..schemas import GenerateRequest, GenerateResponse, Job, JobListResponse
from ..services import Services

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def enforce_rate_limit(
    request: Request,
    response: Response,
    caller_id: Optional[str] = Depends(caller_identity),
    services: Services = Depends(get_services),
):
    identifier = rate_limit_identifier(request, caller_id)
    result = await services.rate_limiter.admit(identifier, services.rate_limit)
    headers = result.headers()
    response.headers.update(headers)
    if not result.allowed:
        metrics.rate_limited_total.inc()
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            details={"limit": result.total, "resetAt": result.reset_at.isoformat()},
            headers=headers,
        )


@router.post(
    "/generate",
    response_model=GenerateResponse,
    dependencies=[Depends(enforce_rate_limit)],
)
async def generate(
    body: GenerateRequest,
    caller_id: Optional[str] = Depends(caller_identity),
    services: Services = Depends(get_services),
):
    template = await services.templates.get(body.template_id)
    if template is None:
        raise NotFoundError("Template not found")

    submission = await services.deduplicator.submit(
        template_id=template.id,
        provider=body.provider,
        input_text=body.input,
        template_version=template.version,
        caller_id=caller_id,
    )
    metrics.jobs_submitted_total.inc()
    return GenerateResponse(job_id=submission.job_id, cached=submission.cached)


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    job = await services.jobs.get(job_id)
    if job is None:
        raise NotFoundError("Job not found")
    return job


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    caller_id: Optional[str] = Depends(caller_identity),
    services: Services = Depends(get_services),
):
    jobs = await services.jobs.list_recent(limit, owner_id=caller_id)
    return JobListResponse(jobs=jobs)
