import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

MAX_INPUT_LENGTH = 10000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


PENDING_STATUSES = (JobStatus.queued, JobStatus.running)


class ProviderName(str, Enum):
    openai = "openai"
    anthropic = "anthropic"


class InvalidTransition(Exception):
    pass


# target status -> statuses it may be entered from
ALLOWED_SOURCES = {
    JobStatus.running: frozenset({JobStatus.queued, JobStatus.running}),
    JobStatus.queued: frozenset({JobStatus.running}),
    JobStatus.completed: frozenset({JobStatus.running}),
    JobStatus.failed: frozenset({JobStatus.running}),
}


def check_transition(job_id: str, current: JobStatus, target: JobStatus):
    if current.is_terminal:
        raise InvalidTransition(f"job {job_id} is {current.value} and can no longer change")
    if current not in ALLOWED_SOURCES[target]:
        raise InvalidTransition(f"job {job_id} cannot move from {current.value} to {target.value}")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Usage(CamelModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost_usd: float = Field(alias="estimatedCostUSD")


class Template(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    system_prompt: str
    user_prompt: str
    variables_schema: Dict[str, str] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def render(self, user_input: str) -> str:
        return self.user_prompt.replace("{{input}}", user_input)


class Job(CamelModel):
    """A single generation request and everything the worker learned running it.

    Instances are never mutated in place: each state transition returns a new,
    re-validated copy so a record that reaches the store always satisfies the
    status/output/error rules below.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    template_version: int = 1
    provider: ProviderName
    input: str = Field(min_length=1, max_length=MAX_INPUT_LENGTH)
    input_hash: str
    owner_id: Optional[str] = None

    status: JobStatus = JobStatus.queued
    attempts: int = Field(default=0, ge=0)
    output: Optional[str] = None
    error: Optional[str] = None

    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    estimated_cost_usd: Optional[float] = Field(default=None, alias="estimatedCostUSD")

    available_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_status_fields(self) -> "Job":
        if (self.output is not None) != (self.status == JobStatus.completed):
            raise ValueError("output must be set exactly when the job is completed")
        if self.status == JobStatus.failed and self.error is None:
            raise ValueError("a failed job must carry an error")
        if self.status.is_terminal and self.finished_at is None:
            raise ValueError("a terminal job must carry finished_at")
        return self

    def is_eligible(self, now: datetime) -> bool:
        return self.status == JobStatus.queued and (self.available_at is None or self.available_at <= now)

    def _transition(self, **changes: Any) -> "Job":
        check_transition(self.id, self.status, changes["status"])
        data = self.model_dump()
        data.update(changes)
        return Job.model_validate(data)

    def start(self, now: datetime) -> "Job":
        return self._transition(
            status=JobStatus.running,
            attempts=self.attempts + 1,
            started_at=self.started_at or now,
            updated_at=now,
        )

    def complete(self, output: str, model: str, usage: Usage, now: datetime) -> "Job":
        return self._transition(
            status=JobStatus.completed,
            output=output,
            error=None,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost_usd=usage.estimated_cost_usd,
            available_at=None,
            finished_at=now,
            updated_at=now,
        )

    def requeue(self, error: str, delay: timedelta, now: datetime) -> "Job":
        return self._transition(
            status=JobStatus.queued,
            error=error,
            available_at=now + delay,
            updated_at=now,
        )

    def fail(self, error: str, now: datetime) -> "Job":
        return self._transition(
            status=JobStatus.failed,
            error=error,
            available_at=None,
            finished_at=now,
            updated_at=now,
        )


class GenerateRequest(CamelModel):
    template_id: str = Field(min_length=1)
    provider: ProviderName = ProviderName.openai
    input: str = Field(min_length=1, max_length=MAX_INPUT_LENGTH)


class GenerateResponse(CamelModel):
    job_id: str
    cached: bool = False


class JobListResponse(CamelModel):
    jobs: List[Job]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: ErrorBody
