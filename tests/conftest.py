import os
from datetime import datetime, timedelta
from typing import List, Optional, Union

import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from promptlab.config import Settings
from promptlab.dedup import compute_input_hash
from promptlab.main import create_app
from promptlab.providers.base import GenerationProvider, GenerationRequest, GenerationResult
from promptlab.providers.pricing import OPENAI_PRICES
from promptlab.providers.registry import ProviderRegistry
from promptlab.redis_helper import AsyncInMemoryRedis
from promptlab.schemas import Job, ProviderName, Template, utcnow
from promptlab.services import build_services


class ScriptedProvider(GenerationProvider):
    """Returns (or raises) the queued outcomes in order, then a default text."""

    def __init__(self, name: str = "openai", outcomes: Optional[List[Union[str, Exception]]] = None):
        super().__init__(OPENAI_PRICES, default_model="gpt-4o-mini")
        self.name = name
        self.outcomes = list(outcomes or [])
        self.requests: List[GenerationRequest] = []

    async def _generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else "generated text"
        if isinstance(outcome, Exception):
            raise outcome
        return GenerationResult(
            text=outcome,
            model=self.default_model,
            usage=self.usage(self.default_model, 1000, 500),
            finish_reason="stop",
        )


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        testing=True,
        api_keys="dev-key:alice,other-key:bob",
        rate_limit_max_requests=5,
        rate_limit_window_seconds=60,
        worker_poll_seconds=0.05,
        job_max_attempts=3,
        retry_backoff_ms="1000,3000,10000",
    )


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
def services(settings, redis_client):
    return build_services(settings, redis_client)


@pytest.fixture
async def template(services):
    return await services.templates.put(
        Template(
            name="Blog Post Writer",
            system_prompt="You are a professional blog writer.",
            user_prompt="Write a blog post about: {{input}}",
            version=2,
        )
    )


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def providers(provider):
    return ProviderRegistry([provider])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def make_job(services, template):
    async def _make(input_text: str = "hello", provider: ProviderName = ProviderName.openai, **fields) -> Job:
        job = Job(
            template_id=template.id,
            template_version=template.version,
            provider=provider,
            input=input_text,
            input_hash=compute_input_hash(template.id, provider, input_text, template.version),
            **fields,
        )
        return await services.jobs.create(job)

    return _make


@pytest.fixture
async def client(services):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
