import asyncio
import re

import pytest

from promptlab.providers.base import ProviderError
from promptlab.scheduler import RetryPolicy
from promptlab.services import build_scheduler


def get_counter(text: str, name: str, labels: str = "") -> float:
    m = re.search(rf'^{name}{re.escape(labels)}\s+(\d+\.?\d*(?:e[+-]?\d+)?)', text, re.M)
    return float(m.group(1)) if m else 0.0


@pytest.mark.asyncio
async def test_submitted_job_completes_end_to_end(client, services, providers, provider, template):
    """Runs the worker against the API's store and polls the job until it completes."""
    res0 = await client.get("/metrics")
    metrics_before = res0.text

    from scripts.worker import run_worker

    scheduler = build_scheduler(services, providers)
    worker_task = asyncio.create_task(run_worker(services.settings, services, providers, scheduler))

    try:
        submit = await client.post("/generate", json={"templateId": template.id, "input": "autumn"})
        assert submit.status_code == 200
        job_id = submit.json()["jobId"]

        completed = None
        for _ in range(40):
            await asyncio.sleep(0.05)
            r = await client.get(f"/jobs/{job_id}")
            if r.json()["status"] == "completed":
                completed = r.json()
                break
        assert completed is not None, "Job did not reach 'completed' status in time"

        assert completed["output"] == "generated text"
        assert completed["attempts"] == 1
        assert completed["totalTokens"] == 1500
        assert completed["estimatedCostUSD"] > 0
        assert provider.requests[0].user_prompt == "Write a blog post about: autumn"

        again = await client.post("/generate", json={"templateId": template.id, "input": "autumn"})
        assert again.json() == {"jobId": job_id, "cached": True}

        metrics_after = (await client.get("/metrics")).text
        label = '{outcome="completed"}'
        before = get_counter(metrics_before, "jobs_executed_total", label)
        after = get_counter(metrics_after, "jobs_executed_total", label)
        assert after >= before + 1
    finally:
        scheduler.stop()
        await asyncio.wait_for(worker_task, timeout=2)


@pytest.mark.asyncio
async def test_failing_job_records_retry_history(client, services, providers, provider, template):
    provider.outcomes = [ProviderError("overloaded", "openai", is_retryable=True, upstream_status=529)] * 3
    scheduler = build_scheduler(services, providers)
    scheduler.policy = RetryPolicy(max_attempts=3, backoff_ms=(0,))

    job_id = (await client.post("/generate", json={"templateId": template.id, "input": "x"})).json()["jobId"]
    for _ in range(3):
        await scheduler.run_once()

    job = (await client.get(f"/jobs/{job_id}")).json()
    assert job["status"] == "failed"
    assert job["attempts"] == 3
    assert job["error"] == "overloaded"
    assert job["output"] is None
