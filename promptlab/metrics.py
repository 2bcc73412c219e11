from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_submitted_total = Counter("jobs_submitted_total", "Generation requests accepted by the API")
jobs_created_total = Counter("jobs_created_total", "New jobs written to the store", ["provider"])
jobs_deduplicated_total = Counter(
    "jobs_deduplicated_total", "Submissions answered by an existing job", ["source"]
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter")
rate_limiter_fail_open_total = Counter(
    "rate_limiter_fail_open_total", "Requests admitted because the rate-limit store was unavailable"
)
cache_errors_total = Counter("cache_errors_total", "Result cache operations that failed", ["operation"])
error_count = Counter("error_count", "Total errors encountered by the API")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Worker / execution metrics
jobs_executed_total = Counter("jobs_executed_total", "Job attempts executed by workers", ["outcome"])
execution_latency_seconds = Histogram("execution_latency_seconds", "Generation call latency seconds")
generation_cost_usd_total = Counter(
    "generation_cost_usd_total", "Estimated spend on successful generations", ["provider"]
)


def metrics_response():
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
