"""
Prometheus metrics for the scheduler, aggregator, credit ledger and Telegram client.
Served on /metrics.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total number of jobs accepted by the scheduler",
    ["lane"],
)

jobs_succeeded_total = Counter(
    "jobs_succeeded_total",
    "Total number of successful jobs",
)

jobs_failed_total = Counter(
    "jobs_failed_total",
    "Total number of failed or rejected jobs",
    ["failure"],
)

credit_operations_total = Counter(
    "credit_operations_total",
    "Total credit ledger operations",
    ["result"],  # consumed, unlimited, insufficient, reset
)

batches_finalized_total = Counter(
    "batches_finalized_total",
    "Total finalized file collections",
    ["domain", "outcome"],  # outcome: grouped, separate, timeout
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

# Histograms
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Job processing duration",
    ["heavy"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

heavy_gate_wait_seconds = Histogram(
    "heavy_gate_wait_seconds",
    "Time a heavy job waited for the heavy slot",
    buckets=[0.1, 1, 5, 30, 60, 300, 600],
)

telegram_request_duration_seconds = Histogram(
    "telegram_request_duration_seconds",
    "Telegram API request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)

# Gauges
active_jobs = Gauge(
    "active_jobs",
    "Currently running jobs",
)

inflight_jobs = Gauge(
    "inflight_jobs",
    "Jobs registered in the scheduler (queued or running)",
)

queue_length = Gauge(
    "queue_length",
    "Current queue length",
    ["lane"],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
