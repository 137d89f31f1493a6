from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
PAYMENT_REQUESTS = Counter(
    "payment_requests_total",
    "Payment requests sent upstream",
    ["endpoint", "result"]  # result=success|failure
)

PAYMENT_ERRORS = Counter(
    "payment_errors_total",
    "Failed payment requests by error kind",
    ["error_kind"]
)

PAYMENT_LATENCY = Histogram(
    "payment_request_seconds",
    "Upstream payment request latency",
    ["endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

BATCH_DURATION = Histogram(
    "dispatch_batch_seconds",
    "Time for every request of a batch to settle",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

RETRIES_QUEUED = Counter(
    "payment_retries_queued_total",
    "Failed payments queued for another attempt"
)

PERMANENT_FAILURES = Counter(
    "payment_permanent_failures_total",
    "Payments that exhausted their retry budget"
)

JOBS_RUNNING = Gauge(
    "disbursement_jobs_running",
    "Number of disbursement jobs currently tracked as running"
)

JOBS_FINISHED = Counter(
    "disbursement_jobs_total",
    "Finished disbursement jobs",
    ["status", "trigger"]  # trigger=scheduled|manual
)

JOBS_SKIPPED = Counter(
    "disbursement_jobs_skipped_total",
    "Scheduled runs skipped because a job was still running"
)

SCHEDULER_ENABLED = Gauge(
    "scheduler_enabled",
    "Whether the recurring timer is armed (1) or not (0)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
