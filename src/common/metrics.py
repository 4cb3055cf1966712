"""Common Prometheus metrics.

Every process imports this module once; the counters register against the
default ``prometheus_client`` registry.
"""
from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Metric definitions (add new ones here)
# ---------------------------------------------------------------------------

REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Latency of HTTP requests in seconds",
    ["service", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

INTERVALS_SUBMITTED_TOTAL = Counter(
    "reading_intervals_submitted_total",
    "Reading interval submissions by outcome",
    ["result"],  # created|duplicate|rejected
)

TOP_BOOKS_CACHE_TOTAL = Counter(
    "top_books_cache_total",
    "Ranking cache lookups by outcome",
    ["outcome"],  # hit|miss|error
)

RECOMPUTE_JOBS_TOTAL = Counter(
    "recompute_jobs_total",
    "Read-page recompute job attempts by status",
    ["status"],  # success|retry|failed
)

RECOMPUTE_JOB_DURATION_SECONDS = Histogram(
    "recompute_job_duration_seconds",
    "Duration of read-page recompute jobs in seconds",
    ["status"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

ADMISSION_REJECTIONS_TOTAL = Counter(
    "admission_rejections_total",
    "Requests rejected by the fixed-window admission controller",
    ["route"],
)

__all__ = [
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "INTERVALS_SUBMITTED_TOTAL",
    "TOP_BOOKS_CACHE_TOTAL",
    "RECOMPUTE_JOBS_TOTAL",
    "RECOMPUTE_JOB_DURATION_SECONDS",
    "ADMISSION_REJECTIONS_TOTAL",
]
