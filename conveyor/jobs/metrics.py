"""Prometheus metrics for the worker pool."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Prometheus Metrics
# =============================================================================

JOBS_PROCESSED_TOTAL = Counter(
    "conveyor_jobs_processed_total",
    "Jobs finished by a worker, by outcome",
    ["job_type", "outcome"],  # outcome: completed, retry, failed, cancelled
)
JOB_DURATION_SECONDS = Histogram(
    "conveyor_job_duration_seconds",
    "Wall time of a job handler",
    ["job_type"],
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800],
)
JOBS_IN_FLIGHT = Gauge(
    "conveyor_jobs_in_flight",
    "Jobs currently held by a worker in this process",
)
LEASES_LOST_TOTAL = Counter(
    "conveyor_job_leases_lost_total",
    "Lease extensions that found the job no longer held by this worker",
)
