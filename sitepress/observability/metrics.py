"""Prometheus metrics for the export service.

- HTTP request count and latency (recorded by the app middleware)
- Job outcomes and durations per kind
- Pages processed, images stored, jobs in flight
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNT = Counter(
    "sitepress_request_count",
    "Number of requests received",
    labelnames=["endpoint", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "sitepress_request_latency_seconds",
    "Request latency in seconds",
    labelnames=["endpoint"],
)

JOB_COUNT = Counter(
    "sitepress_job_count",
    "Number of jobs finished",
    labelnames=["kind", "status"],
)
JOB_DURATION = Histogram(
    "sitepress_job_duration_seconds",
    "Job duration in seconds",
    labelnames=["kind"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1200),
)
ACTIVE_JOBS = Gauge(
    "sitepress_active_jobs",
    "Jobs currently running",
)
PAGES_PROCESSED = Counter(
    "sitepress_pages_processed",
    "Pages handled by a pipeline",
    labelnames=["kind", "outcome"],
)
IMAGES_STORED = Counter(
    "sitepress_images_stored",
    "Images written into archives",
)


def endpoint_label(path: str) -> str:
    """Collapse per-job paths so label cardinality stays bounded."""
    parts = path.rstrip("/").split("/")
    if len(parts) >= 4 and parts[1] == "api" and parts[-2] in ("events", "stop", "download"):
        return "/".join(parts[:-1] + ["{job_id}"])
    return path
