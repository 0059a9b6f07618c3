"""Observability: Prometheus metrics."""

from .metrics import (
    REQUEST_COUNT, REQUEST_LATENCY, JOB_COUNT, JOB_DURATION,
    ACTIVE_JOBS, PAGES_PROCESSED, IMAGES_STORED, endpoint_label
)

__all__ = [
    'REQUEST_COUNT', 'REQUEST_LATENCY', 'JOB_COUNT', 'JOB_DURATION',
    'ACTIVE_JOBS', 'PAGES_PROCESSED', 'IMAGES_STORED', 'endpoint_label',
]
