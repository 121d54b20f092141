"""Prometheus metrics for infra-plane.

Usage::

    from infra_plane.app.observability.metrics import PROVISION_JOBS_TOTAL

    PROVISION_JOBS_TOTAL.labels(operation="apply", outcome="COMPLETE").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "infra_http_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "infra_http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Provisioning metrics
# ---------------------------------------------------------------------------

PROVISION_JOBS_TOTAL = Counter(
    "infra_provision_jobs_total",
    "Finished provisioning jobs by operation and terminal status.",
    labelnames=["operation", "outcome"],
    registry=REGISTRY,
)

PROVISION_JOB_DURATION_SECONDS = Histogram(
    "infra_provision_job_duration_seconds",
    "Wall-clock duration of provisioning jobs, admission wait included.",
    labelnames=["operation"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0),
    registry=REGISTRY,
)

ADMISSION_REJECTIONS_TOTAL = Counter(
    "infra_admission_rejections_total",
    "Operations rejected because the admission queue was full.",
    registry=REGISTRY,
)

ACTIVE_SLOTS = Gauge(
    "infra_admission_active_slots",
    "Execution slots currently held.",
    registry=REGISTRY,
)

ROLLBACKS_TOTAL = Counter(
    "infra_rollbacks_total",
    "Automatic rollbacks by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

LOCK_RELEASES_TOTAL = Counter(
    "infra_lock_releases_total",
    "Forced state-lock releases by result.",
    labelnames=["result"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
