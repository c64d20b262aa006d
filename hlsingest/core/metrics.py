"""Prometheus metrics for the ingest API and workers."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Multiprocess mode (e.g. gunicorn or several celery children)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "hlsingest_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Ingest Pipeline Metrics
# ============================================
ASSETS_TOTAL = Counter(
    "ingest_assets_total",
    "Assets that reached a terminal status",
    ["status"],
    registry=REGISTRY,
)

RENDITIONS_TOTAL = Counter(
    "ingest_renditions_total",
    "Renditions that reached a terminal status",
    ["label", "status"],
    registry=REGISTRY,
)

TRANSCODE_DURATION_SECONDS = Histogram(
    "ingest_transcode_duration_seconds",
    "Wall-clock duration of one rendition transcode",
    ["label"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
    registry=REGISTRY,
)

PHASE_DURATION_SECONDS = Histogram(
    "ingest_phase_duration_seconds",
    "Duration of a pipeline phase",
    ["phase"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
    registry=REGISTRY,
)

RENDITION_RETRIES_TOTAL = Counter(
    "ingest_rendition_retries_total",
    "Transient encoder failures that were retried",
    ["label"],
    registry=REGISTRY,
)

ACTIVE_TRANSCODES = Gauge(
    "ingest_active_transcodes",
    "Encoder processes currently running in this process",
    registry=REGISTRY,
)

LEASE_TAKEOVERS_TOTAL = Counter(
    "ingest_lease_takeovers_total",
    "Assets picked up after another worker's lease expired",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
