"""Prometheus metrics endpoint for the provisioning service."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# Request metrics
REQUEST_COUNT = Counter(
    "provisioning_requests_total",
    "Total number of requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "provisioning_request_latency_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Provisioning metrics
SLOT_ATTEMPTS = Counter(
    "provisioning_slot_attempts_total",
    "Entity slot creation attempts",
    ["entity_type", "outcome"],  # created, failed, deferred, skipped, orphaned
)

DEFERRED_OPERATIONS = Counter(
    "provisioning_deferred_operations_total",
    "Deferred operations processed by the queue worker",
    ["action_type", "outcome"],  # completed, rescheduled, throttled, failed
)

JOBS_FINISHED = Counter(
    "provisioning_jobs_finished_total",
    "Creation jobs reaching completed, failed or rolled_back",
    ["status"],
)

PREFLIGHT_CHECKS = Counter(
    "provisioning_preflight_checks_total",
    "Preflight verifications by result",
    ["result"],  # passed, rejected
)

PLATFORM_CALL_LATENCY = Histogram(
    "provisioning_platform_call_latency_seconds",
    "Latency of mutating platform calls",
    ["action"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Service health metrics
SERVICE_UP = Gauge(
    "provisioning_service_up",
    "Service availability (1=up, 0=down)",
    ["component"],
)

# Connection pool metrics
DB_POOL_SIZE = Gauge(
    "provisioning_db_pool_size",
    "Current database connection pool size",
)

DB_POOL_AVAILABLE = Gauge(
    "provisioning_db_pool_available",
    "Available connections in database pool",
)


def record_request(method: str, endpoint: str, status_code: int, duration: float):
    """Record request metrics."""
    REQUEST_COUNT.labels(
        method=method, endpoint=endpoint, status_code=status_code
    ).inc()
    REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)


def record_slot_attempt(entity_type: str, outcome: str):
    """Record one slot attempt outcome."""
    SLOT_ATTEMPTS.labels(entity_type=entity_type, outcome=outcome).inc()


def record_deferred_operation(action_type: str, outcome: str):
    """Record a deferred operation outcome."""
    DEFERRED_OPERATIONS.labels(action_type=action_type, outcome=outcome).inc()


def record_job_finished(status: str):
    """Record a job reaching a terminal status."""
    JOBS_FINISHED.labels(status=status).inc()


def record_preflight(can_proceed: bool):
    PREFLIGHT_CHECKS.labels(result="passed" if can_proceed else "rejected").inc()


def observe_platform_call(action: str, duration: float):
    PLATFORM_CALL_LATENCY.labels(action=action).observe(duration)


def set_service_health(component: str, is_up: bool):
    """Set service component health status."""
    SERVICE_UP.labels(component=component).set(1 if is_up else 0)


def set_db_pool_metrics(pool_size: int, available: int):
    """Set database pool metrics."""
    DB_POOL_SIZE.set(pool_size)
    DB_POOL_AVAILABLE.set(available)


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    This endpoint is excluded from OpenAPI docs.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
