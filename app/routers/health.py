"""Health check endpoint."""

import time
from typing import Optional

import structlog
from fastapi import APIRouter

from app import __version__
from app.routers.metrics import set_db_pool_metrics, set_service_health
from app.schemas import DependencyHealth, HealthResponse

router = APIRouter()
logger = structlog.get_logger(__name__)

# Global state (set during app startup)
_db_pool = None
_cipher_loaded = False
_worker_task = None


def set_db_pool(pool):
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


def set_runtime_state(cipher_loaded: bool, worker_task=None):
    """Record whether the credential cipher and queue worker are running."""
    global _cipher_loaded, _worker_task
    _cipher_loaded = cipher_loaded
    _worker_task = worker_task


async def check_database_health(pool) -> DependencyHealth:
    """Check PostgreSQL connectivity with a trivial query."""
    if pool is None:
        return DependencyHealth(status="error", error="Database pool not initialized")
    start = time.perf_counter()
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        latency = (time.perf_counter() - start) * 1000
        set_db_pool_metrics(pool.get_size(), pool.get_idle_size())
        return DependencyHealth(status="ok", latency_ms=latency)
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="error", latency_ms=latency, error=str(e))


def check_worker_health(task) -> DependencyHealth:
    if task is None:
        return DependencyHealth(status="not_configured")
    if task.done():
        error: Optional[str] = "Worker task exited"
        if not task.cancelled() and task.exception() is not None:
            error = str(task.exception())
        return DependencyHealth(status="error", error=error)
    return DependencyHealth(status="ok")


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Check health of service and its dependencies.

    Reports the database, the credential cipher and the deferred operation
    worker. Status is "degraded" when any of them is unhealthy.
    """
    database = await check_database_health(_db_pool)
    cipher = (
        DependencyHealth(status="ok")
        if _cipher_loaded
        else DependencyHealth(status="error", error="CREDENTIAL_ENCRYPTION_KEY not set")
    )
    worker = check_worker_health(_worker_task)

    healthy = database.status == "ok" and cipher.status == "ok" and worker.status != "error"
    overall_status = "ok" if healthy else "degraded"

    set_service_health("database", database.status == "ok")
    set_service_health("queue_worker", worker.status == "ok")

    latency_ms: dict[str, float] = {}
    if database.latency_ms is not None:
        latency_ms["database"] = database.latency_ms

    logger.info(
        "Health check completed",
        status=overall_status,
        database=database.status,
        queue_worker=worker.status,
    )

    return HealthResponse(
        status=overall_status,
        database=database,
        credential_cipher=cipher,
        queue_worker=worker,
        latency_ms=latency_ms,
        version=__version__,
    )
