"""Application lifespan management - startup and shutdown logic."""

import asyncio
import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from app import __version__
from app.config import Settings, get_settings
from app.core.resilience import RetryConfig
from app.provisioning.registry import ActionRegistry
from app.provisioning.worker import DeferredOperationWorker
from app.repositories.credentials import PlatformCredentialRepository
from app.repositories.deferred_operations import DeferredOperationRepository
from app.repositories.failures import FailureRecordRepository
from app.repositories.jobs import JobRepository
from app.repositories.rate_limits import RateLimitWindowRepository
from app.repositories.slots import SlotRepository
from app.repositories.verifications import VerificationRepository
from app.routers import health, provisioning
from app.services.platform.client import AdPlatformClient
from app.services.provisioning.crypto import CredentialCipher, CredentialCipherError
from app.services.provisioning.deferred_queue import DeferredOperationQueue
from app.services.provisioning.failure_ledger import FailureLedger
from app.services.provisioning.orchestrator import JobOrchestrator, OrchestratorConfig
from app.services.provisioning.preflight import PreflightVerifier
from app.services.provisioning.rate_governor import RateLimitGovernor
from app.services.provisioning.slot_allocator import SlotAllocator

logger = structlog.get_logger(__name__)

# Global clients - accessed by other modules
_db_pool: Optional[asyncpg.Pool] = None
_platform_client: Optional[AdPlatformClient] = None
_orchestrator: Optional[JobOrchestrator] = None
_worker: Optional[DeferredOperationWorker] = None
_worker_task: Optional[asyncio.Task] = None


def get_db_pool() -> Optional[asyncpg.Pool]:
    """Get the database connection pool."""
    return _db_pool


def get_orchestrator() -> Optional[JobOrchestrator]:
    """Get the job orchestrator, if provisioning is wired."""
    return _orchestrator


async def _init_database(settings: Settings) -> Optional[asyncpg.Pool]:
    """Initialize asyncpg connection pool."""
    if not settings.database_url:
        logger.warning("Database connection not configured. Set DATABASE_URL in .env")
        return None

    try:
        logger.info(
            "Attempting database connection",
            url_prefix=settings.database_url[:30] + "...",
        )
        # Short timeout - don't block startup if DB is unreachable
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            ssl="require" if settings.db_ssl else None,
            timeout=10,
            command_timeout=30,
            statement_cache_size=0,  # Disable for pgbouncer transaction mode
        )
        logger.info(
            "Database pool initialized",
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        health.set_db_pool(pool)
        return pool
    except Exception as e:
        logger.error(
            "Failed to initialize database pool - provisioning endpoints will be unavailable",
            error=str(e),
            traceback=traceback.format_exc(),
        )
        return None


def _init_cipher(settings: Settings) -> Optional[CredentialCipher]:
    if not settings.credential_encryption_key:
        logger.warning(
            "CREDENTIAL_ENCRYPTION_KEY not set - provisioning endpoints will be unavailable"
        )
        return None
    try:
        return CredentialCipher(settings.credential_encryption_key)
    except CredentialCipherError as e:
        logger.error("Invalid CREDENTIAL_ENCRYPTION_KEY", error=str(e))
        return None


def build_orchestrator(
    pool,
    cipher: CredentialCipher,
    platform: AdPlatformClient,
    settings: Settings,
) -> JobOrchestrator:
    """Wire repositories and services into a JobOrchestrator."""
    jobs = JobRepository(pool)
    queue = DeferredOperationQueue(
        DeferredOperationRepository(pool),
        cipher,
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_base_s,
        default_priority=settings.queue_default_priority,
    )
    governor = RateLimitGovernor(
        RateLimitWindowRepository(pool),
        soft_threshold_pct=settings.rate_limit_soft_threshold_pct,
        hard_ceiling_pct=settings.rate_limit_hard_ceiling_pct,
    )
    preflight = PreflightVerifier(
        platform,
        VerificationRepository(pool),
        entity_limit=settings.platform_entity_limit,
        warning_ratio=settings.platform_entity_limit_warning_ratio,
    )
    config = OrchestratorConfig(
        retry_budget=settings.job_retry_budget,
        max_parallel_attempts=settings.job_max_parallel_attempts,
        pass_backoff=RetryConfig(
            base_delay_seconds=settings.job_retry_base_delay_s,
            max_delay_seconds=settings.job_retry_max_delay_s,
        ),
        defer_delay_seconds=settings.queue_defer_delay_s,
        rollback_settle_timeout_seconds=settings.rollback_settle_timeout_s,
    )
    return JobOrchestrator(
        jobs=jobs,
        allocator=SlotAllocator(SlotRepository(pool)),
        governor=governor,
        queue=queue,
        ledger=FailureLedger(
            FailureRecordRepository(pool), retry_ceiling=settings.failure_retry_ceiling
        ),
        preflight=preflight,
        platform=platform,
        credentials=PlatformCredentialRepository(pool, cipher),
        config=config,
    )


async def _start_worker(orchestrator: JobOrchestrator, settings: Settings) -> None:
    global _worker, _worker_task

    registry = ActionRegistry(orchestrator.action_handlers())
    _worker = DeferredOperationWorker(
        orchestrator.queue,
        registry,
        poll_interval=settings.queue_poll_interval_s,
        batch_size=settings.queue_batch_size,
        on_settled=orchestrator.resume_after_deferred,
    )
    _worker_task = asyncio.create_task(_worker.start())
    logger.info("Deferred operation worker started", worker_id=_worker.worker_id)


async def _stop_worker() -> None:
    global _worker, _worker_task

    if _worker is not None:
        await _worker.stop()
    if _worker_task is not None:
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Deferred operation worker stopped")
    _worker = None
    _worker_task = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global _db_pool, _platform_client, _orchestrator

    settings = get_settings()
    logger.info(
        "Starting Bulk Provisioning Service",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        platform_api_url=settings.platform_api_url,
    )

    _db_pool = await _init_database(settings)
    cipher = _init_cipher(settings)
    _platform_client = AdPlatformClient(
        settings.platform_api_url,
        timeout=settings.platform_timeout_s,
        default_calls_allowed=settings.rate_limit_default_calls_allowed,
        default_window_seconds=settings.rate_limit_default_window_s,
    )

    if _db_pool is not None and cipher is not None:
        _orchestrator = build_orchestrator(_db_pool, cipher, _platform_client, settings)
        provisioning.set_orchestrator(_orchestrator)
        if settings.queue_worker_enabled:
            await _start_worker(_orchestrator, settings)
        else:
            logger.info("Deferred operation worker disabled (QUEUE_WORKER_ENABLED=false)")

    health.set_runtime_state(cipher_loaded=cipher is not None, worker_task=_worker_task)

    yield

    # Cleanup on shutdown
    logger.info("Shutting down Bulk Provisioning Service")

    # Stop the worker first (before DB pool closes)
    await _stop_worker()
    provisioning.set_orchestrator(None)
    health.set_runtime_state(cipher_loaded=False)
    _orchestrator = None

    if _platform_client:
        await _platform_client.close()
        logger.info("Platform client closed")

    if _db_pool:
        await _db_pool.close()
        health.set_db_pool(None)
        logger.info("Database pool closed")
