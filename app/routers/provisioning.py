"""
Bulk provisioning endpoints.

The creation flow:
1. POST /provisioning/jobs runs preflight and allocates every slot (202)
2. Execution continues as a background task, pass by pass
3. GET /provisioning/jobs/{job_id} reports created/requested counts per type
4. POST /provisioning/jobs/{job_id}/reconcile checks created entities still exist
5. A failed job is either retried manually or rolled back with confirmation
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from app.deps.security import get_user_id
from app.provisioning.models import (
    CreationJob,
    DeferredOperation,
    EntityProgress,
    FailureRecord,
    JobProgress,
)
from app.provisioning.transitions import InvalidTransitionError
from app.provisioning.types import JobStatus, OperationStatus
from app.repositories.credentials import CredentialNotFoundError
from app.schemas.provisioning import (
    CreateJobRequest,
    CreateJobResponse,
    DeferredOperationResponse,
    EntityProgressResponse,
    FailureRecordResponse,
    JobListResponse,
    JobProgressResponse,
    JobSummaryResponse,
    QueueResponse,
    RateLimitWindowResponse,
    ReconcileResponse,
    RetryFailedResponse,
    RetryInfo,
    RollbackRequest,
    RollbackResponse,
)
from app.services.provisioning.crypto import CredentialCipherError
from app.services.provisioning.errors import (
    FailureNotFoundError,
    FailureNotRetryableError,
    InvalidRequestError,
    JobNotFoundError,
    JobNotRetryableError,
    PreflightRejectedError,
    ProvisioningError,
    RateLimitedError,
    RollbackNotConfirmedError,
)
from app.services.provisioning.orchestrator import CreationRequest, JobOrchestrator

router = APIRouter(prefix="/provisioning", tags=["provisioning"])
logger = structlog.get_logger(__name__)

# Global state (set during app startup)
_orchestrator: Optional[JobOrchestrator] = None


def set_orchestrator(orchestrator: Optional[JobOrchestrator]):
    """Set the orchestrator for this router."""
    global _orchestrator
    _orchestrator = orchestrator


def _get_orchestrator() -> JobOrchestrator:
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "Provisioning service not available",
                "error_code": "SERVICE_UNAVAILABLE",
            },
        )
    return _orchestrator


# =============================================================================
# Error mapping
# =============================================================================

_ERROR_STATUS: dict[type, int] = {
    InvalidRequestError: status.HTTP_400_BAD_REQUEST,
    RollbackNotConfirmedError: status.HTTP_400_BAD_REQUEST,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    FailureNotFoundError: status.HTTP_404_NOT_FOUND,
    JobNotRetryableError: status.HTTP_409_CONFLICT,
    FailureNotRetryableError: status.HTTP_409_CONFLICT,
    RateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
    PreflightRejectedError: 422,
}


def to_http_exception(error: Exception) -> HTTPException:
    """Translate a service-layer exception into an HTTPException."""
    if isinstance(error, PreflightRejectedError):
        snapshot = error.snapshot
        return HTTPException(
            status_code=422,
            detail={
                "error": error.message,
                "error_code": error.error_code,
                "errors": snapshot.errors,
                "warnings": snapshot.warnings,
                "verification_id": str(snapshot.id) if snapshot.id else None,
            },
        )
    if isinstance(error, RateLimitedError):
        headers = None
        if error.reset_at is not None:
            headers = {"X-RateLimit-Reset": error.reset_at.isoformat()}
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": error.message,
                "error_code": error.error_code,
                "usage_percentage": error.usage_percentage,
                "reset_at": error.reset_at.isoformat() if error.reset_at else None,
            },
            headers=headers,
        )
    if isinstance(error, ProvisioningError):
        return HTTPException(
            status_code=_ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST),
            detail={"error": error.message, "error_code": error.error_code},
        )
    if isinstance(error, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": error.message, "error_code": error.error_code},
        )
    if isinstance(error, CredentialNotFoundError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(error), "error_code": "CREDENTIAL_NOT_FOUND"},
        )
    if isinstance(error, CredentialCipherError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "Stored platform credential could not be read",
                "error_code": "CREDENTIAL_UNREADABLE",
            },
        )
    raise error


HANDLED_ERRORS = (
    ProvisioningError,
    InvalidTransitionError,
    CredentialNotFoundError,
    CredentialCipherError,
)


# =============================================================================
# Response builders
# =============================================================================


def _entity_progress(progress: EntityProgress) -> EntityProgressResponse:
    return EntityProgressResponse(
        requested=progress.requested,
        created=progress.created,
        pending=progress.pending,
        creating=progress.creating,
        failed=progress.failed,
        rolled_back=progress.rolled_back,
    )


def progress_response(progress: JobProgress) -> JobProgressResponse:
    job = progress.job
    return JobProgressResponse(
        job_id=job.id,
        account_id=job.account_id,
        campaign_name=job.campaign_name,
        status=job.status,
        external_campaign_id=job.external_campaign_id,
        campaign=_entity_progress(progress.campaign),
        ad_sets=_entity_progress(progress.ad_sets),
        ads=_entity_progress(progress.ads),
        deferred_operations=progress.deferred_operations,
        retries=RetryInfo(**progress.retries),
        last_error=job.last_error,
        error_history=job.error_history,
        can_rollback=progress.can_rollback,
        rollback_reason=job.rollback_reason,
        cleanup_required=job.cleanup_required,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        last_retry_at=job.last_retry_at,
    )


def job_summary(job: CreationJob) -> JobSummaryResponse:
    return JobSummaryResponse(
        job_id=job.id,
        account_id=job.account_id,
        campaign_name=job.campaign_name,
        status=job.status,
        requested_ad_sets=job.requested_ad_sets,
        requested_ads=job.requested_ads,
        ad_sets_created=job.ad_sets_created,
        ads_created=job.ads_created,
        retry_count=job.retry_count,
        cleanup_required=job.cleanup_required,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


def operation_response(op: DeferredOperation) -> DeferredOperationResponse:
    return DeferredOperationResponse(
        id=op.id,
        account_id=op.account_id,
        action_type=op.action_type,
        status=op.status,
        priority=op.priority,
        not_before=op.not_before,
        attempts=op.attempts,
        max_attempts=op.max_attempts,
        job_id=op.job_id,
        slot_id=op.slot_id,
        error=op.error,
        created_at=op.created_at,
    )


def failure_response(record: FailureRecord) -> FailureRecordResponse:
    return FailureRecordResponse(
        id=record.id,
        entity_type=record.entity_type,
        status=record.status,
        error_category=record.error_category,
        failure_reason=record.failure_reason,
        user_facing_reason=record.user_facing_reason,
        error_code=record.error_code,
        retry_count=record.retry_count,
        job_id=record.job_id,
        campaign_id=record.campaign_id,
        campaign_name=record.campaign_name,
        ad_set_id=record.ad_set_id,
        ad_set_name=record.ad_set_name,
        ad_id=record.ad_id,
        ad_name=record.ad_name,
        strategy_tag=record.strategy_tag,
        created_at=record.created_at,
        updated_at=record.updated_at,
        recovered_at=record.recovered_at,
    )


async def _execute_in_background(orchestrator: JobOrchestrator, job_id: UUID) -> None:
    try:
        await orchestrator.execute(job_id)
    except Exception as e:
        logger.exception("job_execution_failed", job_id=str(job_id), error=str(e))


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/jobs",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        202: {"description": "Job created, execution started"},
        422: {"description": "Preflight verification failed"},
        503: {"description": "Service not available"},
    },
)
async def create_job(
    request: CreateJobRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
) -> CreateJobResponse:
    """
    Create a provisioning job: one campaign with the requested ad sets and ads.

    Preflight runs first; nothing is created on the platform and no job row
    is written when it reports blocking errors. Execution continues in the
    background; poll GET /provisioning/jobs/{job_id} for progress.
    """
    orchestrator = _get_orchestrator()
    log = logger.bind(account_id=request.account_id)
    log.info(
        "create_job_request",
        ad_set_count=request.ad_set_count,
        ad_count=request.ad_count,
    )

    try:
        job, snapshot = await orchestrator.create_job(
            CreationRequest(
                user_id=user_id,
                account_id=request.account_id,
                campaign_name=request.campaign_name,
                ad_set_count=request.ad_set_count,
                ad_count=request.ad_count,
                campaign_params=request.campaign_params,
                ad_set_params=request.ad_set_params,
                ad_params=request.ad_params,
                strategy_tag=request.strategy_tag,
            )
        )
    except HANDLED_ERRORS as e:
        log.info("create_job_rejected", error=str(e))
        raise to_http_exception(e)

    background_tasks.add_task(_execute_in_background, orchestrator, job.id)
    log.info("create_job_accepted", job_id=str(job.id))
    return CreateJobResponse(
        job_id=job.id,
        status=job.status,
        warnings=snapshot.warnings,
        verification_id=snapshot.id,
    )


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    job_status: Optional[JobStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200, description="Max jobs"),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
) -> JobListResponse:
    """The caller's jobs, newest first."""
    orchestrator = _get_orchestrator()
    jobs = await orchestrator.list_jobs(user_id, status=job_status, limit=limit, offset=offset)
    return JobListResponse(jobs=[job_summary(j) for j in jobs], count=len(jobs))


@router.get("/jobs/{job_id}", response_model=JobProgressResponse)
async def get_job(job_id: UUID, user_id: str = Depends(get_user_id)) -> JobProgressResponse:
    """Current counts, status, retries and error history for a job."""
    orchestrator = _get_orchestrator()
    try:
        progress = await orchestrator.get_progress(job_id, user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return progress_response(progress)


@router.post("/jobs/{job_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(job_id: UUID, user_id: str = Depends(get_user_id)) -> RetryFailedResponse:
    """
    Re-attempt every unfinished slot of a failed job once.

    Runs outside the job's retry budget. Created slots are never touched.
    """
    orchestrator = _get_orchestrator()
    try:
        job, result = await orchestrator.retry_failed_slots(job_id, user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return RetryFailedResponse(job_id=job.id, status=job.status, pass_result=result.to_dict())


@router.post("/jobs/{job_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_job(job_id: UUID, user_id: str = Depends(get_user_id)) -> ReconcileResponse:
    """
    Look up every created entity of the job on the platform.

    Missing entities are listed in ``discrepancies``; ``exceeded_limit`` is
    set when the campaign holds more ad sets or ads than were requested.
    """
    orchestrator = _get_orchestrator()
    try:
        result = await orchestrator.reconcile(job_id, user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return ReconcileResponse(
        job_id=result.job_id,
        slots_checked=result.slots_checked,
        verified=result.verified,
        missing=result.missing,
        unknown=result.unknown,
        discrepancies=result.discrepancies,
        requested_counts=result.requested_counts,
        tracked_counts=result.tracked_counts,
        platform_counts=result.platform_counts,
        counts_error=result.counts_error,
        exceeded_limit=result.exceeded_limit,
        in_sync=result.in_sync,
    )


@router.get("/jobs/{job_id}/rollback-preview")
async def rollback_preview(job_id: UUID, user_id: str = Depends(get_user_id)) -> dict:
    """List the entities a rollback would delete."""
    orchestrator = _get_orchestrator()
    try:
        return await orchestrator.rollback_preview(job_id, user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)


@router.post("/jobs/{job_id}/rollback", response_model=RollbackResponse)
async def rollback_job(
    job_id: UUID,
    request: RollbackRequest,
    user_id: str = Depends(get_user_id),
) -> RollbackResponse:
    """
    Delete every created entity of the job and mark it rolled back.

    Requires {"confirm": true}. Entities that could not be deleted are
    reported in ``errors`` and set ``cleanup_required``.
    """
    orchestrator = _get_orchestrator()
    logger.info("rollback_request", job_id=str(job_id), confirmed=request.confirm)
    try:
        result = await orchestrator.rollback(
            job_id, request.reason, request.confirm, user_id=user_id
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return RollbackResponse(
        job_id=result.job_id,
        status=JobStatus.ROLLED_BACK,
        entities_deleted=result.entities_deleted,
        entities_failed=result.entities_failed,
        slots_rolled_back=result.slots_rolled_back,
        slots_in_flight=result.slots_in_flight,
        operations_cancelled=result.operations_cancelled,
        cleanup_required=result.cleanup_required,
        errors=result.errors,
    )


@router.get("/queue", response_model=QueueResponse)
async def list_queue(user_id: str = Depends(get_user_id)) -> QueueResponse:
    """The caller's queued and processing deferred operations."""
    orchestrator = _get_orchestrator()
    operations = await orchestrator.queue.list_for_user(
        user_id, statuses=[OperationStatus.QUEUED, OperationStatus.PROCESSING]
    )
    return QueueResponse(
        operations=[operation_response(op) for op in operations],
        count=len(operations),
    )


@router.get("/rate-limits/{account_id}", response_model=RateLimitWindowResponse)
async def get_rate_limit(
    account_id: str, user_id: str = Depends(get_user_id)
) -> RateLimitWindowResponse:
    """Current rate-limit window for the caller on an ad account."""
    orchestrator = _get_orchestrator()
    governor = orchestrator.governor
    decision = await governor.check(user_id, account_id)
    window = await governor.get_window(user_id, account_id)
    return RateLimitWindowResponse(
        account_id=account_id,
        calls_used=window.calls_used if window else 0,
        calls_allowed=window.calls_allowed if window else 0,
        usage_percentage=decision.usage_percentage,
        window_reset_at=window.window_reset_at if window else None,
        can_proceed=decision.can_proceed,
        should_defer=decision.should_defer,
        reason=decision.reason,
        updated_at=window.updated_at if window else None,
    )
