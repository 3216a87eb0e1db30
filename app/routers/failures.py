"""Failure ledger endpoints: audit queries and manual single-entity retry."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query

from app.deps.security import get_user_id
from app.provisioning.types import EntityType, FailureStatus
from app.routers.provisioning import (
    HANDLED_ERRORS,
    _get_orchestrator,
    failure_response,
    to_http_exception,
)
from app.schemas.provisioning import (
    FailureListResponse,
    FailureStatsResponse,
    ManualRetryResponse,
)

router = APIRouter(prefix="/failures", tags=["failures"])
logger = structlog.get_logger(__name__)


@router.get("/campaign/{campaign_id}", response_model=FailureListResponse)
async def list_campaign_failures(
    campaign_id: str, user_id: str = Depends(get_user_id)
) -> FailureListResponse:
    """All failures recorded against one external campaign."""
    ledger = _get_orchestrator().ledger
    records = await ledger.list_by_campaign(user_id, campaign_id)
    return FailureListResponse(
        failures=[failure_response(r) for r in records], count=len(records)
    )


@router.get("/user", response_model=FailureListResponse)
async def list_user_failures(
    status: Optional[FailureStatus] = Query(None, description="Filter by status"),
    entity_type: Optional[EntityType] = Query(None, description="Filter by entity type"),
    limit: int = Query(50, ge=1, le=500, description="Max records"),
    user_id: str = Depends(get_user_id),
) -> FailureListResponse:
    """The caller's failures, newest first."""
    ledger = _get_orchestrator().ledger
    records = await ledger.list_by_user(user_id, status, entity_type, limit)
    return FailureListResponse(
        failures=[failure_response(r) for r in records], count=len(records)
    )


@router.get("/pending", response_model=FailureListResponse)
async def list_pending_failures(user_id: str = Depends(get_user_id)) -> FailureListResponse:
    """Failures still open for retry (failed or retrying)."""
    ledger = _get_orchestrator().ledger
    records = await ledger.list_pending(user_id)
    return FailureListResponse(
        failures=[failure_response(r) for r in records], count=len(records)
    )


@router.get("/stats", response_model=FailureStatsResponse)
async def failure_stats(user_id: str = Depends(get_user_id)) -> FailureStatsResponse:
    ledger = _get_orchestrator().ledger
    counts = await ledger.stats(user_id)
    return FailureStatsResponse(**counts, total=sum(counts.values()))


@router.post("/{record_id}/retry", response_model=ManualRetryResponse)
async def retry_failure(
    record_id: UUID, user_id: str = Depends(get_user_id)
) -> ManualRetryResponse:
    """
    Re-attempt the single entity behind a failure record.

    Runs outside the job's retry budget. A new failure is recorded as a
    separate ledger entry and returned as ``new_failure_id``.
    """
    orchestrator = _get_orchestrator()
    logger.info("manual_retry_request", failure_id=str(record_id))
    try:
        result = await orchestrator.manual_retry(record_id, user_id)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return ManualRetryResponse(
        failure_id=record_id,
        outcome=result.outcome.value,
        external_id=result.external_id,
        error=result.error,
        new_failure_id=result.failure_id if result.failure_id != record_id else None,
    )
