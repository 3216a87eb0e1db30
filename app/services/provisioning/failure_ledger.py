"""Failure ledger: records every entity failure and drives its retry lifecycle.

Records outlive their job. Status moves are validated against
FAILURE_TRANSITIONS first and then applied with a guarded UPDATE, so a
recovered or permanent record never changes again and retry_count only
grows.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol
from uuid import UUID, uuid4

import structlog

from app.provisioning.models import FailureRecord
from app.provisioning.transitions import (
    FAILURE_TRANSITIONS,
    InvalidTransitionError,
    ensure_transition,
)
from app.provisioning.types import EntityType, ErrorCategory, FailureStatus
from app.services.platform.errors import (
    classify_error,
    extract_error_details,
    translate_error,
)

logger = structlog.get_logger(__name__)

ENTITY = "failure_record"


class FailureStore(Protocol):
    async def insert(self, record: FailureRecord) -> FailureRecord: ...

    async def get(self, record_id: UUID) -> Optional[FailureRecord]: ...

    async def mark_retrying(self, record_id: UUID) -> Optional[FailureRecord]: ...

    async def mark_recovered(self, record_id: UUID) -> Optional[FailureRecord]: ...

    async def mark_failed(
        self,
        record_id: UUID,
        failure_reason: str,
        user_facing_reason: str,
        error_code: Optional[str],
        error_category: ErrorCategory,
        error_payload: Optional[dict[str, Any]],
    ) -> Optional[FailureRecord]: ...

    async def mark_permanent(
        self, record_id: UUID, failure_reason: Optional[str] = None
    ) -> Optional[FailureRecord]: ...

    async def list_by_campaign(self, user_id: str, campaign_id: str) -> list[FailureRecord]: ...

    async def list_by_job(self, job_id: UUID) -> list[FailureRecord]: ...

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[FailureStatus] = None,
        entity_type: Optional[EntityType] = None,
        limit: int = 50,
    ) -> list[FailureRecord]: ...

    async def list_pending(self, user_id: str) -> list[FailureRecord]: ...

    async def stats(self, user_id: str) -> dict[str, int]: ...


@dataclass
class FailureContext:
    """Where a failure happened: job, slot and the entity's parents."""

    user_id: str
    entity_type: EntityType
    job_id: Optional[UUID] = None
    slot_id: Optional[UUID] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_set_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    strategy_tag: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _error_code(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    return str(code) if code is not None else None


class FailureLedger:
    """Service over the failure record store."""

    def __init__(self, store: FailureStore, retry_ceiling: int = 3):
        self._store = store
        self._retry_ceiling = retry_ceiling

    async def record(self, ctx: FailureContext, error: Exception) -> FailureRecord:
        """Insert a new record for ``error``.

        Non-retryable categories go straight to permanent_failure.
        """
        category = classify_error(error)
        user_message, reason_tag = translate_error(error)
        status = (
            FailureStatus.FAILED if category.is_retryable else FailureStatus.PERMANENT_FAILURE
        )
        record = FailureRecord(
            id=uuid4(),
            user_id=ctx.user_id,
            job_id=ctx.job_id,
            slot_id=ctx.slot_id,
            entity_type=ctx.entity_type,
            campaign_id=ctx.campaign_id,
            campaign_name=ctx.campaign_name,
            ad_set_id=ctx.ad_set_id,
            ad_set_name=ctx.ad_set_name,
            ad_id=ctx.ad_id,
            ad_name=ctx.ad_name,
            failure_reason=getattr(error, "message", None) or str(error),
            user_facing_reason=user_message,
            error_code=_error_code(error),
            error_category=category,
            error_payload=extract_error_details(error),
            status=status,
            strategy_tag=ctx.strategy_tag,
            metadata={**ctx.metadata, "reason": reason_tag},
        )
        saved = await self._store.insert(record)
        logger.info(
            "failure_recorded",
            failure_id=str(saved.id),
            job_id=str(ctx.job_id) if ctx.job_id else None,
            entity_type=ctx.entity_type.value,
            category=category.value,
            status=saved.status.value,
        )
        return saved

    async def get(self, record_id: UUID) -> Optional[FailureRecord]:
        return await self._store.get(record_id)

    async def mark_retrying(self, record: FailureRecord) -> FailureRecord:
        return await self._move(
            record, FailureStatus.RETRYING, lambda: self._store.mark_retrying(record.id)
        )

    async def mark_recovered(self, record: FailureRecord) -> FailureRecord:
        return await self._move(
            record, FailureStatus.RECOVERED, lambda: self._store.mark_recovered(record.id)
        )

    async def mark_permanent(
        self, record: FailureRecord, reason: Optional[str] = None
    ) -> FailureRecord:
        return await self._move(
            record,
            FailureStatus.PERMANENT_FAILURE,
            lambda: self._store.mark_permanent(record.id, reason),
        )

    async def mark_failed_again(
        self, record: FailureRecord, error: Exception
    ) -> FailureRecord:
        """A retry of ``record`` failed again.

        Goes permanent when the new error is not retryable or the record has
        used up its retries; otherwise back to failed with the new error.
        """
        category = classify_error(error)
        if not category.is_retryable or record.retry_count > self._retry_ceiling:
            reason = getattr(error, "message", None) or str(error)
            return await self.mark_permanent(record, reason)

        user_message, _ = translate_error(error)
        return await self._move(
            record,
            FailureStatus.FAILED,
            lambda: self._store.mark_failed(
                record.id,
                getattr(error, "message", None) or str(error),
                user_message,
                _error_code(error),
                category,
                extract_error_details(error),
            ),
        )

    async def _move(self, record: FailureRecord, target: FailureStatus, update) -> FailureRecord:
        ensure_transition(ENTITY, FAILURE_TRANSITIONS, record.status, target)
        updated = await update()
        if updated is None:
            # The row moved under us; report against its current status
            current = await self._store.get(record.id)
            raise InvalidTransitionError(
                ENTITY, current.status if current else record.status, target
            )
        return updated

    async def list_by_campaign(self, user_id: str, campaign_id: str) -> list[FailureRecord]:
        return await self._store.list_by_campaign(user_id, campaign_id)

    async def list_by_job(self, job_id: UUID) -> list[FailureRecord]:
        return await self._store.list_by_job(job_id)

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[FailureStatus] = None,
        entity_type: Optional[EntityType] = None,
        limit: int = 50,
    ) -> list[FailureRecord]:
        return await self._store.list_by_user(user_id, status, entity_type, limit)

    async def list_pending(self, user_id: str) -> list[FailureRecord]:
        """Failed and retrying records; the manual-retry backlog."""
        return await self._store.list_pending(user_id)

    async def stats(self, user_id: str) -> dict[str, int]:
        return await self._store.stats(user_id)
