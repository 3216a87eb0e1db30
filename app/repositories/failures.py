"""Repository for entity failure records (the failure ledger)."""

from typing import Any, Optional
from uuid import UUID

import structlog

from app.provisioning.models import FailureRecord
from app.provisioning.transitions import FAILURE_TRANSITIONS, sources_for
from app.provisioning.types import EntityType, ErrorCategory, FailureStatus
from app.repositories.utils import ensure_json, to_jsonb

logger = structlog.get_logger(__name__)


def _sources(target: FailureStatus) -> list[str]:
    return [s.value for s in sources_for(FAILURE_TRANSITIONS, target)]


class FailureRecordRepository:
    """Repository for failure records.

    Records are independent of job lifecycle (job_id/slot_id are nullable and
    set to NULL when the job is deleted). retry_count only ever increments,
    and every status update is guarded so recovered/permanent rows are frozen.
    """

    def __init__(self, pool):
        self._pool = pool

    async def insert(self, record: FailureRecord) -> FailureRecord:
        query = """
            INSERT INTO failure_records (
                user_id, job_id, slot_id, entity_type, campaign_id, campaign_name,
                ad_set_id, ad_set_name, ad_id, ad_name, failure_reason,
                user_facing_reason, error_code, error_category, error_payload,
                status, strategy_tag, metadata
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                    $15::jsonb, $16, $17, $18::jsonb)
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                record.user_id,
                record.job_id,
                record.slot_id,
                record.entity_type.value,
                record.campaign_id,
                record.campaign_name,
                record.ad_set_id,
                record.ad_set_name,
                record.ad_id,
                record.ad_name,
                record.failure_reason,
                record.user_facing_reason,
                record.error_code,
                record.error_category.value,
                to_jsonb(record.error_payload),
                record.status.value,
                record.strategy_tag,
                to_jsonb(record.metadata),
            )
        return self._row_to_record(row)

    async def get(self, record_id: UUID) -> Optional[FailureRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM failure_records WHERE id = $1", record_id)
        return self._row_to_record(row) if row else None

    async def mark_retrying(self, record_id: UUID) -> Optional[FailureRecord]:
        query = """
            UPDATE failure_records SET
                status = 'retrying',
                retry_count = retry_count + 1,
                updated_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, record_id, _sources(FailureStatus.RETRYING))
        return self._row_to_record(row) if row else None

    async def mark_recovered(self, record_id: UUID) -> Optional[FailureRecord]:
        query = """
            UPDATE failure_records SET
                status = 'recovered',
                recovered_at = now(),
                updated_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, record_id, _sources(FailureStatus.RECOVERED))
        return self._row_to_record(row) if row else None

    async def mark_failed(
        self,
        record_id: UUID,
        failure_reason: str,
        user_facing_reason: str,
        error_code: Optional[str],
        error_category: ErrorCategory,
        error_payload: Optional[dict[str, Any]],
    ) -> Optional[FailureRecord]:
        """A retry failed again: back to failed with the latest error."""
        query = """
            UPDATE failure_records SET
                status = 'failed',
                failure_reason = $3,
                user_facing_reason = $4,
                error_code = $5,
                error_category = $6,
                error_payload = $7::jsonb,
                updated_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                record_id,
                _sources(FailureStatus.FAILED),
                failure_reason,
                user_facing_reason,
                error_code,
                error_category.value,
                to_jsonb(error_payload),
            )
        return self._row_to_record(row) if row else None

    async def mark_permanent(
        self, record_id: UUID, failure_reason: Optional[str] = None
    ) -> Optional[FailureRecord]:
        query = """
            UPDATE failure_records SET
                status = 'permanent_failure',
                failure_reason = COALESCE($3, failure_reason),
                updated_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, record_id, _sources(FailureStatus.PERMANENT_FAILURE), failure_reason
            )
        if row:
            logger.info("failure_marked_permanent", failure_id=str(record_id))
        return self._row_to_record(row) if row else None

    async def list_by_campaign(
        self, user_id: str, campaign_id: str
    ) -> list[FailureRecord]:
        query = """
            SELECT * FROM failure_records
            WHERE user_id = $1 AND campaign_id = $2
            ORDER BY created_at DESC
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, user_id, campaign_id)
        return [self._row_to_record(row) for row in rows]

    async def list_by_job(self, job_id: UUID) -> list[FailureRecord]:
        query = """
            SELECT * FROM failure_records
            WHERE job_id = $1
            ORDER BY created_at
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id)
        return [self._row_to_record(row) for row in rows]

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[FailureStatus] = None,
        entity_type: Optional[EntityType] = None,
        limit: int = 50,
    ) -> list[FailureRecord]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if entity_type:
            params.append(entity_type.value)
            conditions.append(f"entity_type = ${len(params)}")
        params.append(limit)
        query = f"""
            SELECT * FROM failure_records
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params)}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_record(row) for row in rows]

    async def list_pending(self, user_id: str) -> list[FailureRecord]:
        """Failed or retrying records, oldest first."""
        query = """
            SELECT * FROM failure_records
            WHERE user_id = $1 AND status IN ('failed', 'retrying')
            ORDER BY created_at
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, user_id)
        return [self._row_to_record(row) for row in rows]

    async def stats(self, user_id: str) -> dict[str, int]:
        query = """
            SELECT status, COUNT(*) AS total
            FROM failure_records
            WHERE user_id = $1
            GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, user_id)
        counts = {status.value: 0 for status in FailureStatus}
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    def _row_to_record(self, row) -> FailureRecord:
        return FailureRecord(
            id=row["id"],
            user_id=row["user_id"],
            job_id=row["job_id"],
            slot_id=row["slot_id"],
            entity_type=EntityType(row["entity_type"]),
            campaign_id=row["campaign_id"],
            campaign_name=row["campaign_name"],
            ad_set_id=row["ad_set_id"],
            ad_set_name=row["ad_set_name"],
            ad_id=row["ad_id"],
            ad_name=row["ad_name"],
            failure_reason=row["failure_reason"],
            user_facing_reason=row["user_facing_reason"],
            error_code=row["error_code"],
            error_category=ErrorCategory(row["error_category"]),
            error_payload=ensure_json(row["error_payload"]),
            status=FailureStatus(row["status"]),
            retry_count=row["retry_count"],
            strategy_tag=row["strategy_tag"],
            metadata=ensure_json(row["metadata"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            recovered_at=row["recovered_at"],
        )
