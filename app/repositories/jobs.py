"""Repository for creation job persistence."""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import UUID

import structlog

from app.provisioning.models import CreationJob
from app.provisioning.transitions import JOB_TRANSITIONS, sources_for
from app.provisioning.types import EntityType, JobStatus
from app.repositories.utils import acquire, ensure_json, to_jsonb

logger = structlog.get_logger(__name__)


def _sources(target: JobStatus) -> list[str]:
    return [s.value for s in sources_for(JOB_TRANSITIONS, target)]


class JobRepository:
    """Repository for creation jobs.

    Status changes are compare-and-set: each UPDATE is guarded by the set of
    statuses allowed to move to the target, and returns None when the row was
    not in one of them.
    """

    def __init__(self, pool):
        self._pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Open a transaction shared with other repositories via ``conn=``."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def create(
        self,
        user_id: str,
        account_id: str,
        campaign_name: str,
        requested_ad_sets: int,
        requested_ads: int,
        retry_budget: int,
        request_payload: dict[str, Any],
        verification_id: Optional[UUID] = None,
        conn=None,
    ) -> CreationJob:
        """Insert a new pending job."""
        query = """
            INSERT INTO creation_jobs (
                user_id, account_id, campaign_name, requested_ad_sets,
                requested_ads, retry_budget, request_payload, verification_id
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
            RETURNING *
        """
        async with acquire(self._pool, conn) as c:
            row = await c.fetchrow(
                query,
                user_id,
                account_id,
                campaign_name,
                requested_ad_sets,
                requested_ads,
                retry_budget,
                to_jsonb(request_payload),
                verification_id,
            )
        logger.info(
            "creation_job_created",
            job_id=str(row["id"]),
            user_id=user_id,
            account_id=account_id,
        )
        return self._row_to_job(row)

    async def get(self, job_id: UUID, conn=None) -> Optional[CreationJob]:
        """Get a job by ID."""
        async with acquire(self._pool, conn) as c:
            row = await c.fetchrow("SELECT * FROM creation_jobs WHERE id = $1", job_id)
        return self._row_to_job(row) if row else None

    async def get_status(self, job_id: UUID) -> Optional[JobStatus]:
        """Cheap status read used for cooperative cancellation checks."""
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT status FROM creation_jobs WHERE id = $1", job_id
            )
        return JobStatus(value) if value else None

    async def mark_started(self, job_id: UUID) -> Optional[CreationJob]:
        query = """
            UPDATE creation_jobs SET
                status = 'in_progress',
                started_at = COALESCE(started_at, now())
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, _sources(JobStatus.IN_PROGRESS))
        return self._row_to_job(row) if row else None

    async def mark_completed(self, job_id: UUID) -> Optional[CreationJob]:
        query = """
            UPDATE creation_jobs SET
                status = 'completed',
                completed_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, _sources(JobStatus.COMPLETED))
        if row:
            logger.info("creation_job_completed", job_id=str(job_id))
        return self._row_to_job(row) if row else None

    async def mark_failed(
        self, job_id: UUID, error: Optional[str] = None
    ) -> Optional[CreationJob]:
        query = """
            UPDATE creation_jobs SET
                status = 'failed',
                last_error = COALESCE($3, last_error),
                completed_at = now()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job_id, _sources(JobStatus.FAILED), error
            )
        if row:
            logger.warning("creation_job_failed", job_id=str(job_id), error=error)
        return self._row_to_job(row) if row else None

    async def mark_rolled_back(
        self, job_id: UUID, reason: str, cleanup_required: bool
    ) -> Optional[CreationJob]:
        query = """
            UPDATE creation_jobs SET
                status = 'rolled_back',
                rollback_triggered = true,
                rollback_reason = $3,
                rollback_at = now(),
                cleanup_required = $4
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job_id, _sources(JobStatus.ROLLED_BACK), reason, cleanup_required
            )
        if row:
            logger.info(
                "creation_job_rolled_back",
                job_id=str(job_id),
                cleanup_required=cleanup_required,
            )
        return self._row_to_job(row) if row else None

    async def increment_created(
        self, job_id: UUID, entity_type: EntityType, external_id: Optional[str] = None
    ) -> Optional[CreationJob]:
        """Bump the per-type created counter, never past the requested count.

        For the campaign slot this records the external campaign id instead.
        """
        if entity_type is EntityType.CAMPAIGN:
            query = """
                UPDATE creation_jobs SET external_campaign_id = $2
                WHERE id = $1
                RETURNING *
            """
            args: tuple = (job_id, external_id)
        elif entity_type is EntityType.AD_SET:
            query = """
                UPDATE creation_jobs SET ad_sets_created = ad_sets_created + 1
                WHERE id = $1 AND ad_sets_created < requested_ad_sets
                RETURNING *
            """
            args = (job_id,)
        else:
            query = """
                UPDATE creation_jobs SET ads_created = ads_created + 1
                WHERE id = $1 AND ads_created < requested_ads
                RETURNING *
            """
            args = (job_id,)

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        if row is None:
            logger.warning(
                "created_counter_at_ceiling",
                job_id=str(job_id),
                entity_type=entity_type.value,
            )
        return self._row_to_job(row) if row else None

    async def append_error(self, job_id: UUID, entry: dict[str, Any]) -> None:
        """Append to the ordered error history and set last_error."""
        query = """
            UPDATE creation_jobs SET
                error_history = error_history || jsonb_build_array($2::jsonb),
                last_error = $3
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, job_id, to_jsonb(entry), entry.get("error"))

    async def record_retry(self, job_id: UUID) -> Optional[CreationJob]:
        """Increment retry_count and stamp last_retry_at."""
        query = """
            UPDATE creation_jobs SET
                retry_count = retry_count + 1,
                last_retry_at = now()
            WHERE id = $1 AND status = 'in_progress'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreationJob]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        params.extend([limit, offset])
        query = f"""
            SELECT * FROM creation_jobs
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row) -> CreationJob:
        """Convert a database row to a CreationJob model."""
        return CreationJob(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            campaign_name=row["campaign_name"],
            requested_ad_sets=row["requested_ad_sets"],
            requested_ads=row["requested_ads"],
            status=JobStatus(row["status"]),
            ad_sets_created=row["ad_sets_created"],
            ads_created=row["ads_created"],
            external_campaign_id=row["external_campaign_id"],
            retry_count=row["retry_count"],
            retry_budget=row["retry_budget"],
            last_error=row["last_error"],
            error_history=ensure_json(row["error_history"]) or [],
            last_retry_at=row["last_retry_at"],
            rollback_triggered=row["rollback_triggered"],
            rollback_reason=row["rollback_reason"],
            rollback_at=row["rollback_at"],
            cleanup_required=row["cleanup_required"],
            verification_id=row["verification_id"],
            request_payload=ensure_json(row["request_payload"]) or {},
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
