"""Repository for the deferred operation queue."""

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

import structlog

from app.provisioning.models import DeferredOperation
from app.provisioning.types import ActionType, OperationStatus
from app.repositories.utils import ensure_json, to_jsonb

logger = structlog.get_logger(__name__)


class DeferredOperationRepository:
    """Repository for deferred platform calls."""

    def __init__(self, pool):
        self._pool = pool

    async def enqueue(
        self,
        user_id: str,
        account_id: str,
        action_type: ActionType,
        payload: dict[str, Any],
        credential_ciphertext: str,
        not_before: datetime,
        priority: int = 5,
        max_attempts: int = 3,
        job_id: Optional[UUID] = None,
        slot_id: Optional[UUID] = None,
    ) -> DeferredOperation:
        query = """
            INSERT INTO deferred_operations (
                user_id, account_id, action_type, payload, credential_ciphertext,
                not_before, priority, max_attempts, job_id, slot_id
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10)
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                user_id,
                account_id,
                action_type.value,
                to_jsonb(payload),
                credential_ciphertext,
                not_before,
                priority,
                max_attempts,
                job_id,
                slot_id,
            )
        return self._row_to_operation(row)

    async def claim_ready(self, worker_id: str, limit: int = 10) -> list[DeferredOperation]:
        """Claim ready operations using FOR UPDATE SKIP LOCKED.

        Ordered by priority (lower first) then age. Claimed rows move to
        processing with attempts incremented, so a concurrent worker never
        sees them.
        """
        query = """
            WITH cte AS (
                SELECT id FROM deferred_operations
                WHERE status = 'queued' AND not_before <= now()
                ORDER BY priority, created_at
                FOR UPDATE SKIP LOCKED
                LIMIT $2
            )
            UPDATE deferred_operations d SET
                status = 'processing',
                locked_by = $1,
                attempts = d.attempts + 1
            FROM cte
            WHERE d.id = cte.id
            RETURNING d.*
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, worker_id, limit)

        operations = [self._row_to_operation(row) for row in rows]
        # UPDATE ... RETURNING does not preserve the CTE order
        operations.sort(key=lambda op: (op.priority, op.created_at))
        if operations:
            logger.info(
                "deferred_operations_claimed",
                worker_id=worker_id,
                count=len(operations),
            )
        return operations

    async def get(self, operation_id: UUID) -> Optional[DeferredOperation]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM deferred_operations WHERE id = $1", operation_id
            )
        return self._row_to_operation(row) if row else None

    async def complete(
        self, operation_id: UUID, result: dict[str, Any]
    ) -> Optional[DeferredOperation]:
        query = """
            UPDATE deferred_operations SET
                status = 'completed',
                result = $2::jsonb,
                processed_at = now(),
                locked_by = NULL
            WHERE id = $1 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, operation_id, to_jsonb(result))
        return self._row_to_operation(row) if row else None

    async def reschedule(
        self,
        operation_id: UUID,
        not_before: datetime,
        error: Optional[str] = None,
        consume_attempt: bool = True,
    ) -> Optional[DeferredOperation]:
        """Put a processing operation back in the queue.

        With ``consume_attempt=False`` the claim's attempt increment is undone
        (used when the window is still throttled and nothing was sent).
        """
        query = """
            UPDATE deferred_operations SET
                status = 'queued',
                not_before = $2,
                error = COALESCE($3, error),
                attempts = CASE WHEN $4 THEN attempts ELSE GREATEST(attempts - 1, 0) END,
                locked_by = NULL
            WHERE id = $1 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, operation_id, not_before, error, consume_attempt
            )
        return self._row_to_operation(row) if row else None

    async def mark_failed(
        self, operation_id: UUID, error: str
    ) -> Optional[DeferredOperation]:
        query = """
            UPDATE deferred_operations SET
                status = 'failed',
                error = $2,
                processed_at = now(),
                locked_by = NULL
            WHERE id = $1 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, operation_id, error)
        return self._row_to_operation(row) if row else None

    async def cancel(
        self, operation_id: UUID, reason: Optional[str] = None
    ) -> Optional[DeferredOperation]:
        query = """
            UPDATE deferred_operations SET
                status = 'cancelled',
                error = COALESCE($2, error),
                processed_at = now(),
                locked_by = NULL
            WHERE id = $1 AND status IN ('queued', 'processing')
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, operation_id, reason)
        return self._row_to_operation(row) if row else None

    async def cancel_for_job(self, job_id: UUID, reason: str) -> int:
        """Cancel every queued (not yet claimed) operation of a job."""
        query = """
            UPDATE deferred_operations SET
                status = 'cancelled',
                error = $2,
                processed_at = now()
            WHERE job_id = $1 AND status = 'queued'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id, reason)
        if rows:
            logger.info("deferred_operations_cancelled", job_id=str(job_id), count=len(rows))
        return len(rows)

    async def active_slot_ids(self, job_id: UUID) -> set[UUID]:
        """Slots that currently have a queued or processing operation."""
        query = """
            SELECT slot_id FROM deferred_operations
            WHERE job_id = $1 AND slot_id IS NOT NULL
              AND status IN ('queued', 'processing')
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id)
        return {row["slot_id"] for row in rows}

    async def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[OperationStatus]] = None,
        limit: int = 100,
    ) -> list[DeferredOperation]:
        params: list[Any] = [user_id]
        status_filter = ""
        if statuses is not None:
            params.append([s.value for s in statuses])
            status_filter = "AND status = ANY($2::text[])"
        params.append(limit)
        query = f"""
            SELECT * FROM deferred_operations
            WHERE user_id = $1 {status_filter}
            ORDER BY priority, created_at
            LIMIT ${len(params)}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_operation(row) for row in rows]

    def _row_to_operation(self, row) -> DeferredOperation:
        return DeferredOperation(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            action_type=ActionType(row["action_type"]),
            payload=ensure_json(row["payload"]) or {},
            status=OperationStatus(row["status"]),
            priority=row["priority"],
            not_before=row["not_before"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            job_id=row["job_id"],
            slot_id=row["slot_id"],
            credential_ciphertext=row["credential_ciphertext"],
            result=ensure_json(row["result"]),
            error=row["error"],
            locked_by=row["locked_by"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )
