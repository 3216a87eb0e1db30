"""Repository for entity slot reservations."""

from typing import Any, Iterable, Optional
from uuid import UUID

import structlog

from app.provisioning.models import EntitySlot
from app.provisioning.transitions import SLOT_TRANSITIONS, sources_for
from app.provisioning.types import EntityType, SlotStatus
from app.repositories.utils import acquire

logger = structlog.get_logger(__name__)

# Campaign first, then ad sets, then ads; slot number within a type
_ORDER_BY = (
    "array_position(ARRAY['campaign','ad_set','ad']::text[], entity_type), slot_number"
)


def _sources(target: SlotStatus) -> list[str]:
    return [s.value for s in sources_for(SLOT_TRANSITIONS, target)]


class SlotRepository:
    """Repository for entity slots.

    ``claim``, ``complete`` and ``fail`` are compare-and-set updates: they
    only succeed when the row is still in an allowed prior status and return
    None otherwise. Zero rows from ``claim`` means another attempt already
    owns (or finished) the slot.
    """

    def __init__(self, pool):
        self._pool = pool

    async def allocate(
        self, job_id: UUID, counts: dict[EntityType, int], conn=None
    ) -> list[EntitySlot]:
        """Insert ``count`` pending slots numbered 1..count per entity type.

        Runs inside one transaction: either every slot exists or none does.
        """
        records = [
            (job_id, number, entity_type.value)
            for entity_type in EntityType.creation_order()
            for number in range(1, counts.get(entity_type, 0) + 1)
        ]
        insert = """
            INSERT INTO creation_slots (job_id, slot_number, entity_type)
            VALUES ($1, $2, $3)
        """
        select = f"SELECT * FROM creation_slots WHERE job_id = $1 ORDER BY {_ORDER_BY}"

        async with acquire(self._pool, conn) as c:
            async with c.transaction():
                await c.executemany(insert, records)
                rows = await c.fetch(select, job_id)

        logger.info("slots_allocated", job_id=str(job_id), count=len(records))
        return [self._row_to_slot(row) for row in rows]

    async def get(self, slot_id: UUID) -> Optional[EntitySlot]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM creation_slots WHERE id = $1", slot_id)
        return self._row_to_slot(row) if row else None

    async def claim(self, slot_id: UUID) -> Optional[EntitySlot]:
        """Move a pending or failed slot to creating. None if already claimed."""
        query = """
            UPDATE creation_slots SET
                status = 'creating',
                creation_started_at = now(),
                retry_count = retry_count + CASE WHEN status = 'failed' THEN 1 ELSE 0 END,
                error_message = NULL
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, slot_id, _sources(SlotStatus.CREATING))
        if row is None:
            logger.info("slot_claim_rejected", slot_id=str(slot_id))
            return None
        return self._row_to_slot(row)

    async def complete(
        self, slot_id: UUID, external_id: str, entity_name: Optional[str]
    ) -> Optional[EntitySlot]:
        """Bind the external identity. Only a creating slot can complete."""
        query = """
            UPDATE creation_slots SET
                status = 'created',
                external_id = $2,
                entity_name = $3,
                creation_completed_at = now()
            WHERE id = $1 AND status = 'creating'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, slot_id, external_id, entity_name)
        return self._row_to_slot(row) if row else None

    async def fail(
        self,
        slot_id: UUID,
        error: str,
        failure_record_id: Optional[UUID] = None,
    ) -> Optional[EntitySlot]:
        query = """
            UPDATE creation_slots SET
                status = 'failed',
                error_message = $2,
                failure_record_id = COALESCE($3, failure_record_id),
                creation_completed_at = now()
            WHERE id = $1 AND status = 'creating'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, slot_id, error, failure_record_id)
        return self._row_to_slot(row) if row else None

    async def rollback(self, slot_ids: Iterable[UUID]) -> int:
        """Mark slots rolled_back. Returns the number of rows changed."""
        ids = list(slot_ids)
        if not ids:
            return 0
        query = """
            UPDATE creation_slots SET status = 'rolled_back'
            WHERE id = ANY($1::uuid[]) AND status = ANY($2::text[])
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, ids, _sources(SlotStatus.ROLLED_BACK))
        return len(rows)

    async def list_by_job(
        self,
        job_id: UUID,
        statuses: Optional[Iterable[SlotStatus]] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[EntitySlot]:
        conditions = ["job_id = $1"]
        params: list[Any] = [job_id]
        if statuses is not None:
            params.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(params)}::text[])")
        if entity_type is not None:
            params.append(entity_type.value)
            conditions.append(f"entity_type = ${len(params)}")

        query = f"""
            SELECT * FROM creation_slots
            WHERE {" AND ".join(conditions)}
            ORDER BY {_ORDER_BY}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_slot(row) for row in rows]

    async def count_by_status(
        self, job_id: UUID
    ) -> dict[tuple[EntityType, SlotStatus], int]:
        query = """
            SELECT entity_type, status, COUNT(*) AS total
            FROM creation_slots
            WHERE job_id = $1
            GROUP BY entity_type, status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id)
        return {
            (EntityType(row["entity_type"]), SlotStatus(row["status"])): row["total"]
            for row in rows
        }

    def _row_to_slot(self, row) -> EntitySlot:
        return EntitySlot(
            id=row["id"],
            job_id=row["job_id"],
            slot_number=row["slot_number"],
            entity_type=EntityType(row["entity_type"]),
            status=SlotStatus(row["status"]),
            external_id=row["external_id"],
            entity_name=row["entity_name"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            failure_record_id=row["failure_record_id"],
            creation_started_at=row["creation_started_at"],
            creation_completed_at=row["creation_completed_at"],
            created_at=row["created_at"],
        )
