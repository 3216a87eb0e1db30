"""Slot allocation and slot state changes for a creation job."""

from typing import Iterable, Optional, Protocol
from uuid import UUID

from app.provisioning.models import EntityProgress, EntitySlot
from app.provisioning.types import EntityType, SlotStatus


class SlotStore(Protocol):
    async def allocate(
        self, job_id: UUID, counts: dict[EntityType, int], conn=None
    ) -> list[EntitySlot]: ...

    async def get(self, slot_id: UUID) -> Optional[EntitySlot]: ...

    async def claim(self, slot_id: UUID) -> Optional[EntitySlot]: ...

    async def complete(
        self, slot_id: UUID, external_id: str, entity_name: Optional[str]
    ) -> Optional[EntitySlot]: ...

    async def fail(
        self, slot_id: UUID, error: str, failure_record_id: Optional[UUID] = None
    ) -> Optional[EntitySlot]: ...

    async def rollback(self, slot_ids: Iterable[UUID]) -> int: ...

    async def list_by_job(
        self,
        job_id: UUID,
        statuses: Optional[Iterable[SlotStatus]] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[EntitySlot]: ...

    async def count_by_status(
        self, job_id: UUID
    ) -> dict[tuple[EntityType, SlotStatus], int]: ...


class SlotAllocator:
    """Reserves one slot per requested entity and guards every slot move.

    Slot numbers are 1-based and unique per (job, entity type). A slot is
    only ever sent to the platform after ``claim`` moved it to creating,
    which is what keeps creation at most once per slot.
    """

    def __init__(self, store: SlotStore):
        self._store = store

    async def allocate(
        self, job_id: UUID, ad_set_count: int, ad_count: int, conn=None
    ) -> list[EntitySlot]:
        if ad_set_count < 1:
            raise ValueError("ad_set_count must be at least 1")
        if ad_count < 0:
            raise ValueError("ad_count must not be negative")
        counts = {
            EntityType.CAMPAIGN: 1,
            EntityType.AD_SET: ad_set_count,
            EntityType.AD: ad_count,
        }
        return await self._store.allocate(job_id, counts, conn=conn)

    async def get(self, slot_id: UUID) -> Optional[EntitySlot]:
        return await self._store.get(slot_id)

    async def claim(self, slot_id: UUID) -> Optional[EntitySlot]:
        return await self._store.claim(slot_id)

    async def complete(
        self, slot_id: UUID, external_id: str, entity_name: Optional[str] = None
    ) -> Optional[EntitySlot]:
        return await self._store.complete(slot_id, external_id, entity_name)

    async def fail(
        self, slot_id: UUID, error: str, failure_record_id: Optional[UUID] = None
    ) -> Optional[EntitySlot]:
        return await self._store.fail(slot_id, error, failure_record_id)

    async def rollback(self, slot_ids: Iterable[UUID]) -> int:
        return await self._store.rollback(slot_ids)

    async def list_slots(
        self,
        job_id: UUID,
        statuses: Optional[Iterable[SlotStatus]] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[EntitySlot]:
        return await self._store.list_by_job(job_id, statuses, entity_type)

    async def progress(
        self, job_id: UUID, requested: dict[EntityType, int]
    ) -> dict[EntityType, EntityProgress]:
        """Per-type slot counts for the status endpoint."""
        counts = await self._store.count_by_status(job_id)
        result = {}
        for entity_type in EntityType.creation_order():
            def count(status: SlotStatus) -> int:
                return counts.get((entity_type, status), 0)

            result[entity_type] = EntityProgress(
                requested=requested.get(entity_type, 0),
                created=count(SlotStatus.CREATED),
                pending=count(SlotStatus.PENDING),
                failed=count(SlotStatus.FAILED),
                creating=count(SlotStatus.CREATING),
                rolled_back=count(SlotStatus.ROLLED_BACK),
            )
        return result
