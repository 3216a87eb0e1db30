"""End-to-end provisioning scenarios against in-memory stores."""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from app.provisioning.models import RateLimitWindow
from app.provisioning.registry import ActionRegistry
from app.provisioning.transitions import InvalidTransitionError
from app.provisioning.types import (
    ActionType,
    EntityType,
    FailureStatus,
    JobStatus,
    OperationStatus,
    SlotStatus,
)
from app.provisioning.worker import DeferredOperationWorker
from app.services.platform.errors import (
    PlatformAPIError,
    PlatformRateLimitError,
    PlatformTimeoutError,
)
from app.services.provisioning.errors import PreflightRejectedError
from tests.unit.provisioning.fakes import ACCOUNT_ID, TOKEN, USER_ID, build_harness


def slot_number(name: str) -> int:
    return int(name.rsplit(" ", 1)[1])


def ad_sets_above(limit: int, first_attempt_only: bool = False):
    def predicate(entity_type, name, attempt):
        if entity_type is not EntityType.AD_SET or slot_number(name) <= limit:
            return False
        return attempt == 1 if first_attempt_only else True

    return predicate


def statuses(harness, job_id, entity_type=None) -> Counter:
    return Counter(s.status for s in harness.slots.for_job(job_id, entity_type))


class TestPartialFailureThenRetry:
    @pytest.mark.asyncio
    async def test_rate_limited_ad_sets_are_retried_without_duplicates(self):
        h = build_harness(retry_budget=1)
        h.platform.fail_when(
            ad_sets_above(40, first_attempt_only=True),
            lambda: PlatformRateLimitError(
                "(#17) User request limit reached", code=17, status_code=400
            ),
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=50))

        job = await h.orchestrator.execute(job.id)

        assert job.status is JobStatus.FAILED
        assert job.ad_sets_created == 40
        assert statuses(h, job.id, EntityType.AD_SET) == {
            SlotStatus.CREATED: 40,
            SlotStatus.FAILED: 10,
        }
        calls_before_retry = len(h.platform.create_calls)

        job, result = await h.orchestrator.retry_failed_slots(job.id, USER_ID)

        retried = h.platform.create_calls[calls_before_retry:]
        assert len(retried) == 10
        assert sorted(slot_number(name) for _, name in retried) == list(range(41, 51))
        assert job.status is JobStatus.COMPLETED
        assert job.ad_sets_created == 50
        assert result.counts["created"] == 10

        names = h.platform.names_created()
        assert len(names) == 51
        assert len(set(names)) == 51

    @pytest.mark.asyncio
    async def test_recovered_failures_are_closed_in_the_ledger(self):
        h = build_harness(retry_budget=1)
        h.platform.fail_when(
            ad_sets_above(1, first_attempt_only=True),
            lambda: PlatformRateLimitError("User request limit reached", code=17),
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=2))
        await h.orchestrator.execute(job.id)

        records = list(h.failures.rows.values())
        assert len(records) == 1
        assert records[0].status is FailureStatus.FAILED

        await h.orchestrator.retry_failed_slots(job.id, USER_ID)

        record = h.failures.rows[records[0].id]
        assert record.status is FailureStatus.RECOVERED
        assert record.retry_count == 1
        assert record.recovered_at is not None


class TestPreflightRejection:
    @pytest.mark.asyncio
    async def test_duplicate_campaign_name_creates_nothing(self, harness):
        harness.platform.campaign_names.add("Spring Sale")

        with pytest.raises(PreflightRejectedError) as exc_info:
            await harness.orchestrator.create_job(harness.request(ad_set_count=3))

        assert harness.jobs.rows == {}
        assert harness.slots.rows == {}
        assert harness.platform.create_calls == []
        assert len(harness.snapshots.rows) == 1
        snapshot = harness.snapshots.rows[0]
        assert snapshot.can_proceed is False
        assert snapshot.duplicate_name_exists is True
        assert exc_info.value.snapshot.id == snapshot.id


class TestAllocation:
    @pytest.mark.asyncio
    async def test_failed_slot_insert_keeps_no_job_or_slots(self, harness):
        existing, _ = await harness.orchestrator.create_job(harness.request(ad_set_count=1))
        harness.slots.fail_allocate_after = 3

        with pytest.raises(ValueError, match="slot insert failed"):
            await harness.orchestrator.create_job(
                harness.request(ad_set_count=4, campaign_name="Summer Sale")
            )

        assert list(harness.jobs.rows) == [existing.id]
        assert {s.job_id for s in harness.slots.rows.values()} == {existing.id}
        assert len(harness.slots.rows) == 2
        assert harness.platform.create_calls == []

    @pytest.mark.asyncio
    async def test_allocation_is_complete_per_type(self, harness):
        job, _ = await harness.orchestrator.create_job(
            harness.request(ad_set_count=3, ad_count=2)
        )

        assert statuses(harness, job.id, EntityType.CAMPAIGN) == {SlotStatus.PENDING: 1}
        assert statuses(harness, job.id, EntityType.AD_SET) == {SlotStatus.PENDING: 3}
        assert statuses(harness, job.id, EntityType.AD) == {SlotStatus.PENDING: 2}


class TestRetryBudgetExhausted:
    @pytest.mark.asyncio
    async def test_job_fails_after_fifth_pass(self):
        h = build_harness(retry_budget=5)
        h.platform.fail_when(
            ad_sets_above(0),
            lambda: PlatformAPIError(
                "Service temporarily unavailable", code=2, status_code=503
            ),
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=50))

        job = await h.orchestrator.execute(job.id)

        assert job.status is JobStatus.FAILED
        assert job.retry_count == 5
        assert job.retries_remaining == 0
        assert statuses(h, job.id, EntityType.AD_SET) == {SlotStatus.FAILED: 50}
        ad_set_calls = [c for c in h.platform.create_calls if c[0] is EntityType.AD_SET]
        assert len(ad_set_calls) == 250

    @pytest.mark.asyncio
    async def test_no_automatic_attempts_after_failure(self):
        h = build_harness(retry_budget=5)
        h.platform.fail_when(
            ad_sets_above(0), lambda: PlatformAPIError("Unexpected error", code=2)
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=50))
        await h.orchestrator.execute(job.id)
        calls = len(h.platform.create_calls)

        again = await h.orchestrator.execute(job.id)

        assert again.status is JobStatus.FAILED
        assert len(h.platform.create_calls) == calls
        assert not any(op.status.is_active for op in h.operations.rows.values())

    @pytest.mark.asyncio
    async def test_ledger_retry_count_stops_at_permanent_failure(self):
        h = build_harness(retry_budget=5, retry_ceiling=3)
        h.platform.fail_when(
            ad_sets_above(0), lambda: PlatformAPIError("Unexpected error", code=2)
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=2))
        await h.orchestrator.execute(job.id)

        for slot in h.slots.for_job(job.id, EntityType.AD_SET):
            records = h.failures.for_slot(slot.id)
            assert len(records) == 1
            assert records[0].status is FailureStatus.PERMANENT_FAILURE
            assert records[0].retry_count == 4

    @pytest.mark.asyncio
    async def test_entity_fatal_errors_stop_retrying_early(self):
        h = build_harness(retry_budget=5)
        h.platform.fail_when(
            ad_sets_above(0),
            lambda: PlatformAPIError("Invalid parameter", code=100, status_code=400),
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=3))

        job = await h.orchestrator.execute(job.id)

        assert job.status is JobStatus.FAILED
        assert job.retry_count == 1
        assert len(h.platform.create_calls) == 1 + 3


class TestConfirmedRollback:
    async def _failed_job(self, h):
        h.platform.fail_when(
            ad_sets_above(29),
            lambda: PlatformAPIError("Invalid parameter", code=100, status_code=400),
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=49))
        job = await h.orchestrator.execute(job.id)
        assert job.status is JobStatus.FAILED
        assert statuses(h, job.id) == {SlotStatus.CREATED: 30, SlotStatus.FAILED: 20}
        return job

    @pytest.mark.asyncio
    async def test_rollback_deletes_created_entities(self):
        h = build_harness()
        job = await self._failed_job(h)
        campaign_id = job.external_campaign_id

        result = await h.orchestrator.rollback(
            job.id, "Campaign no longer needed", confirmed=True, user_id=USER_ID
        )

        assert result.entities_deleted == 30
        assert result.entities_failed == 0
        assert result.slots_rolled_back == 50
        assert result.cleanup_required is False
        assert len(h.platform.delete_calls) == 30
        # Children first, campaign last
        assert h.platform.delete_calls[-1] == campaign_id
        assert h.platform.entities == {}
        assert statuses(h, job.id) == {SlotStatus.ROLLED_BACK: 50}
        rolled_back = h.jobs.rows[job.id]
        assert rolled_back.status is JobStatus.ROLLED_BACK
        assert rolled_back.rollback_reason == "Campaign no longer needed"
        assert rolled_back.rollback_triggered is True

    @pytest.mark.asyncio
    async def test_failed_delete_flags_cleanup_and_queues_retry(self):
        h = build_harness()
        job = await self._failed_job(h)
        h.platform.delete_errors[job.external_campaign_id] = PlatformAPIError(
            "An unexpected error has occurred", code=2, status_code=500
        )

        result = await h.orchestrator.rollback(job.id, "cleanup", confirmed=True)

        assert result.entities_deleted == 29
        assert result.entities_failed == 1
        assert result.cleanup_required is True
        assert result.errors[0]["external_id"] == job.external_campaign_id
        assert h.jobs.rows[job.id].status is JobStatus.ROLLED_BACK
        assert h.jobs.rows[job.id].cleanup_required is True
        deletes = [
            op for op in h.operations.rows.values()
            if op.action_type is ActionType.DELETE_ENTITY
        ]
        assert len(deletes) == 1
        assert deletes[0].payload["external_id"] == job.external_campaign_id

    @pytest.mark.asyncio
    async def test_rolled_back_job_cannot_roll_back_again(self):
        h = build_harness()
        job = await self._failed_job(h)
        await h.orchestrator.rollback(job.id, "cleanup", confirmed=True)

        with pytest.raises(InvalidTransitionError):
            await h.orchestrator.rollback(job.id, "cleanup", confirmed=True)


class TestAtMostOnceCreation:
    @pytest.mark.asyncio
    async def test_two_runners_never_duplicate_an_entity(self):
        h = build_harness(yield_on_call=True)
        other = h.share()
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=20))

        await asyncio.gather(h.orchestrator.execute(job.id), other.execute(job.id))

        names = [name for _, name in h.platform.create_calls]
        assert len(names) == 21
        assert len(set(names)) == 21
        final = h.jobs.rows[job.id]
        assert final.status is JobStatus.COMPLETED
        assert final.ad_sets_created == 20

    @pytest.mark.asyncio
    async def test_rollback_waits_for_in_flight_slot(self):
        h = build_harness()
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=3))
        rollbacks = []

        async def rollback_mid_flight(entity_type, params):
            if entity_type is EntityType.AD_SET and not rollbacks:
                rollbacks.append(
                    asyncio.create_task(
                        h.orchestrator.rollback(job.id, "user cancelled", confirmed=True)
                    )
                )
                for _ in range(5):
                    await asyncio.sleep(0)

        h.platform.on_create = rollback_mid_flight

        await h.orchestrator.execute(job.id)
        result = await rollbacks[0]

        assert h.jobs.rows[job.id].status is JobStatus.ROLLED_BACK
        assert h.jobs.rows[job.id].cleanup_required is False
        assert result.slots_in_flight == 0
        assert result.cleanup_required is False
        # The in-flight ad set settled as created and was deleted by the rollback
        assert result.entities_deleted == 4
        assert h.platform.entities == {}
        assert statuses(h, job.id) == {SlotStatus.ROLLED_BACK: 4}

    @pytest.mark.asyncio
    async def test_entity_created_after_rollback_is_deleted(self):
        h = build_harness(rollback_settle_timeout_seconds=0.0)
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=3))
        rollbacks = []

        async def rollback_mid_flight(entity_type, params):
            if entity_type is EntityType.AD_SET and not rollbacks:
                result = await h.orchestrator.rollback(job.id, "user cancelled", confirmed=True)
                creating = statuses(h, job.id)[SlotStatus.CREATING]
                rollbacks.append((result, creating))

        h.platform.on_create = rollback_mid_flight

        await h.orchestrator.execute(job.id)

        ((result, creating),) = rollbacks
        assert creating == 1
        assert result.slots_in_flight == 1
        assert result.cleanup_required is True
        assert h.jobs.rows[job.id].status is JobStatus.ROLLED_BACK
        assert h.jobs.rows[job.id].cleanup_required is True
        # Campaign deleted by the rollback, the in-flight ad set by compensation
        assert h.platform.entities == {}
        ad_set_calls = [c for c in h.platform.create_calls if c[0] is EntityType.AD_SET]
        assert len(ad_set_calls) == 1
        assert statuses(h, job.id) == {SlotStatus.ROLLED_BACK: 4}

    @pytest.mark.asyncio
    async def test_in_flight_failure_after_rollback_is_rolled_back(self):
        h = build_harness(rollback_settle_timeout_seconds=0.0)
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=2))

        async def rollback_then_time_out(entity_type, params):
            if entity_type is EntityType.AD_SET:
                h.platform.on_create = None
                await h.orchestrator.rollback(job.id, "user cancelled", confirmed=True)
                raise PlatformTimeoutError("Request timed out")

        h.platform.on_create = rollback_then_time_out

        await h.orchestrator.execute(job.id)

        assert h.jobs.rows[job.id].status is JobStatus.ROLLED_BACK
        assert statuses(h, job.id) == {SlotStatus.ROLLED_BACK: 3}
        (record,) = h.failures.rows.values()
        assert record.entity_type is EntityType.AD_SET


class TestDeferredCreation:
    @pytest.mark.asyncio
    async def test_soft_threshold_defers_then_worker_resumes_job(self, harness):
        h = harness
        reset_at = datetime.now(timezone.utc) + timedelta(minutes=30)
        await h.windows.upsert(
            RateLimitWindow(
                user_id=USER_ID,
                account_id=ACCOUNT_ID,
                calls_used=170,
                usage_percentage=85.0,
                window_reset_at=reset_at,
            )
        )
        job, _ = await h.orchestrator.create_job(h.request(ad_set_count=2))

        job = await h.orchestrator.execute(job.id)

        assert job.status is JobStatus.IN_PROGRESS
        assert h.platform.create_calls == []
        (operation,) = h.operations.rows.values()
        assert operation.action_type is ActionType.CREATE_CAMPAIGN
        assert operation.not_before == reset_at
        assert operation.credential_ciphertext.startswith("v1:")
        assert h.queue.decode_credential(operation) == TOKEN

        # Window resets and the operation becomes due
        await h.windows.upsert(
            RateLimitWindow(user_id=USER_ID, account_id=ACCOUNT_ID, usage_percentage=5.0)
        )
        h.operations.rows[operation.id].not_before = datetime.now(timezone.utc)
        worker = DeferredOperationWorker(
            h.queue,
            ActionRegistry(h.orchestrator.action_handlers()),
            worker_id="test-worker",
            on_settled=h.orchestrator.resume_after_deferred,
        )

        processed = await worker.run_once()
        await asyncio.gather(*list(worker._background))

        assert processed == 1
        assert h.operations.rows[operation.id].status is OperationStatus.COMPLETED
        final = h.jobs.rows[job.id]
        assert final.status is JobStatus.COMPLETED
        assert final.ad_sets_created == 2
        assert len(h.platform.create_calls) == 3
