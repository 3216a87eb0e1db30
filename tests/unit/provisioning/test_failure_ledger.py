"""Tests for the failure ledger."""

from uuid import uuid4

import pytest

from app.provisioning.transitions import InvalidTransitionError
from app.provisioning.types import EntityType, ErrorCategory, FailureStatus
from app.services.platform.errors import (
    PlatformAPIError,
    PlatformRateLimitError,
    PlatformTimeoutError,
)
from app.services.provisioning.failure_ledger import FailureContext, FailureLedger
from tests.unit.provisioning.fakes import FakeFailureStore


def context(**overrides) -> FailureContext:
    values = dict(
        user_id="user-1",
        entity_type=EntityType.AD_SET,
        job_id=uuid4(),
        slot_id=uuid4(),
        campaign_id="120001",
        campaign_name="Spring Sale",
        ad_set_name="Spring Sale - Ad Set 3",
        strategy_tag="prospecting",
        metadata={"slot_number": 3},
    )
    values.update(overrides)
    return FailureContext(**values)


@pytest.fixture
def store():
    return FakeFailureStore()


@pytest.fixture
def ledger(store):
    return FailureLedger(store, retry_ceiling=2)


class TestRecord:
    @pytest.mark.asyncio
    async def test_transient_error_is_open_for_retry(self, ledger):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))

        assert record.status is FailureStatus.FAILED
        assert record.error_category is ErrorCategory.TRANSIENT
        assert record.retry_count == 0
        assert record.metadata == {"slot_number": 3, "reason": "network"}
        assert record.strategy_tag == "prospecting"

    @pytest.mark.asyncio
    async def test_entity_fatal_error_is_permanent_immediately(self, ledger):
        error = PlatformAPIError(
            "Invalid parameter: daily budget too low", code=100, status_code=400
        )

        record = await ledger.record(context(), error)

        assert record.status is FailureStatus.PERMANENT_FAILURE
        assert record.error_category is ErrorCategory.ENTITY_FATAL
        assert record.error_code == "100"
        assert record.metadata["reason"] == "budget"
        assert record.error_payload["code"] == 100
        assert "Budget settings are invalid" in record.user_facing_reason

    @pytest.mark.asyncio
    async def test_record_keeps_entity_context(self, ledger):
        ctx = context()

        record = await ledger.record(ctx, PlatformRateLimitError("limit reached", code=17))

        assert record.job_id == ctx.job_id
        assert record.slot_id == ctx.slot_id
        assert record.campaign_id == "120001"
        assert record.ad_set_name == "Spring Sale - Ad Set 3"


class TestRetryLifecycle:
    @pytest.mark.asyncio
    async def test_retry_then_recover(self, ledger):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))

        retrying = await ledger.mark_retrying(record)
        recovered = await ledger.mark_recovered(retrying)

        assert retrying.retry_count == 1
        assert recovered.status is FailureStatus.RECOVERED
        assert recovered.retry_count == 1
        assert recovered.recovered_at is not None

    @pytest.mark.asyncio
    async def test_failed_again_returns_to_failed_with_latest_error(self, ledger):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        retrying = await ledger.mark_retrying(record)

        again = await ledger.mark_failed_again(
            retrying, PlatformAPIError("Please retry", code=2, status_code=500)
        )

        assert again.status is FailureStatus.FAILED
        assert again.failure_reason == "Please retry"
        assert again.error_code == "2"

    @pytest.mark.asyncio
    async def test_ceiling_makes_failure_permanent(self, ledger):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        for _ in range(3):
            record = await ledger.mark_retrying(record)
            record = await ledger.mark_failed_again(record, PlatformTimeoutError("again"))

        assert record.retry_count == 3
        assert record.status is FailureStatus.PERMANENT_FAILURE

    @pytest.mark.asyncio
    async def test_fatal_error_on_retry_is_permanent(self, ledger):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        retrying = await ledger.mark_retrying(record)

        result = await ledger.mark_failed_again(
            retrying, PlatformAPIError("Permissions error", code=200)
        )

        assert result.status is FailureStatus.PERMANENT_FAILURE
        assert result.failure_reason == "Permissions error"

    @pytest.mark.asyncio
    async def test_recovered_record_never_changes(self, ledger, store):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        recovered = await ledger.mark_recovered(await ledger.mark_retrying(record))

        with pytest.raises(InvalidTransitionError):
            await ledger.mark_retrying(recovered)
        assert store.rows[record.id].retry_count == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_is_rejected_by_store(self, ledger, store):
        record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        await ledger.mark_retrying(record)

        # ``record`` still says failed; the row is already retrying
        with pytest.raises(InvalidTransitionError) as exc_info:
            await ledger.mark_retrying(record)

        assert exc_info.value.from_status is FailureStatus.RETRYING
        assert store.rows[record.id].retry_count == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_pending_and_stats(self, ledger):
        open_record = await ledger.record(context(), PlatformTimeoutError("timed out"))
        await ledger.record(context(), PlatformAPIError("Invalid parameter", code=100))

        pending = await ledger.list_pending("user-1")
        stats = await ledger.stats("user-1")

        assert [r.id for r in pending] == [open_record.id]
        assert stats == {
            "failed": 1,
            "retrying": 0,
            "recovered": 0,
            "permanent_failure": 1,
        }

    @pytest.mark.asyncio
    async def test_list_by_user_filters(self, ledger):
        await ledger.record(context(), PlatformTimeoutError("timed out"))
        await ledger.record(
            context(entity_type=EntityType.AD), PlatformTimeoutError("timed out")
        )
        await ledger.record(context(user_id="user-2"), PlatformTimeoutError("timed out"))

        ads = await ledger.list_by_user("user-1", entity_type=EntityType.AD)
        everything = await ledger.list_by_user("user-1")

        assert len(ads) == 1
        assert len(everything) == 2
