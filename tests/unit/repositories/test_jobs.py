"""Tests for creation job repository."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from app.provisioning.types import EntityType, JobStatus
from app.repositories.jobs import JobRepository


def job_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid4(),
        "user_id": "user-1",
        "account_id": "act_1",
        "campaign_name": "Spring Sale",
        "requested_ad_sets": 3,
        "requested_ads": 6,
        "status": JobStatus.PENDING.value,
        "ad_sets_created": 0,
        "ads_created": 0,
        "external_campaign_id": None,
        "retry_count": 0,
        "retry_budget": 5,
        "last_error": None,
        "error_history": "[]",
        "last_retry_at": None,
        "rollback_triggered": False,
        "rollback_reason": None,
        "rollback_at": None,
        "cleanup_required": False,
        "verification_id": None,
        "request_payload": '{"campaign": {"objective": "OUTCOME_SALES"}}',
        "created_at": now,
        "started_at": None,
        "completed_at": None,
    }
    row.update(overrides)
    return row


def make_repo(conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    return JobRepository(mock_pool), mock_pool


class TestJobRepository:
    def test_repository_creation(self):
        mock_pool = MagicMock()
        repo = JobRepository(mock_pool)
        assert repo._pool == mock_pool


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_serializes_payload(self):
        row = job_row()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo, _ = make_repo(mock_conn)

        job = await repo.create(
            user_id="user-1",
            account_id="act_1",
            campaign_name="Spring Sale",
            requested_ad_sets=3,
            requested_ads=6,
            retry_budget=5,
            request_payload={"campaign": {"objective": "OUTCOME_SALES"}},
        )

        assert job.id == row["id"]
        assert job.status is JobStatus.PENDING
        assert job.request_payload == {"campaign": {"objective": "OUTCOME_SALES"}}
        assert job.error_history == []
        args = mock_conn.fetchrow.call_args.args
        assert "INSERT INTO creation_jobs" in args[0]
        assert json.loads(args[7]) == {"campaign": {"objective": "OUTCOME_SALES"}}

    @pytest.mark.asyncio
    async def test_create_uses_given_connection(self):
        row = job_row()
        tx_conn = AsyncMock()
        tx_conn.fetchrow = AsyncMock(return_value=row)
        repo, mock_pool = make_repo(AsyncMock())

        await repo.create("user-1", "act_1", "Spring Sale", 3, 6, 5, {}, conn=tx_conn)

        tx_conn.fetchrow.assert_awaited_once()
        mock_pool.acquire.assert_not_called()


class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_mark_started_guards_on_source_statuses(self):
        row = job_row(status=JobStatus.IN_PROGRESS.value)
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo, _ = make_repo(mock_conn)

        job = await repo.mark_started(row["id"])

        assert job.status is JobStatus.IN_PROGRESS
        query, job_id, sources = mock_conn.fetchrow.call_args.args
        assert "status = ANY($2::text[])" in query
        assert job_id == row["id"]
        assert sorted(sources) == ["in_progress", "pending"]

    @pytest.mark.asyncio
    async def test_mark_rolled_back_only_from_failed(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo, _ = make_repo(mock_conn)

        result = await repo.mark_rolled_back(uuid4(), "wrong budget", True)

        assert result is None
        args = mock_conn.fetchrow.call_args.args
        assert args[2] == ["failed"]
        assert args[3] == "wrong budget"
        assert args[4] is True

    @pytest.mark.asyncio
    async def test_mark_failed_keeps_error(self):
        row = job_row(status=JobStatus.FAILED.value, last_error="3 entities failed")
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo, _ = make_repo(mock_conn)

        job = await repo.mark_failed(row["id"], "3 entities failed")

        assert job.status is JobStatus.FAILED
        assert job.last_error == "3 entities failed"
        assert sorted(mock_conn.fetchrow.call_args.args[2]) == ["in_progress", "pending"]

    @pytest.mark.asyncio
    async def test_get_status(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval = AsyncMock(return_value="in_progress")
        repo, _ = make_repo(mock_conn)

        assert await repo.get_status(uuid4()) is JobStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_get_missing_job(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo, _ = make_repo(mock_conn)

        assert await repo.get(uuid4()) is None


class TestCounters:
    @pytest.mark.asyncio
    async def test_campaign_records_external_id(self):
        row = job_row(external_campaign_id="120001")
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo, _ = make_repo(mock_conn)

        job = await repo.increment_created(row["id"], EntityType.CAMPAIGN, "120001")

        assert job.external_campaign_id == "120001"
        assert mock_conn.fetchrow.call_args.args[2] == "120001"

    @pytest.mark.asyncio
    async def test_ad_set_counter_is_capped(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo, _ = make_repo(mock_conn)

        result = await repo.increment_created(uuid4(), EntityType.AD_SET)

        assert result is None
        assert "ad_sets_created < requested_ad_sets" in mock_conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_append_error(self):
        mock_conn = AsyncMock()
        repo, _ = make_repo(mock_conn)
        entry = {"error": "Invalid parameter", "category": "entity_fatal"}

        await repo.append_error(uuid4(), entry)

        args = mock_conn.execute.call_args.args
        assert "jsonb_build_array" in args[0]
        assert json.loads(args[2]) == entry
        assert args[3] == "Invalid parameter"


class TestListByUser:
    @pytest.mark.asyncio
    async def test_status_filter_builds_placeholders(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[job_row(), job_row()])
        repo, _ = make_repo(mock_conn)

        jobs = await repo.list_by_user("user-1", status=JobStatus.FAILED, limit=10)

        assert len(jobs) == 2
        query, *params = mock_conn.fetch.call_args.args
        assert "status = $2" in query
        assert "LIMIT $3 OFFSET $4" in query
        assert params == ["user-1", "failed", 10, 0]
