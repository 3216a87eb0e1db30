"""Tests for failure record repository."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from app.provisioning.models import FailureRecord
from app.provisioning.types import EntityType, ErrorCategory, FailureStatus
from app.repositories.failures import FailureRecordRepository


def failure_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid4(),
        "user_id": "user-1",
        "job_id": uuid4(),
        "slot_id": uuid4(),
        "entity_type": "ad_set",
        "campaign_id": "120001",
        "campaign_name": "Spring Sale",
        "ad_set_id": None,
        "ad_set_name": "Spring Sale - Ad Set 2",
        "ad_id": None,
        "ad_name": None,
        "failure_reason": "Invalid parameter",
        "user_facing_reason": "Invalid campaign settings: Invalid parameter",
        "error_code": "100",
        "error_category": "entity_fatal",
        "error_payload": '{"code": 100}',
        "status": "permanent_failure",
        "retry_count": 0,
        "strategy_tag": None,
        "metadata": '{"slot_number": 2}',
        "created_at": now,
        "updated_at": now,
        "recovered_at": None,
    }
    row.update(overrides)
    return row


def make_repo(conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    return FailureRecordRepository(mock_pool)


class TestInsert:
    @pytest.mark.asyncio
    async def test_insert_serializes_json_columns(self):
        row = failure_row()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo = make_repo(mock_conn)
        record = FailureRecord(
            id=uuid4(),
            user_id="user-1",
            entity_type=EntityType.AD_SET,
            failure_reason="Invalid parameter",
            user_facing_reason="Invalid campaign settings: Invalid parameter",
            error_category=ErrorCategory.ENTITY_FATAL,
            status=FailureStatus.PERMANENT_FAILURE,
            error_payload={"code": 100},
            metadata={"slot_number": 2},
        )

        saved = await repo.insert(record)

        assert saved.id == row["id"]
        assert saved.error_payload == {"code": 100}
        assert saved.metadata == {"slot_number": 2}
        args = mock_conn.fetchrow.call_args.args
        assert args[4] == "ad_set"
        assert args[14] == "entity_fatal"
        assert json.loads(args[15]) == {"code": 100}
        assert args[16] == "permanent_failure"


class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_mark_retrying_only_from_failed(self):
        row = failure_row(status="retrying", retry_count=1)
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo = make_repo(mock_conn)

        record = await repo.mark_retrying(row["id"])

        assert record.status is FailureStatus.RETRYING
        assert record.retry_count == 1
        query, _, sources = mock_conn.fetchrow.call_args.args
        assert "retry_count = retry_count + 1" in query
        assert sources == ["failed"]

    @pytest.mark.asyncio
    async def test_mark_recovered_only_from_retrying(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo = make_repo(mock_conn)

        assert await repo.mark_recovered(uuid4()) is None
        assert mock_conn.fetchrow.call_args.args[2] == ["retrying"]

    @pytest.mark.asyncio
    async def test_mark_permanent_sources(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo = make_repo(mock_conn)

        await repo.mark_permanent(uuid4(), "gave up")

        args = mock_conn.fetchrow.call_args.args
        assert sorted(args[2]) == ["failed", "retrying"]
        assert args[3] == "gave up"


class TestQueries:
    @pytest.mark.asyncio
    async def test_stats_fills_missing_statuses(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(
            return_value=[
                {"status": "failed", "total": 4},
                {"status": "recovered", "total": 1},
            ]
        )
        repo = make_repo(mock_conn)

        stats = await repo.stats("user-1")

        assert stats == {
            "failed": 4,
            "retrying": 0,
            "recovered": 1,
            "permanent_failure": 0,
        }

    @pytest.mark.asyncio
    async def test_list_by_user_filters(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[failure_row()])
        repo = make_repo(mock_conn)

        records = await repo.list_by_user(
            "user-1", status=FailureStatus.FAILED, entity_type=EntityType.AD, limit=10
        )

        assert len(records) == 1
        query, *params = mock_conn.fetch.call_args.args
        assert "status = $2" in query
        assert "entity_type = $3" in query
        assert "LIMIT $4" in query
        assert params == ["user-1", "failed", "ad", 10]
