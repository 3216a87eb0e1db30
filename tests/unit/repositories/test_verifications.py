"""Tests for verification snapshot and rate-limit window repositories."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from app.provisioning.models import RateLimitWindow, VerificationSnapshot
from app.repositories.rate_limits import RateLimitWindowRepository
from app.repositories.verifications import VerificationRepository

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_pool(conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    return mock_pool


class TestVerificationRepository:
    @pytest.mark.asyncio
    async def test_insert_serializes_lists(self):
        conn = AsyncMock()
        snapshot_id = uuid4()
        conn.fetchrow.return_value = {"id": snapshot_id, "created_at": NOW}
        repo = VerificationRepository(make_pool(conn))
        snapshot = VerificationSnapshot(
            user_id="user-1",
            account_id="act_1",
            campaign_name="Spring Sale",
            can_proceed=False,
            duplicate_name_exists=True,
            errors=["Campaign name 'Spring Sale' already exists"],
            details={"account_status": 1},
        )

        stored = await repo.insert(snapshot)

        assert stored.id == snapshot_id
        assert stored.created_at == NOW
        args = conn.fetchrow.call_args[0]
        assert "INSERT INTO verification_snapshots" in args[0]
        assert args[4] is False
        assert json.loads(args[11]) == []
        assert json.loads(args[12]) == ["Campaign name 'Spring Sale' already exists"]
        assert json.loads(args[15]) == {"account_status": 1}


class TestRateLimitWindowRepository:
    @pytest.mark.asyncio
    async def test_get_missing_window(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = None
        repo = RateLimitWindowRepository(make_pool(conn))

        assert await repo.get("user-1", "act_1") is None

    @pytest.mark.asyncio
    async def test_upsert_is_last_write_wins(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "user_id": "user-1",
            "account_id": "act_1",
            "calls_used": 170.0,
            "calls_allowed": 200,
            "usage_percentage": 85.0,
            "window_reset_at": NOW,
            "last_signal": '{"call_count": 85}',
            "updated_at": NOW,
        }
        repo = RateLimitWindowRepository(make_pool(conn))
        window = RateLimitWindow(
            user_id="user-1",
            account_id="act_1",
            calls_used=170.0,
            usage_percentage=85.0,
            window_reset_at=NOW,
            last_signal={"call_count": 85},
        )

        stored = await repo.upsert(window)

        query = conn.fetchrow.call_args[0][0]
        assert "ON CONFLICT (user_id, account_id) DO UPDATE" in query
        assert json.loads(conn.fetchrow.call_args[0][7]) == {"call_count": 85}
        assert stored.usage_percentage == 85.0
        assert stored.last_signal == {"call_count": 85}
