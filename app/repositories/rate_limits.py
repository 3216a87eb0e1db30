"""Repository for per (user, account) rate-limit windows."""

from typing import Optional

from app.provisioning.models import RateLimitWindow
from app.repositories.utils import ensure_json, to_jsonb


class RateLimitWindowRepository:
    """Last-write-wins storage of the latest usage snapshot."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, user_id: str, account_id: str) -> Optional[RateLimitWindow]:
        query = """
            SELECT * FROM rate_limit_windows
            WHERE user_id = $1 AND account_id = $2
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, user_id, account_id)
        return self._row_to_window(row) if row else None

    async def upsert(self, window: RateLimitWindow) -> RateLimitWindow:
        query = """
            INSERT INTO rate_limit_windows (
                user_id, account_id, calls_used, calls_allowed,
                usage_percentage, window_reset_at, last_signal, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, now())
            ON CONFLICT (user_id, account_id) DO UPDATE SET
                calls_used = EXCLUDED.calls_used,
                calls_allowed = EXCLUDED.calls_allowed,
                usage_percentage = EXCLUDED.usage_percentage,
                window_reset_at = EXCLUDED.window_reset_at,
                last_signal = EXCLUDED.last_signal,
                updated_at = now()
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                window.user_id,
                window.account_id,
                window.calls_used,
                window.calls_allowed,
                window.usage_percentage,
                window.window_reset_at,
                to_jsonb(window.last_signal),
            )
        return self._row_to_window(row)

    def _row_to_window(self, row) -> RateLimitWindow:
        return RateLimitWindow(
            user_id=row["user_id"],
            account_id=row["account_id"],
            calls_used=row["calls_used"],
            calls_allowed=row["calls_allowed"],
            usage_percentage=row["usage_percentage"],
            window_reset_at=row["window_reset_at"],
            last_signal=ensure_json(row["last_signal"]),
            updated_at=row["updated_at"],
        )
