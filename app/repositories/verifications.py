"""Repository for preflight verification snapshots (insert only)."""

from dataclasses import replace

from app.provisioning.models import VerificationSnapshot
from app.repositories.utils import to_jsonb


class VerificationRepository:
    """Immutable audit trail of preflight checks."""

    def __init__(self, pool):
        self._pool = pool

    async def insert(self, snapshot: VerificationSnapshot) -> VerificationSnapshot:
        query = """
            INSERT INTO verification_snapshots (
                user_id, account_id, campaign_name, can_proceed,
                verification_time_ms, account_accessible, account_suspended,
                duplicate_name_exists, at_entity_limit, credential_valid,
                warnings, errors, current_entity_count, entity_limit, details
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11::jsonb, $12::jsonb, $13, $14, $15::jsonb)
            RETURNING id, created_at
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                snapshot.user_id,
                snapshot.account_id,
                snapshot.campaign_name,
                snapshot.can_proceed,
                snapshot.verification_time_ms,
                snapshot.account_accessible,
                snapshot.account_suspended,
                snapshot.duplicate_name_exists,
                snapshot.at_entity_limit,
                snapshot.credential_valid,
                to_jsonb(snapshot.warnings),
                to_jsonb(snapshot.errors),
                snapshot.current_entity_count,
                snapshot.entity_limit,
                to_jsonb(snapshot.details),
            )
        return replace(snapshot, id=row["id"], created_at=row["created_at"])
