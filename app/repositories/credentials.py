"""Platform credential store backed by the platform_credentials table."""

from typing import Optional

import structlog

from app.services.provisioning.crypto import CredentialCipher, associated_data

logger = structlog.get_logger(__name__)


class CredentialNotFoundError(Exception):
    """No stored token for this user and account."""

    def __init__(self, user_id: str, account_id: str):
        self.user_id = user_id
        self.account_id = account_id
        super().__init__(f"No platform credential for user {user_id} on account {account_id}")


class PlatformCredentialRepository:
    """Stores access tokens encrypted, decodes them on read.

    The cipher boundary sits here: rows only ever hold envelopes.
    """

    def __init__(self, pool, cipher: CredentialCipher):
        self._pool = pool
        self._cipher = cipher

    async def get_token(self, user_id: str, account_id: str) -> str:
        query = """
            SELECT token_ciphertext FROM platform_credentials
            WHERE user_id = $1 AND account_id = $2
        """
        async with self._pool.acquire() as conn:
            envelope: Optional[str] = await conn.fetchval(query, user_id, account_id)
        if envelope is None:
            raise CredentialNotFoundError(user_id, account_id)
        return self._cipher.decode_credential(envelope, associated_data(user_id, account_id))

    async def save_token(self, user_id: str, account_id: str, token: str) -> None:
        envelope = self._cipher.encode_credential(token, associated_data(user_id, account_id))
        query = """
            INSERT INTO platform_credentials (user_id, account_id, token_ciphertext, updated_at)
            VALUES ($1, $2, $3, now())
            ON CONFLICT (user_id, account_id) DO UPDATE SET
                token_ciphertext = EXCLUDED.token_ciphertext,
                updated_at = now()
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, user_id, account_id, envelope)
        logger.info("platform_credential_saved", user_id=user_id, account_id=account_id)
