"""Preflight verification run before any mutating platform call.

Checks run in order: credential, account status, duplicate campaign name,
campaign count against the account limit. Only the credential and account
checks can short-circuit; a lookup that fails for other reasons becomes a
warning and leaves its field unknown. Every run is persisted as an
immutable VerificationSnapshot.
"""

import time
from typing import Any, Optional, Protocol

import structlog

from app.provisioning.models import VerificationSnapshot
from app.services.platform.errors import PlatformError, simplify_error_message

logger = structlog.get_logger(__name__)

# Platform account_status values
ACCOUNT_ACTIVE = 1
ACCOUNT_DISABLED = 2
ACCOUNT_UNSETTLED = 3
ACCOUNT_PENDING_REVIEW = 7

BLOCKING_ACCOUNT_STATUSES = {
    ACCOUNT_DISABLED: "Ad account is disabled",
    ACCOUNT_UNSETTLED: "Ad account has an unsettled balance",
}


class SnapshotStore(Protocol):
    async def insert(self, snapshot: VerificationSnapshot) -> VerificationSnapshot: ...


class PlatformReader(Protocol):
    async def get_me(self, token: str) -> dict[str, Any]: ...

    async def get_account(self, account_id: str, token: str) -> dict[str, Any]: ...

    async def find_campaigns_by_name(
        self, account_id: str, name: str, token: str
    ) -> list[dict[str, Any]]: ...

    async def count_campaigns(self, account_id: str, token: str) -> int: ...


class PreflightVerifier:
    """Fail-fast checks for a creation request."""

    def __init__(
        self,
        platform: PlatformReader,
        store: SnapshotStore,
        entity_limit: int = 5000,
        warning_ratio: float = 0.9,
    ):
        self._platform = platform
        self._store = store
        self._entity_limit = entity_limit
        self._warning_ratio = warning_ratio

    async def verify(
        self,
        user_id: str,
        account_id: str,
        campaign_name: str,
        token: Optional[str],
    ) -> VerificationSnapshot:
        started = time.monotonic()
        snapshot = VerificationSnapshot(
            user_id=user_id,
            account_id=account_id,
            campaign_name=campaign_name,
            can_proceed=False,
            entity_limit=self._entity_limit,
        )
        log = logger.bind(user_id=user_id, account_id=account_id)

        try:
            await self._run_checks(snapshot, token)
            snapshot.can_proceed = not snapshot.errors
        except Exception as e:
            log.exception("preflight_unexpected_error", error=str(e))
            snapshot.errors.append(f"Verification failed unexpectedly: {e}")
            snapshot.can_proceed = False

        snapshot.verification_time_ms = int((time.monotonic() - started) * 1000)
        saved = await self._store.insert(snapshot)
        log.info(
            "preflight_completed",
            can_proceed=saved.can_proceed,
            errors=len(saved.errors),
            warnings=len(saved.warnings),
            verification_time_ms=saved.verification_time_ms,
        )
        return saved

    async def _run_checks(self, snapshot: VerificationSnapshot, token: Optional[str]) -> None:
        if not token:
            snapshot.errors.append("No access token stored for this ad account")
            return

        try:
            await self._platform.get_me(token)
            snapshot.credential_valid = True
        except PlatformError as e:
            snapshot.errors.append(f"Access token is invalid: {simplify_error_message(e.message)}")
            return

        try:
            account = await self._platform.get_account(snapshot.account_id, token)
        except PlatformError as e:
            snapshot.errors.append(
                f"Ad account is not accessible: {simplify_error_message(e.message)}"
            )
            return
        snapshot.account_accessible = True
        self._check_account_status(snapshot, account)
        if snapshot.account_suspended:
            return

        await self._check_duplicate_name(snapshot, token)
        await self._check_entity_limit(snapshot, token)

    def _check_account_status(self, snapshot: VerificationSnapshot, account: dict) -> None:
        status = account.get("account_status")
        snapshot.details["account_status"] = status
        if status in BLOCKING_ACCOUNT_STATUSES:
            snapshot.account_suspended = True
            snapshot.errors.append(BLOCKING_ACCOUNT_STATUSES[status])
        elif status == ACCOUNT_PENDING_REVIEW:
            snapshot.warnings.append("Ad account is pending review")
        elif status != ACCOUNT_ACTIVE:
            snapshot.warnings.append(f"Ad account has unrecognised status {status}")

    async def _check_duplicate_name(self, snapshot: VerificationSnapshot, token: str) -> None:
        try:
            matches = await self._platform.find_campaigns_by_name(
                snapshot.account_id, snapshot.campaign_name, token
            )
        except PlatformError as e:
            snapshot.warnings.append(
                f"Could not check for duplicate campaign names: {simplify_error_message(e.message)}"
            )
            return
        snapshot.duplicate_name_exists = bool(matches)
        if matches:
            snapshot.details["duplicate_campaign_id"] = matches[0].get("id")
            snapshot.errors.append(
                f"A campaign named '{snapshot.campaign_name}' already exists in this account"
            )

    async def _check_entity_limit(self, snapshot: VerificationSnapshot, token: str) -> None:
        try:
            count = await self._platform.count_campaigns(snapshot.account_id, token)
        except PlatformError as e:
            snapshot.warnings.append(
                f"Could not check the campaign limit: {simplify_error_message(e.message)}"
            )
            return
        snapshot.current_entity_count = count
        snapshot.at_entity_limit = count >= self._entity_limit
        if snapshot.at_entity_limit:
            snapshot.errors.append(
                f"Account is at the campaign limit ({count}/{self._entity_limit})"
            )
        elif count >= self._entity_limit * self._warning_ratio:
            snapshot.warnings.append(
                f"Account is close to the campaign limit ({count}/{self._entity_limit})"
            )
