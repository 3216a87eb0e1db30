"""Durable queue of platform calls deferred until rate-limit capacity returns."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Protocol
from uuid import UUID

import structlog

from app.core.resilience import RetryConfig, calculate_backoff
from app.provisioning.models import DeferredOperation
from app.provisioning.types import ActionType, OperationStatus
from app.services.provisioning.crypto import CredentialCipher, associated_data

logger = structlog.get_logger(__name__)


class OperationStore(Protocol):
    async def enqueue(
        self,
        user_id: str,
        account_id: str,
        action_type: ActionType,
        payload: dict[str, Any],
        credential_ciphertext: str,
        not_before: datetime,
        priority: int = 5,
        max_attempts: int = 3,
        job_id: Optional[UUID] = None,
        slot_id: Optional[UUID] = None,
    ) -> DeferredOperation: ...

    async def claim_ready(self, worker_id: str, limit: int = 10) -> list[DeferredOperation]: ...

    async def complete(
        self, operation_id: UUID, result: dict[str, Any]
    ) -> Optional[DeferredOperation]: ...

    async def reschedule(
        self,
        operation_id: UUID,
        not_before: datetime,
        error: Optional[str] = None,
        consume_attempt: bool = True,
    ) -> Optional[DeferredOperation]: ...

    async def mark_failed(self, operation_id: UUID, error: str) -> Optional[DeferredOperation]: ...

    async def cancel(
        self, operation_id: UUID, reason: Optional[str] = None
    ) -> Optional[DeferredOperation]: ...

    async def cancel_for_job(self, job_id: UUID, reason: str) -> int: ...

    async def active_slot_ids(self, job_id: UUID) -> set[UUID]: ...

    async def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[OperationStatus]] = None,
        limit: int = 100,
    ) -> list[DeferredOperation]: ...


class DeferredOperationQueue:
    """Queue service over the deferred operation store.

    Credentials are encoded on enqueue and only decoded by the worker right
    before the call. A failed attempt is rescheduled with exponential
    backoff (base delay times 2^attempts) until ``max_attempts`` is
    reached, then the operation is marked failed.
    """

    def __init__(
        self,
        store: OperationStore,
        cipher: CredentialCipher,
        max_attempts: int = 3,
        backoff_base_seconds: float = 900.0,
        default_priority: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._cipher = cipher
        self._max_attempts = max_attempts
        self._default_priority = default_priority
        self._backoff = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=backoff_base_seconds,
            max_delay_seconds=backoff_base_seconds * 2 ** max(max_attempts, 1),
            jitter_factor=0.0,
        )
        self._now = clock or (lambda: datetime.now(timezone.utc))

    async def enqueue(
        self,
        user_id: str,
        account_id: str,
        action_type: ActionType,
        payload: dict[str, Any],
        token: str,
        not_before: Optional[datetime] = None,
        priority: Optional[int] = None,
        job_id: Optional[UUID] = None,
        slot_id: Optional[UUID] = None,
    ) -> DeferredOperation:
        envelope = self._cipher.encode_credential(token, associated_data(user_id, account_id))
        operation = await self._store.enqueue(
            user_id=user_id,
            account_id=account_id,
            action_type=action_type,
            payload=payload,
            credential_ciphertext=envelope,
            not_before=not_before or self._now(),
            priority=self._default_priority if priority is None else priority,
            max_attempts=self._max_attempts,
            job_id=job_id,
            slot_id=slot_id,
        )
        logger.info(
            "deferred_operation_enqueued",
            operation_id=str(operation.id),
            action_type=action_type.value,
            job_id=str(job_id) if job_id else None,
            not_before=operation.not_before.isoformat(),
        )
        return operation

    async def dequeue_ready(self, worker_id: str, limit: int = 10) -> list[DeferredOperation]:
        return await self._store.claim_ready(worker_id, limit)

    def decode_credential(self, operation: DeferredOperation) -> str:
        if not operation.credential_ciphertext:
            raise ValueError(f"Operation {operation.id} has no stored credential")
        return self._cipher.decode_credential(
            operation.credential_ciphertext,
            associated_data(operation.user_id, operation.account_id),
        )

    async def complete(
        self, operation: DeferredOperation, result: dict[str, Any]
    ) -> Optional[DeferredOperation]:
        return await self._store.complete(operation.id, result)

    async def reschedule(
        self, operation: DeferredOperation, not_before: datetime, reason: Optional[str] = None
    ) -> Optional[DeferredOperation]:
        """Requeue without using up an attempt (nothing was sent)."""
        return await self._store.reschedule(
            operation.id, not_before, reason, consume_attempt=False
        )

    def backoff_delay(self, attempts: int) -> float:
        return calculate_backoff(attempts, self._backoff)

    async def fail(
        self, operation: DeferredOperation, error: str, retryable: bool = True
    ) -> Optional[DeferredOperation]:
        """Reschedule with backoff while attempts remain, else mark failed."""
        if retryable and operation.attempts < operation.max_attempts:
            delay = self.backoff_delay(operation.attempts)
            logger.info(
                "deferred_operation_backoff",
                operation_id=str(operation.id),
                attempts=operation.attempts,
                delay_seconds=delay,
            )
            return await self._store.reschedule(
                operation.id, self._now() + timedelta(seconds=delay), error
            )
        logger.warning(
            "deferred_operation_failed",
            operation_id=str(operation.id),
            attempts=operation.attempts,
            error=error,
        )
        return await self._store.mark_failed(operation.id, error)

    async def cancel(
        self, operation_id: UUID, reason: Optional[str] = None
    ) -> Optional[DeferredOperation]:
        return await self._store.cancel(operation_id, reason)

    async def cancel_for_job(self, job_id: UUID, reason: str) -> int:
        return await self._store.cancel_for_job(job_id, reason)

    async def active_slot_ids(self, job_id: UUID) -> set[UUID]:
        return await self._store.active_slot_ids(job_id)

    async def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[OperationStatus]] = None,
        limit: int = 100,
    ) -> list[DeferredOperation]:
        return await self._store.list_for_user(user_id, statuses, limit)
