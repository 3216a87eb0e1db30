"""Job orchestrator for bulk campaign provisioning.

Drives one creation job from preflight to a terminal status:

    create_job -> execute -> pass (campaign, ad sets, ads) -> _conclude_pass
                                 ^                                 |
                                 +------- retry (within budget) ---+

Each slot is sent to the platform only after its claim succeeded, so a
slot is created at most once no matter how many passes, workers or
manual retries race for it. Slot failures never abort the job; they are
recorded in the failure ledger and the job's error history, and the next
pass re-attempts only the slots that are still failed.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

import sentry_sdk
import structlog

from app.core.resilience import RetryConfig, calculate_backoff
from app.provisioning.models import (
    CreationJob,
    DeferredOperation,
    EntitySlot,
    FailureRecord,
    JobProgress,
    ReconcileResult,
    RollbackResult,
    VerificationSnapshot,
)
from app.provisioning.registry import ActionHandler
from app.provisioning.transitions import (
    JOB_TRANSITIONS,
    SLOT_TRANSITIONS,
    InvalidTransitionError,
    ensure_transition,
    sources_for,
)
from app.provisioning.types import (
    ActionType,
    EntityType,
    ErrorCategory,
    FailureStatus,
    JobStatus,
    SlotStatus,
)
from app.repositories.credentials import CredentialNotFoundError
from app.routers.metrics import (
    observe_platform_call,
    record_job_finished,
    record_preflight,
    record_slot_attempt,
)
from app.services.platform.client import RateLimitSignal
from app.services.platform.errors import (
    PlatformAPIError,
    PlatformError,
    classify_error,
    is_not_found,
    simplify_error_message,
    translate_error,
)
from app.services.provisioning.crypto import CredentialCipherError
from app.services.provisioning.deferred_queue import DeferredOperationQueue
from app.services.provisioning.errors import (
    DeferredAttemptError,
    FailureNotFoundError,
    FailureNotRetryableError,
    InvalidRequestError,
    JobNotFoundError,
    JobNotRetryableError,
    OperationThrottledError,
    PreflightRejectedError,
    RateLimitedError,
    RollbackNotConfirmedError,
)
from app.services.provisioning.failure_ledger import FailureContext, FailureLedger
from app.services.provisioning.preflight import PreflightVerifier
from app.services.provisioning.rate_governor import RateLimitGovernor
from app.services.provisioning.slot_allocator import SlotAllocator

logger = structlog.get_logger(__name__)

JOB = "creation_job"
ROLLBACK_SOURCES = frozenset(sources_for(SLOT_TRANSITIONS, SlotStatus.ROLLED_BACK))


class AttemptOutcome(str, Enum):
    """What happened to one slot during a pass."""

    CREATED = "created"
    FAILED = "failed"
    DEFERRED = "deferred"
    THROTTLED = "throttled"  # left untouched, window has no capacity
    SKIPPED = "skipped"  # claim lost to another attempt
    BLOCKED = "blocked"  # parent entity not created yet
    ORPHANED = "orphaned"  # created after rollback, deleted again
    CANCELLED = "cancelled"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    slot_id: Optional[UUID] = None
    external_id: Optional[str] = None
    category: Optional[ErrorCategory] = None
    error: Optional[str] = None
    failure_id: Optional[UUID] = None


@dataclass
class PassResult:
    """Outcome counts for one pass over a job's slots."""

    pass_number: int
    counts: Counter = field(default_factory=Counter)
    cancelled: bool = False

    def add(self, result: AttemptResult) -> None:
        self.counts[result.outcome.value] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "pass": self.pass_number,
            "pass_cancelled": self.cancelled,
            **{outcome.value: self.counts.get(outcome.value, 0) for outcome in AttemptOutcome},
        }


@dataclass
class OrchestratorConfig:
    retry_budget: int = 5
    max_parallel_attempts: int = 5
    # Delay between automatic passes
    pass_backoff: RetryConfig = field(
        default_factory=lambda: RetryConfig(base_delay_seconds=1.0, max_delay_seconds=60.0)
    )
    # not_before for deferred slots when the window has no reset time
    defer_delay_seconds: float = 3600.0
    # Queue rollback deletes that failed transiently
    enqueue_failed_deletes: bool = True
    # How long rollback waits for in-flight create calls to settle
    rollback_settle_timeout_seconds: float = 30.0
    rollback_settle_interval_seconds: float = 0.5


@dataclass
class CreationRequest:
    """A request for one campaign with ``ad_set_count`` ad sets and ``ad_count`` ads.

    The ``*_params`` dicts are sent to the platform as-is; names and parent
    ids are filled in per slot.
    """

    user_id: str
    account_id: str
    campaign_name: str
    ad_set_count: int
    ad_count: int
    campaign_params: dict[str, Any] = field(default_factory=dict)
    ad_set_params: dict[str, Any] = field(default_factory=dict)
    ad_params: dict[str, Any] = field(default_factory=dict)
    strategy_tag: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            EntityType.CAMPAIGN.value: self.campaign_params,
            EntityType.AD_SET.value: self.ad_set_params,
            EntityType.AD.value: self.ad_params,
            "strategy_tag": self.strategy_tag,
        }


def entity_name(job: CreationJob, slot: EntitySlot) -> str:
    if slot.entity_type is EntityType.CAMPAIGN:
        return job.campaign_name
    if slot.entity_type is EntityType.AD_SET:
        return f"{job.campaign_name} - Ad Set {slot.slot_number}"
    return f"{job.campaign_name} - Ad {slot.slot_number}"


def parent_slot_number(slot_number: int, ad_set_count: int) -> int:
    """Ads are spread round-robin over the job's ad sets."""
    return ((slot_number - 1) % ad_set_count) + 1


class JobOrchestrator:
    """Coordinates preflight, slots, pacing, the deferred queue and the ledger.

    All collaborators are injected; nothing here reaches for module globals.
    """

    def __init__(
        self,
        jobs,
        allocator: SlotAllocator,
        governor: RateLimitGovernor,
        queue: DeferredOperationQueue,
        ledger: FailureLedger,
        preflight: PreflightVerifier,
        platform,
        credentials,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._jobs = jobs
        self._slots = allocator
        self._governor = governor
        self._queue = queue
        self._ledger = ledger
        self._preflight = preflight
        self._platform = platform
        self._credentials = credentials
        self._config = config or OrchestratorConfig()
        self._now = clock or (lambda: datetime.now(timezone.utc))
        # Jobs with a pass loop running in this process
        self._active: set[UUID] = set()

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    @property
    def queue(self) -> DeferredOperationQueue:
        return self._queue

    @property
    def ledger(self) -> FailureLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_job(
        self, request: CreationRequest
    ) -> tuple[CreationJob, VerificationSnapshot]:
        """Run preflight, then insert the job and all of its slots atomically.

        Raises:
            InvalidRequestError: counts out of range
            PreflightRejectedError: preflight found blocking errors (no job row)
        """
        if request.ad_set_count < 1:
            raise InvalidRequestError("At least one ad set is required")
        if request.ad_count < 0:
            raise InvalidRequestError("Ad count must not be negative")

        token = await self._load_token(request.user_id, request.account_id)
        snapshot = await self._preflight.verify(
            request.user_id, request.account_id, request.campaign_name, token
        )
        record_preflight(snapshot.can_proceed)
        if not snapshot.can_proceed:
            raise PreflightRejectedError(snapshot)

        async with self._jobs.transaction() as conn:
            job = await self._jobs.create(
                user_id=request.user_id,
                account_id=request.account_id,
                campaign_name=request.campaign_name,
                requested_ad_sets=request.ad_set_count,
                requested_ads=request.ad_count,
                retry_budget=self._config.retry_budget,
                request_payload=request.to_payload(),
                verification_id=snapshot.id,
                conn=conn,
            )
            await self._slots.allocate(
                job.id, request.ad_set_count, request.ad_count, conn=conn
            )
        return job, snapshot

    async def execute(self, job_id: UUID) -> CreationJob:
        """Move the job to in_progress and run passes until it settles."""
        started = await self._jobs.mark_started(job_id)
        if started is None:
            job = await self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            logger.info("job_execute_skipped", job_id=str(job_id), status=job.status.value)
            return job
        return await self._run_passes(started)

    async def _run_passes(self, job: CreationJob) -> CreationJob:
        log = logger.bind(job_id=str(job.id))
        if job.id in self._active:
            log.info("job_already_running")
            return job

        self._active.add(job.id)
        try:
            try:
                token = await self._credentials.get_token(job.user_id, job.account_id)
            except (CredentialNotFoundError, CredentialCipherError) as e:
                await self._jobs.append_error(
                    job.id,
                    self._history_entry(str(e), category=ErrorCategory.PREFLIGHT_FATAL),
                )
                failed = await self._jobs.mark_failed(job.id, str(e))
                if failed is not None:
                    record_job_finished(JobStatus.FAILED.value)
                return failed or job

            pass_number = job.retry_count + 1
            while True:
                log.info("job_pass_started", pass_number=pass_number)
                with sentry_sdk.start_span(
                    op="provisioning.pass", description=f"Pass {pass_number}"
                ):
                    result = await self._run_pass(job, token, pass_number, JobStatus.IN_PROGRESS)
                log.info("job_pass_finished", **result.to_dict())
                job, run_again = await self._conclude_pass(job.id)
                if not run_again:
                    return job
                delay = calculate_backoff(job.retry_count - 1, self._config.pass_backoff)
                log.info("job_retry_scheduled", retry_count=job.retry_count, delay_seconds=delay)
                await asyncio.sleep(delay)
                pass_number += 1
        finally:
            self._active.discard(job.id)

    async def _run_pass(
        self,
        job: CreationJob,
        token: str,
        pass_number: int,
        expected: JobStatus,
        defer_when_throttled: bool = True,
        include_permanent: bool = False,
    ) -> PassResult:
        """One pass: campaign, then ad sets, then ads.

        Slots that are deferred, permanently failed (unless
        ``include_permanent``) or waiting on a parent are left alone.
        """
        result = PassResult(pass_number=pass_number)
        active = await self._queue.active_slot_ids(job.id)
        permanent = set() if include_permanent else await self._permanent_slot_ids(job.id)
        semaphore = asyncio.Semaphore(self._config.max_parallel_attempts)

        for entity_type in EntityType.creation_order():
            current = await self._jobs.get(job.id)
            if current is None or current.status is not expected:
                result.cancelled = True
                return result

            slots = await self._slots.list_slots(
                job.id, [SlotStatus.PENDING, SlotStatus.FAILED], entity_type
            )
            candidates = [s for s in slots if s.id not in active and s.id not in permanent]
            if not candidates:
                continue
            parents = await self._parent_ids(current, entity_type)

            async def attempt(slot: EntitySlot) -> AttemptResult:
                async with semaphore:
                    return await self._attempt_slot(
                        current, slot, token, pass_number, parents, expected, defer_when_throttled
                    )

            outcomes = await asyncio.gather(
                *(attempt(slot) for slot in candidates), return_exceptions=True
            )
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            for outcome in outcomes:
                if isinstance(outcome, AttemptResult):
                    result.add(outcome)
            if errors:
                raise errors[0]
            if result.counts.get(AttemptOutcome.CANCELLED.value):
                result.cancelled = True
                return result
        return result

    async def _attempt_slot(
        self,
        job: CreationJob,
        slot: EntitySlot,
        token: str,
        pass_number: int,
        parents: dict[int, str],
        expected: JobStatus,
        defer_when_throttled: bool,
    ) -> AttemptResult:
        # Cooperative cancellation: rollback flips the status under us
        if await self._jobs.get_status(job.id) is not expected:
            return self._count(slot, AttemptResult(AttemptOutcome.CANCELLED, slot.id))

        parent_id = self._parent_for(job, slot, parents)
        if slot.entity_type.parent is not None and parent_id is None:
            return self._count(slot, AttemptResult(AttemptOutcome.BLOCKED, slot.id))

        decision = await self._governor.check(job.user_id, job.account_id)
        if defer_when_throttled and decision.should_defer:
            not_before = decision.reset_at or self._now() + timedelta(
                seconds=self._config.defer_delay_seconds
            )
            await self._queue.enqueue(
                job.user_id,
                job.account_id,
                ActionType.for_entity(slot.entity_type),
                {
                    "job_id": str(job.id),
                    "entity_type": slot.entity_type.value,
                    "slot_number": slot.slot_number,
                },
                token,
                not_before=not_before,
                job_id=job.id,
                slot_id=slot.id,
            )
            return self._count(slot, AttemptResult(AttemptOutcome.DEFERRED, slot.id))
        if not decision.can_proceed:
            return self._count(slot, AttemptResult(AttemptOutcome.THROTTLED, slot.id))

        claimed = await self._slots.claim(slot.id)
        if claimed is None:
            return self._count(slot, AttemptResult(AttemptOutcome.SKIPPED, slot.id))
        result = await self._create_claimed(job, claimed, token, parent_id, pass_number)
        return self._count(slot, result)

    async def _create_claimed(
        self,
        job: CreationJob,
        slot: EntitySlot,
        token: str,
        parent_id: Optional[str],
        pass_number: int,
    ) -> AttemptResult:
        """Send the create call for a slot this caller owns (status creating)."""
        record = await self._begin_retry(slot)
        name = entity_name(job, slot)
        params = self._build_params(job, slot, name, parent_id)

        action = ActionType.for_entity(slot.entity_type).value
        started = time.monotonic()
        try:
            response = await self._platform.create_entity(
                slot.entity_type, job.account_id, params, token
            )
        except Exception as e:
            observe_platform_call(action, time.monotonic() - started)
            await self._record_signal(job, getattr(e, "signal", None))
            return await self._handle_failure(job, slot, record, e, pass_number, parent_id, name)
        observe_platform_call(action, time.monotonic() - started)

        await self._record_signal(job, response.signal)
        external_id = response.data.get("id")
        if not external_id:
            error = PlatformAPIError(
                "Platform response did not include an entity id", payload=response.data
            )
            return await self._handle_failure(
                job, slot, record, error, pass_number, parent_id, name
            )
        external_id = str(external_id)

        completed = await self._slots.complete(slot.id, external_id, name)
        if completed is None:
            logger.error(
                "slot_complete_rejected",
                job_id=str(job.id),
                slot_id=str(slot.id),
                external_id=external_id,
            )
            await self._compensate_orphan(job, slot, external_id, token)
            return AttemptResult(AttemptOutcome.ORPHANED, slot.id, external_id=external_id)
        if await self._jobs.get_status(job.id) is JobStatus.ROLLED_BACK:
            # Rollback finished while the call was in flight
            await self._compensate_orphan(job, completed, external_id, token)
            await self._slots.rollback([slot.id])
            return AttemptResult(AttemptOutcome.ORPHANED, slot.id, external_id=external_id)

        await self._jobs.increment_created(job.id, slot.entity_type, external_id)
        if slot.entity_type is EntityType.CAMPAIGN:
            job.external_campaign_id = external_id
        if record is not None:
            await self._ledger.mark_recovered(record)
        return AttemptResult(AttemptOutcome.CREATED, slot.id, external_id=external_id)

    async def _handle_failure(
        self,
        job: CreationJob,
        slot: EntitySlot,
        record: Optional[FailureRecord],
        error: Exception,
        pass_number: int,
        parent_id: Optional[str],
        name: str,
    ) -> AttemptResult:
        category = classify_error(error)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.warning(
            "slot_attempt_failed",
            job_id=str(job.id),
            entity_type=slot.entity_type.value,
            slot_number=slot.slot_number,
            category=category.value,
            error=message,
        )

        failure: Optional[FailureRecord] = None
        try:
            if record is None:
                failure = await self._ledger.record(
                    self._failure_context(job, slot, parent_id, name, pass_number), error
                )
            else:
                failure = await self._ledger.mark_failed_again(record, error)
        finally:
            # Release the claim even if the ledger write failed
            await self._slots.fail(slot.id, message, failure.id if failure else None)
        if await self._jobs.get_status(job.id) is JobStatus.ROLLED_BACK:
            await self._slots.rollback([slot.id])

        await self._jobs.append_error(
            job.id,
            self._history_entry(
                message,
                category=category,
                entity_type=slot.entity_type,
                slot_number=slot.slot_number,
                pass_number=pass_number,
                failure_id=failure.id if failure else None,
                reason=translate_error(error)[1],
            ),
        )
        return AttemptResult(
            AttemptOutcome.FAILED,
            slot.id,
            category=category,
            error=message,
            failure_id=failure.id if failure else None,
        )

    async def _conclude_pass(self, job_id: UUID) -> tuple[CreationJob, bool]:
        """Decide what follows a pass. Returns (job, run_another_pass)."""
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is not JobStatus.IN_PROGRESS:
            return job, False

        log = logger.bind(job_id=str(job_id))
        slots = await self._slots.list_slots(job_id)
        if slots and all(s.status is SlotStatus.CREATED for s in slots):
            completed = await self._jobs.mark_completed(job_id)
            if completed is not None:
                record_job_finished(JobStatus.COMPLETED.value)
                return completed, False
            return await self._jobs.get(job_id) or job, False

        active = await self._queue.active_slot_ids(job_id)
        failed = [s for s in slots if s.status is SlotStatus.FAILED and s.id not in active]
        if not failed:
            # Only deferred work (or work blocked behind it) remains
            log.info("job_waiting_on_deferred", deferred=len(active))
            return job, False

        updated = await self._jobs.record_retry(job_id)
        if updated is None:
            return await self._jobs.get(job_id) or job, False

        retryable = await self._has_retryable(job_id, failed)
        if updated.retry_count < updated.retry_budget and retryable:
            return updated, True

        await self._queue.cancel_for_job(job_id, "Job failed after exhausting retries")
        message = (
            f"{len(failed)} entities could not be created after {updated.retry_count} "
            "attempts. Roll back the job or retry the failed entities."
        )
        failed_job = await self._jobs.mark_failed(job_id, message)
        if failed_job is not None:
            record_job_finished(JobStatus.FAILED.value)
            log.warning(
                "job_retries_exhausted",
                retry_count=updated.retry_count,
                failed_slots=len(failed),
                retryable=retryable,
            )
        return failed_job or updated, False

    # ------------------------------------------------------------------
    # Deferred operations
    # ------------------------------------------------------------------

    def action_handlers(self) -> dict[ActionType, ActionHandler]:
        """Handlers the queue worker dispatches to, by action type."""
        return {
            ActionType.CREATE_CAMPAIGN: self.process_deferred_create,
            ActionType.CREATE_AD_SET: self.process_deferred_create,
            ActionType.CREATE_AD: self.process_deferred_create,
            ActionType.DELETE_ENTITY: self.process_deferred_delete,
        }

    async def process_deferred_create(
        self, operation: DeferredOperation, token: str
    ) -> dict[str, Any]:
        """Create the entity for a deferred slot.

        Raises:
            OperationThrottledError: window still has no capacity (nothing sent)
            DeferredAttemptError: the platform call failed
        """
        job = await self._jobs.get(operation.job_id) if operation.job_id else None
        if job is None or job.status is not JobStatus.IN_PROGRESS:
            return {"skipped": True, "reason": "job_not_in_progress"}
        slot = await self._slots.get(operation.slot_id) if operation.slot_id else None
        if slot is None or not slot.status.is_claimable:
            return {"skipped": True, "reason": "slot_not_claimable"}

        parent_id = self._parent_for(job, slot, await self._parent_ids(job, slot.entity_type))
        if slot.entity_type.parent is not None and parent_id is None:
            # Left pending; the next pass picks it up once the parent exists
            return {"skipped": True, "reason": "parent_missing"}

        decision = await self._governor.check(job.user_id, job.account_id)
        if not decision.can_proceed:
            raise OperationThrottledError(decision.reset_at)

        claimed = await self._slots.claim(slot.id)
        if claimed is None:
            return {"skipped": True, "reason": "already_claimed"}
        result = await self._create_claimed(job, claimed, token, parent_id, job.retry_count + 1)
        record_slot_attempt(slot.entity_type.value, result.outcome.value)
        if result.outcome is AttemptOutcome.FAILED:
            raise DeferredAttemptError(
                result.error or "Deferred creation failed",
                retryable=bool(result.category and result.category.is_retryable),
            )
        return {"outcome": result.outcome.value, "external_id": result.external_id}

    async def process_deferred_delete(
        self, operation: DeferredOperation, token: str
    ) -> dict[str, Any]:
        external_id = operation.payload.get("external_id")
        if not external_id:
            raise DeferredAttemptError("Delete operation has no external_id", retryable=False)

        decision = await self._governor.check(operation.user_id, operation.account_id)
        if not decision.can_proceed:
            raise OperationThrottledError(decision.reset_at)

        try:
            response = await self._platform.delete_entity(external_id, token)
        except Exception as e:
            if is_not_found(e):
                return {"deleted": False, "already_deleted": True}
            raise DeferredAttemptError(
                getattr(e, "message", None) or str(e),
                retryable=classify_error(e).is_retryable,
            ) from e
        if response.signal is not None:
            await self._governor.record_usage(
                operation.user_id, operation.account_id, response.signal
            )
        return {"deleted": True}

    async def resume_after_deferred(self, operation: DeferredOperation) -> None:
        """Run the next pass once a job has no deferred work left."""
        if operation.job_id is None or operation.action_type is ActionType.DELETE_ENTITY:
            return
        if operation.job_id in self._active:
            return
        if await self._queue.active_slot_ids(operation.job_id):
            return
        job = await self._jobs.get(operation.job_id)
        if job is not None and job.status is JobStatus.IN_PROGRESS:
            logger.info("job_resumed_after_deferred", job_id=str(job.id))
            await self._run_passes(job)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_preview(self, job_id: UUID, user_id: Optional[str] = None) -> dict:
        """What a rollback would delete, without deleting anything."""
        job = await self._get_owned_job(job_id, user_id)
        slots = await self._slots.list_slots(job_id)
        entities = {et.value: [] for et in EntityType.deletion_order()}
        for slot in slots:
            if slot.external_id:
                entities[slot.entity_type.value].append(
                    {
                        "slot_number": slot.slot_number,
                        "external_id": slot.external_id,
                        "name": slot.entity_name,
                    }
                )
        return {
            "job_id": str(job.id),
            "status": job.status.value,
            "can_rollback": can_transition_to_rollback(job.status),
            "entities": entities,
            "total_entities": sum(len(v) for v in entities.values()),
            "slots": len(slots),
            "deferred_operations": len(await self._queue.active_slot_ids(job_id)),
        }

    async def rollback(
        self,
        job_id: UUID,
        reason: str,
        confirmed: bool,
        user_id: Optional[str] = None,
    ) -> RollbackResult:
        """Delete every created entity (ads, ad sets, campaign) and close the job.

        Delete failures are recorded and flag ``cleanup_required``; they do
        not stop the job from reaching rolled_back.
        """
        if not confirmed:
            raise RollbackNotConfirmedError()
        job = await self._get_owned_job(job_id, user_id)
        log = logger.bind(job_id=str(job_id))

        if job.status in (JobStatus.PENDING, JobStatus.IN_PROGRESS):
            # Stops the pass loop at its next status check
            await self._jobs.mark_failed(job_id, f"Rollback requested: {reason}")
            job = await self._jobs.get(job_id) or job
        ensure_transition(JOB, JOB_TRANSITIONS, job.status, JobStatus.ROLLED_BACK)

        result = RollbackResult(job_id=job_id)
        result.operations_cancelled = await self._queue.cancel_for_job(
            job_id, f"Rolled back: {reason}"
        )
        token = await self._load_token(job.user_id, job.account_id)

        handled: set[UUID] = set()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.rollback_settle_timeout_seconds
        while True:
            in_flight = await self._rollback_settled(job, token, result, handled)
            if not in_flight or loop.time() >= deadline:
                break
            log.info("rollback_waiting_on_in_flight", slots=len(in_flight))
            await asyncio.sleep(self._config.rollback_settle_interval_seconds)
        result.slots_in_flight = len(in_flight)

        rolled_back = await self._jobs.mark_rolled_back(job_id, reason, result.cleanup_required)
        if rolled_back is None:
            current = await self._jobs.get_status(job_id)
            raise InvalidTransitionError(JOB, current or job.status, JobStatus.ROLLED_BACK)
        if in_flight:
            # Anything that settled after the last sweep but before the
            # status change; later completions compensate themselves
            remaining = await self._rollback_settled(job, token, result, handled)
            result.slots_in_flight = len(remaining)
            log.warning("rollback_left_in_flight_slots", slots=len(remaining))
        record_job_finished(JobStatus.ROLLED_BACK.value)
        log.info(
            "job_rollback_finished",
            entities_deleted=result.entities_deleted,
            entities_failed=result.entities_failed,
            slots_rolled_back=result.slots_rolled_back,
        )
        return result

    async def _rollback_settled(
        self,
        job: CreationJob,
        token: Optional[str],
        result: RollbackResult,
        handled: set[UUID],
    ) -> list[EntitySlot]:
        """Delete and roll back every settled slot. Returns the slots still creating."""
        slots = await self._slots.list_slots(job.id)
        await self._delete_entities(job, slots, token, result, handled)
        result.slots_rolled_back += await self._slots.rollback(
            [s.id for s in slots if s.status in ROLLBACK_SOURCES]
        )
        return [s for s in slots if s.status is SlotStatus.CREATING]

    async def _delete_entities(
        self,
        job: CreationJob,
        slots: list[EntitySlot],
        token: Optional[str],
        result: RollbackResult,
        handled: set[UUID],
    ) -> None:
        for entity_type in EntityType.deletion_order():
            for slot in slots:
                if slot.entity_type is not entity_type or not slot.external_id:
                    continue
                if slot.id in handled:
                    continue
                handled.add(slot.id)
                await self._delete_for_rollback(job, slot, token, result)

    async def _delete_for_rollback(
        self,
        job: CreationJob,
        slot: EntitySlot,
        token: Optional[str],
        result: RollbackResult,
    ) -> None:
        detail = {
            "entity_type": slot.entity_type.value,
            "slot_number": slot.slot_number,
            "external_id": slot.external_id,
        }
        if token is None:
            result.entities_failed += 1
            result.errors.append({**detail, "error": "No access token available"})
            return

        try:
            response = await self._platform.delete_entity(slot.external_id, token)
        except Exception as e:
            await self._record_signal(job, getattr(e, "signal", None))
            if is_not_found(e):
                result.entities_deleted += 1
                result.details.append({**detail, "status": "already_deleted"})
                return
            message = getattr(e, "message", None) or str(e)
            result.entities_failed += 1
            result.errors.append({**detail, "error": simplify_error_message(message)})
            await self._ledger.record(
                self._failure_context(
                    job, slot, None, slot.entity_name or entity_name(job, slot), None,
                    operation="delete",
                ),
                e,
            )
            if self._config.enqueue_failed_deletes and classify_error(e).is_retryable:
                await self._queue.enqueue(
                    job.user_id,
                    job.account_id,
                    ActionType.DELETE_ENTITY,
                    {"external_id": slot.external_id, **detail},
                    token,
                    job_id=job.id,
                )
            return

        await self._record_signal(job, response.signal)
        result.entities_deleted += 1
        result.details.append({**detail, "status": "deleted"})

    async def _compensate_orphan(
        self, job: CreationJob, slot: EntitySlot, external_id: str, token: str
    ) -> None:
        logger.warning(
            "orphaned_entity_detected",
            job_id=str(job.id),
            entity_type=slot.entity_type.value,
            slot_number=slot.slot_number,
            external_id=external_id,
        )
        try:
            await self._platform.delete_entity(external_id, token)
        except Exception as e:
            if is_not_found(e):
                return
            logger.error(
                "orphan_delete_failed",
                job_id=str(job.id),
                external_id=external_id,
                error=str(e),
            )
            await self._jobs.append_error(
                job.id,
                self._history_entry(
                    f"Entity {external_id} created after rollback could not be deleted: {e}",
                    category=classify_error(e),
                    entity_type=slot.entity_type,
                    slot_number=slot.slot_number,
                ),
            )
            await self._queue.enqueue(
                job.user_id,
                job.account_id,
                ActionType.DELETE_ENTITY,
                {"external_id": external_id, "entity_type": slot.entity_type.value},
                token,
                job_id=job.id,
            )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, job_id: UUID, user_id: Optional[str] = None) -> ReconcileResult:
        """Check that every created slot's entity still exists on the platform.

        A not-found lookup counts the slot as missing and is noted in the
        job's error history; the slot itself stays created, since created
        only ever moves to rolled_back. Other lookup errors count as unknown.
        Ad set and ad counts under the campaign are reported next to the
        tracked counts so entities created outside the slots show up as
        ``exceeded_limit``.
        """
        job = await self._get_owned_job(job_id, user_id)
        token = await self._credentials.get_token(job.user_id, job.account_id)
        log = logger.bind(job_id=str(job_id))

        result = ReconcileResult(
            job_id=job_id,
            requested_counts={
                EntityType.AD_SET.value: job.requested_ad_sets,
                EntityType.AD.value: job.requested_ads,
            },
            tracked_counts={EntityType.AD_SET.value: 0, EntityType.AD.value: 0},
        )
        for slot in await self._slots.list_slots(job_id, [SlotStatus.CREATED]):
            result.slots_checked += 1
            if slot.entity_type.value in result.tracked_counts:
                result.tracked_counts[slot.entity_type.value] += 1
            await self._check_created_slot(job, slot, token, result)

        try:
            result.platform_counts = await self._platform_counts(job, token)
        except PlatformError as e:
            result.counts_error = simplify_error_message(e.message)
            log.warning("reconcile_counts_failed", error=e.message)

        if result.missing:
            await self._jobs.append_error(
                job_id,
                self._history_entry(
                    f"{result.missing} created entities were not found on the platform",
                    category=ErrorCategory.ENTITY_FATAL,
                ),
            )
        log.info(
            "job_reconciled",
            slots_checked=result.slots_checked,
            verified=result.verified,
            missing=result.missing,
            unknown=result.unknown,
            exceeded_limit=result.exceeded_limit,
        )
        return result

    async def _check_created_slot(
        self, job: CreationJob, slot: EntitySlot, token: str, result: ReconcileResult
    ) -> None:
        detail = {
            "slot_id": str(slot.id),
            "entity_type": slot.entity_type.value,
            "slot_number": slot.slot_number,
            "external_id": slot.external_id,
        }
        if not slot.external_id:
            result.discrepancies.append({**detail, "issue": "Created slot has no external id"})
            return
        try:
            await self._platform.get_entity(slot.external_id, token)
        except Exception as e:
            await self._record_signal(job, getattr(e, "signal", None))
            if is_not_found(e):
                result.missing += 1
                result.discrepancies.append(
                    {**detail, "issue": "Entity not found on the platform"}
                )
                return
            result.unknown += 1
            logger.warning(
                "reconcile_lookup_failed",
                job_id=str(job.id),
                external_id=slot.external_id,
                error=str(e),
            )
            return
        result.verified += 1

    async def _platform_counts(self, job: CreationJob, token: str) -> dict[str, int]:
        """Ad sets under the job's campaign and ads under those ad sets."""
        counts = {EntityType.AD_SET.value: 0, EntityType.AD.value: 0}
        if not job.external_campaign_id:
            return counts
        ad_sets = await self._platform.list_children(
            job.external_campaign_id, EntityType.AD_SET, token
        )
        counts[EntityType.AD_SET.value] = len(ad_sets)
        for ad_set in ad_sets:
            ads = await self._platform.list_children(ad_set["id"], EntityType.AD, token)
            counts[EntityType.AD.value] += len(ads)
        return counts

    # ------------------------------------------------------------------
    # Read models and manual retries
    # ------------------------------------------------------------------

    async def list_jobs(
        self,
        user_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreationJob]:
        return await self._jobs.list_by_user(user_id, status=status, limit=limit, offset=offset)

    async def get_progress(self, job_id: UUID, user_id: Optional[str] = None) -> JobProgress:
        job = await self._get_owned_job(job_id, user_id)
        requested = {et: job.requested_count(et) for et in EntityType.creation_order()}
        progress = await self._slots.progress(job_id, requested)
        active = await self._queue.active_slot_ids(job_id)
        return JobProgress(
            job=job,
            campaign=progress[EntityType.CAMPAIGN],
            ad_sets=progress[EntityType.AD_SET],
            ads=progress[EntityType.AD],
            deferred_operations=len(active),
        )

    async def manual_retry(self, record_id: UUID, user_id: str) -> AttemptResult:
        """Re-attempt the single entity behind a failure record, outside the budget."""
        record = await self._ledger.get(record_id)
        if record is None or record.user_id != user_id:
            raise FailureNotFoundError(record_id)
        if record.status is FailureStatus.RECOVERED:
            raise FailureNotRetryableError("This entity has already been recovered")
        if record.job_id is None or record.slot_id is None:
            raise FailureNotRetryableError("The job for this failure no longer exists")

        job = await self._jobs.get(record.job_id)
        slot = await self._slots.get(record.slot_id)
        if job is None or slot is None:
            raise FailureNotRetryableError("The job for this failure no longer exists")
        if job.status is JobStatus.ROLLED_BACK:
            raise FailureNotRetryableError("The job has been rolled back")
        if slot.status is not SlotStatus.FAILED:
            raise FailureNotRetryableError(f"Entity is {slot.status.value}, not failed")
        if slot.id in await self._queue.active_slot_ids(job.id):
            raise FailureNotRetryableError("Entity is already queued for creation")

        decision = await self._governor.check(job.user_id, job.account_id)
        if not decision.can_proceed:
            raise RateLimitedError(decision.usage_percentage, decision.reset_at)

        parent_id = self._parent_for(job, slot, await self._parent_ids(job, slot.entity_type))
        if slot.entity_type.parent is not None and parent_id is None:
            raise FailureNotRetryableError("The parent entity has not been created yet")

        token = await self._credentials.get_token(job.user_id, job.account_id)
        claimed = await self._slots.claim(slot.id)
        if claimed is None:
            raise FailureNotRetryableError("Entity is already being retried")

        result = await self._create_claimed(job, claimed, token, parent_id, job.retry_count)
        record_slot_attempt(slot.entity_type.value, result.outcome.value)
        if result.outcome is AttemptOutcome.CREATED:
            await self._complete_if_filled(job.id)
        logger.info(
            "manual_retry_finished",
            job_id=str(job.id),
            failure_id=str(record_id),
            outcome=result.outcome.value,
        )
        return result

    async def retry_failed_slots(
        self, job_id: UUID, user_id: Optional[str] = None
    ) -> tuple[CreationJob, PassResult]:
        """One manual pass over a failed job's unfinished slots, outside the budget.

        Throttled slots are left as they are; the job completes when every
        slot ends up created.
        """
        job = await self._get_owned_job(job_id, user_id)
        if job.status is not JobStatus.FAILED:
            raise JobNotRetryableError(
                f"Only failed jobs can be retried (status: {job.status.value})"
            )
        if job.id in self._active:
            raise JobNotRetryableError("Job is already being retried")

        token = await self._credentials.get_token(job.user_id, job.account_id)
        self._active.add(job.id)
        try:
            result = await self._run_pass(
                job,
                token,
                job.retry_count + 1,
                JobStatus.FAILED,
                defer_when_throttled=False,
                include_permanent=True,
            )
        finally:
            self._active.discard(job.id)

        logger.info("manual_job_retry_finished", job_id=str(job_id), **result.to_dict())
        job = await self._complete_if_filled(job_id) or job
        return job, result

    async def _complete_if_filled(self, job_id: UUID) -> Optional[CreationJob]:
        job = await self._jobs.get(job_id)
        if job is None or job.status not in (JobStatus.IN_PROGRESS, JobStatus.FAILED):
            return job
        slots = await self._slots.list_slots(job_id)
        if slots and all(s.status is SlotStatus.CREATED for s in slots):
            completed = await self._jobs.mark_completed(job_id)
            if completed is not None:
                record_job_finished(JobStatus.COMPLETED.value)
                return completed
        return await self._jobs.get(job_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_owned_job(self, job_id: UUID, user_id: Optional[str]) -> CreationJob:
        job = await self._jobs.get(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)
        return job

    async def _load_token(self, user_id: str, account_id: str) -> Optional[str]:
        try:
            return await self._credentials.get_token(user_id, account_id)
        except (CredentialNotFoundError, CredentialCipherError) as e:
            logger.warning(
                "platform_credential_unavailable",
                user_id=user_id,
                account_id=account_id,
                error=str(e),
            )
            return None

    async def _record_signal(self, job: CreationJob, signal: Optional[RateLimitSignal]) -> None:
        if signal is None:
            return
        try:
            await self._governor.record_usage(job.user_id, job.account_id, signal)
        except Exception as e:
            # Pacing data only; never turn a successful call into a failure
            logger.warning("rate_limit_record_failed", job_id=str(job.id), error=str(e))

    async def _begin_retry(self, slot: EntitySlot) -> Optional[FailureRecord]:
        """Mark the slot's open failure record retrying, if it has one."""
        if slot.failure_record_id is None:
            return None
        record = await self._ledger.get(slot.failure_record_id)
        if record is None or record.status.is_final:
            return None
        if record.status is FailureStatus.RETRYING:
            return record
        return await self._ledger.mark_retrying(record)

    async def _permanent_slot_ids(self, job_id: UUID) -> set[UUID]:
        """Failed slots whose current failure record is permanent."""
        records = {r.id: r for r in await self._ledger.list_by_job(job_id)}
        slots = await self._slots.list_slots(job_id, [SlotStatus.FAILED])
        return {
            s.id
            for s in slots
            if s.failure_record_id in records
            and records[s.failure_record_id].status is FailureStatus.PERMANENT_FAILURE
        }

    async def _has_retryable(self, job_id: UUID, failed: list[EntitySlot]) -> bool:
        records = {r.id: r for r in await self._ledger.list_by_job(job_id)}
        for slot in failed:
            record = records.get(slot.failure_record_id) if slot.failure_record_id else None
            if record is None or not record.status.is_final:
                return True
        return False

    async def _parent_ids(self, job: CreationJob, entity_type: EntityType) -> dict[int, str]:
        """External ids of created parents, keyed by parent slot number."""
        if entity_type is EntityType.AD_SET:
            return {1: job.external_campaign_id} if job.external_campaign_id else {}
        if entity_type is EntityType.AD:
            ad_sets = await self._slots.list_slots(job.id, [SlotStatus.CREATED], EntityType.AD_SET)
            return {s.slot_number: s.external_id for s in ad_sets if s.external_id}
        return {}

    def _parent_for(
        self, job: CreationJob, slot: EntitySlot, parents: dict[int, str]
    ) -> Optional[str]:
        if slot.entity_type is EntityType.AD_SET:
            return parents.get(1)
        if slot.entity_type is EntityType.AD:
            return parents.get(parent_slot_number(slot.slot_number, job.requested_ad_sets))
        return None

    def _build_params(
        self, job: CreationJob, slot: EntitySlot, name: str, parent_id: Optional[str]
    ) -> dict[str, Any]:
        template = job.request_payload.get(slot.entity_type.value) or {}
        params = {**template, "name": name}
        if slot.entity_type is EntityType.AD_SET:
            params["campaign_id"] = parent_id
        elif slot.entity_type is EntityType.AD:
            params["adset_id"] = parent_id
        return params

    def _failure_context(
        self,
        job: CreationJob,
        slot: EntitySlot,
        parent_id: Optional[str],
        name: str,
        pass_number: Optional[int],
        **metadata: Any,
    ) -> FailureContext:
        ctx = FailureContext(
            user_id=job.user_id,
            entity_type=slot.entity_type,
            job_id=job.id,
            slot_id=slot.id,
            campaign_id=job.external_campaign_id,
            campaign_name=job.campaign_name,
            strategy_tag=job.request_payload.get("strategy_tag"),
            metadata={"slot_number": slot.slot_number, "pass": pass_number, **metadata},
        )
        if slot.entity_type is EntityType.AD_SET:
            ctx.ad_set_id = slot.external_id
            ctx.ad_set_name = name
        elif slot.entity_type is EntityType.AD:
            ctx.ad_set_id = parent_id
            ctx.ad_id = slot.external_id
            ctx.ad_name = name
        return ctx

    def _history_entry(
        self,
        error: str,
        category: ErrorCategory,
        entity_type: Optional[EntityType] = None,
        slot_number: Optional[int] = None,
        pass_number: Optional[int] = None,
        failure_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "timestamp": self._now().isoformat(),
            "error": error,
            "category": category.value,
            "entity_type": entity_type.value if entity_type else None,
            "slot_number": slot_number,
            "pass": pass_number,
            "failure_id": str(failure_id) if failure_id else None,
            "reason": reason,
        }

    @staticmethod
    def _count(slot: EntitySlot, result: AttemptResult) -> AttemptResult:
        record_slot_attempt(slot.entity_type.value, result.outcome.value)
        return result


def can_transition_to_rollback(status: JobStatus) -> bool:
    """Failed jobs roll back directly; running jobs are failed first."""
    return status in (JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.FAILED)
