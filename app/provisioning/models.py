"""Provisioning data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from app.provisioning.types import (
    ActionType,
    EntityType,
    ErrorCategory,
    FailureStatus,
    JobStatus,
    OperationStatus,
    SlotStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CreationJob:
    """One user request: a campaign plus a fixed number of ad sets and ads."""

    id: UUID
    user_id: str
    account_id: str
    campaign_name: str
    requested_ad_sets: int
    requested_ads: int
    status: JobStatus = JobStatus.PENDING

    # Progress counters, never above the requested counts
    ad_sets_created: int = 0
    ads_created: int = 0
    external_campaign_id: Optional[str] = None

    # Retry handling
    retry_count: int = 0
    retry_budget: int = 5
    last_error: Optional[str] = None
    error_history: list[dict[str, Any]] = field(default_factory=list)
    last_retry_at: Optional[datetime] = None

    # Rollback
    rollback_triggered: bool = False
    rollback_reason: Optional[str] = None
    rollback_at: Optional[datetime] = None
    cleanup_required: bool = False

    verification_id: Optional[UUID] = None
    # Campaign / ad set / ad templates sent to the platform
    request_payload: dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def requested_count(self, entity_type: EntityType) -> int:
        if entity_type is EntityType.CAMPAIGN:
            return 1
        if entity_type is EntityType.AD_SET:
            return self.requested_ad_sets
        return self.requested_ads

    def created_count(self, entity_type: EntityType) -> int:
        if entity_type is EntityType.CAMPAIGN:
            return 1 if self.external_campaign_id else 0
        if entity_type is EntityType.AD_SET:
            return self.ad_sets_created
        return self.ads_created

    @property
    def retries_remaining(self) -> int:
        return max(0, self.retry_budget - self.retry_count)


@dataclass
class EntitySlot:
    """A numbered reservation for exactly one external entity within a job."""

    id: UUID
    job_id: UUID
    slot_number: int
    entity_type: EntityType
    status: SlotStatus = SlotStatus.PENDING
    external_id: Optional[str] = None
    entity_name: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    failure_record_id: Optional[UUID] = None
    creation_started_at: Optional[datetime] = None
    creation_completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class DeferredOperation:
    """A queued external API call waiting for rate-limit capacity."""

    id: UUID
    user_id: str
    account_id: str
    action_type: ActionType
    payload: dict[str, Any]
    status: OperationStatus = OperationStatus.QUEUED
    priority: int = 5
    not_before: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = 3

    job_id: Optional[UUID] = None
    slot_id: Optional[UUID] = None
    # Encoded envelope, decoded only by the worker at the point of use
    credential_ciphertext: Optional[str] = None

    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    locked_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass
class RateLimitWindow:
    """Per (user, account) usage snapshot from the latest platform response."""

    user_id: str
    account_id: str
    calls_used: float = 0
    calls_allowed: int = 200
    usage_percentage: float = 0.0
    window_reset_at: Optional[datetime] = None
    last_signal: Optional[dict[str, Any]] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class FailureRecord:
    """One entity-creation failure, kept independently of job lifecycle."""

    id: UUID
    user_id: str
    entity_type: EntityType
    failure_reason: str
    user_facing_reason: str
    error_category: ErrorCategory
    status: FailureStatus = FailureStatus.FAILED
    retry_count: int = 0
    error_code: Optional[str] = None
    error_payload: Optional[dict[str, Any]] = None

    job_id: Optional[UUID] = None
    slot_id: Optional[UUID] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_set_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    strategy_tag: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    recovered_at: Optional[datetime] = None


@dataclass
class VerificationSnapshot:
    """Immutable record of one preflight check run."""

    user_id: str
    account_id: str
    campaign_name: str
    can_proceed: bool
    account_accessible: bool = False
    account_suspended: bool = False
    duplicate_name_exists: Optional[bool] = None
    at_entity_limit: Optional[bool] = None
    credential_valid: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    current_entity_count: Optional[int] = None
    entity_limit: Optional[int] = None
    verification_time_ms: int = 0
    details: dict[str, Any] = field(default_factory=dict)
    id: Optional[UUID] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class EntityProgress:
    requested: int
    created: int
    pending: int
    failed: int
    creating: int = 0
    rolled_back: int = 0


@dataclass
class JobProgress:
    """Read model returned by the job status endpoint."""

    job: CreationJob
    campaign: EntityProgress
    ad_sets: EntityProgress
    ads: EntityProgress
    deferred_operations: int = 0

    @property
    def retries(self) -> dict[str, int]:
        return {
            "count": self.job.retry_count,
            "budget": self.job.retry_budget,
            "remaining": self.job.retries_remaining,
        }

    @property
    def can_rollback(self) -> bool:
        return self.job.status in (JobStatus.FAILED, JobStatus.IN_PROGRESS)


@dataclass
class RollbackResult:
    """Outcome of a confirmed rollback."""

    job_id: UUID
    entities_deleted: int = 0
    entities_failed: int = 0
    slots_rolled_back: int = 0
    # Slots still creating when rollback stopped waiting
    slots_in_flight: int = 0
    operations_cancelled: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def cleanup_required(self) -> bool:
        return self.entities_failed > 0 or self.slots_in_flight > 0


@dataclass
class ReconcileResult:
    """Tracked slot state compared with what the platform reports."""

    job_id: UUID
    slots_checked: int = 0
    verified: int = 0
    missing: int = 0
    # Lookups that failed for reasons other than not-found
    unknown: int = 0
    discrepancies: list[dict[str, Any]] = field(default_factory=list)
    requested_counts: dict[str, int] = field(default_factory=dict)
    tracked_counts: dict[str, int] = field(default_factory=dict)
    platform_counts: Optional[dict[str, int]] = None
    counts_error: Optional[str] = None

    @property
    def exceeded_limit(self) -> bool:
        """The platform holds more children than the job requested."""
        if not self.platform_counts:
            return False
        return any(
            self.platform_counts.get(key, 0) > requested
            for key, requested in self.requested_counts.items()
        )

    @property
    def in_sync(self) -> bool:
        return self.missing == 0 and not self.discrepancies and not self.exceeded_limit
