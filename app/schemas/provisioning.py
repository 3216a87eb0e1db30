"""Provisioning schemas: creation jobs, progress, rollback, queue, failures."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.provisioning.types import (
    ActionType,
    EntityType,
    ErrorCategory,
    FailureStatus,
    JobStatus,
    OperationStatus,
)

# ===========================================
# Creation Jobs
# ===========================================


class CreateJobRequest(BaseModel):
    """Request for POST /provisioning/jobs."""

    account_id: str = Field(..., min_length=1, description="Target ad account ID")
    campaign_name: str = Field(..., min_length=1, max_length=400, description="Campaign name")
    ad_set_count: int = Field(..., ge=1, le=500, description="Ad sets to create")
    ad_count: int = Field(default=0, ge=0, le=5000, description="Ads to create")
    campaign_params: dict[str, Any] = Field(
        default_factory=dict, description="Campaign fields sent to the platform"
    )
    ad_set_params: dict[str, Any] = Field(
        default_factory=dict, description="Ad set fields sent to the platform"
    )
    ad_params: dict[str, Any] = Field(
        default_factory=dict, description="Ad fields sent to the platform"
    )
    strategy_tag: Optional[str] = Field(
        None, max_length=100, description="Context tag copied onto failure records"
    )


class CreateJobResponse(BaseModel):
    """Response for POST /provisioning/jobs (202)."""

    job_id: UUID
    status: JobStatus
    warnings: list[str] = Field(default_factory=list)
    verification_id: Optional[UUID] = None


class EntityProgressResponse(BaseModel):
    requested: int
    created: int
    pending: int
    creating: int = 0
    failed: int
    rolled_back: int = 0


class RetryInfo(BaseModel):
    count: int
    budget: int
    remaining: int


class JobProgressResponse(BaseModel):
    """Response for GET /provisioning/jobs/{job_id}."""

    job_id: UUID
    account_id: str
    campaign_name: str
    status: JobStatus
    external_campaign_id: Optional[str] = None
    campaign: EntityProgressResponse
    ad_sets: EntityProgressResponse
    ads: EntityProgressResponse
    deferred_operations: int = 0
    retries: RetryInfo
    last_error: Optional[str] = None
    error_history: list[dict[str, Any]] = Field(default_factory=list)
    can_rollback: bool
    rollback_reason: Optional[str] = None
    cleanup_required: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None


class JobSummaryResponse(BaseModel):
    job_id: UUID
    account_id: str
    campaign_name: str
    status: JobStatus
    requested_ad_sets: int
    requested_ads: int
    ad_sets_created: int
    ads_created: int
    retry_count: int
    cleanup_required: bool = False
    created_at: datetime
    completed_at: Optional[datetime] = None


class JobListResponse(BaseModel):
    jobs: list[JobSummaryResponse]
    count: int


class RetryFailedResponse(BaseModel):
    """Response for POST /provisioning/jobs/{job_id}/retry-failed."""

    job_id: UUID
    status: JobStatus
    pass_result: dict[str, Any]


# ===========================================
# Rollback
# ===========================================


class RollbackRequest(BaseModel):
    """Request for POST /provisioning/jobs/{job_id}/rollback."""

    confirm: bool = Field(
        default=False, description="Must be true; rollback deletes created entities"
    )
    reason: str = Field(
        default="User requested rollback", max_length=500, description="Audit reason"
    )


class RollbackResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    entities_deleted: int
    entities_failed: int
    slots_rolled_back: int
    slots_in_flight: int = 0
    operations_cancelled: int
    cleanup_required: bool
    errors: list[dict[str, Any]] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    """Created slots checked against the platform."""

    job_id: UUID
    slots_checked: int
    verified: int
    missing: int
    unknown: int
    discrepancies: list[dict[str, Any]] = Field(default_factory=list)
    requested_counts: dict[str, int]
    tracked_counts: dict[str, int]
    platform_counts: Optional[dict[str, int]] = None
    counts_error: Optional[str] = None
    exceeded_limit: bool
    in_sync: bool


# ===========================================
# Deferred Queue & Rate Limits
# ===========================================


class DeferredOperationResponse(BaseModel):
    """A deferred operation as shown to its owner. Never includes the credential."""

    id: UUID
    account_id: str
    action_type: ActionType
    status: OperationStatus
    priority: int
    not_before: datetime
    attempts: int
    max_attempts: int
    job_id: Optional[UUID] = None
    slot_id: Optional[UUID] = None
    error: Optional[str] = None
    created_at: datetime


class QueueResponse(BaseModel):
    operations: list[DeferredOperationResponse]
    count: int


class RateLimitWindowResponse(BaseModel):
    """Response for GET /provisioning/rate-limits/{account_id}."""

    account_id: str
    calls_used: float = 0
    calls_allowed: int = 0
    usage_percentage: float = 0.0
    window_reset_at: Optional[datetime] = None
    can_proceed: bool
    should_defer: bool
    reason: str
    updated_at: Optional[datetime] = None


# ===========================================
# Failure Ledger
# ===========================================


class FailureRecordResponse(BaseModel):
    id: UUID
    entity_type: EntityType
    status: FailureStatus
    error_category: ErrorCategory
    failure_reason: str
    user_facing_reason: str
    error_code: Optional[str] = None
    retry_count: int
    job_id: Optional[UUID] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_set_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    strategy_tag: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    recovered_at: Optional[datetime] = None


class FailureListResponse(BaseModel):
    failures: list[FailureRecordResponse]
    count: int


class FailureStatsResponse(BaseModel):
    failed: int = 0
    retrying: int = 0
    recovered: int = 0
    permanent_failure: int = 0
    total: int = 0


class ManualRetryResponse(BaseModel):
    """Response for POST /failures/{record_id}/retry."""

    failure_id: UUID
    outcome: str
    external_id: Optional[str] = None
    error: Optional[str] = None
    new_failure_id: Optional[UUID] = None
