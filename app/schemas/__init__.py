"""Pydantic models for request/response validation.

This package re-exports all schemas so imports like
`from app.schemas import X` work regardless of the defining module.
"""

# ===========================================
# Common: Health, Error
# ===========================================
from app.schemas.common import (
    DependencyHealth,
    ErrorResponse,
    HealthResponse,
)

# ===========================================
# Provisioning: Jobs, Rollback, Queue, Failures
# ===========================================
from app.schemas.provisioning import (
    CreateJobRequest,
    CreateJobResponse,
    DeferredOperationResponse,
    EntityProgressResponse,
    FailureListResponse,
    FailureRecordResponse,
    FailureStatsResponse,
    JobProgressResponse,
    ManualRetryResponse,
    QueueResponse,
    RateLimitWindowResponse,
    RetryFailedResponse,
    RetryInfo,
    RollbackRequest,
    RollbackResponse,
)

__all__ = [
    "DependencyHealth",
    "ErrorResponse",
    "HealthResponse",
    "CreateJobRequest",
    "CreateJobResponse",
    "DeferredOperationResponse",
    "EntityProgressResponse",
    "FailureListResponse",
    "FailureRecordResponse",
    "FailureStatsResponse",
    "JobProgressResponse",
    "ManualRetryResponse",
    "QueueResponse",
    "RateLimitWindowResponse",
    "RetryFailedResponse",
    "RetryInfo",
    "RollbackRequest",
    "RollbackResponse",
]
