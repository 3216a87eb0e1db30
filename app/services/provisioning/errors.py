"""Provisioning service exceptions.

Each carries an ``error_code`` the routers put in HTTP error details.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from app.provisioning.models import VerificationSnapshot


class ProvisioningError(Exception):
    """Base exception for provisioning operations."""

    error_code = "PROVISIONING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PreflightRejectedError(ProvisioningError):
    """Preflight found blocking errors; no job was created."""

    error_code = "PREFLIGHT_FAILED"

    def __init__(self, snapshot: VerificationSnapshot):
        self.snapshot = snapshot
        super().__init__("; ".join(snapshot.errors) or "Preflight verification failed")


class InvalidRequestError(ProvisioningError):
    error_code = "INVALID_REQUEST"


class JobNotFoundError(ProvisioningError):
    error_code = "JOB_NOT_FOUND"

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobNotRetryableError(ProvisioningError):
    error_code = "JOB_NOT_RETRYABLE"


class RollbackNotConfirmedError(ProvisioningError):
    error_code = "ROLLBACK_NOT_CONFIRMED"

    def __init__(self):
        super().__init__("Rollback deletes created entities and must be confirmed")


class FailureNotFoundError(ProvisioningError):
    error_code = "FAILURE_NOT_FOUND"

    def __init__(self, record_id: UUID):
        self.record_id = record_id
        super().__init__(f"Failure record {record_id} not found")


class FailureNotRetryableError(ProvisioningError):
    error_code = "FAILURE_NOT_RETRYABLE"


class RateLimitedError(ProvisioningError):
    """The rate-limit window has no capacity for a user-initiated retry."""

    error_code = "RATE_LIMITED"

    def __init__(self, usage_percentage: float, reset_at: Optional[datetime]):
        self.usage_percentage = usage_percentage
        self.reset_at = reset_at
        super().__init__(
            f"Rate limit usage at {usage_percentage:.1f}%, try again after reset"
        )


class OperationThrottledError(ProvisioningError):
    """Raised inside the worker when a deferred op must wait for the window."""

    error_code = "OPERATION_THROTTLED"

    def __init__(self, reset_at: Optional[datetime]):
        self.reset_at = reset_at
        super().__init__("Rate-limit window still throttled")


class DeferredAttemptError(ProvisioningError):
    """A deferred attempt failed; the queue backs off and retries when ``retryable``."""

    error_code = "DEFERRED_ATTEMPT_FAILED"

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
