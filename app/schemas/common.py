"""Common schemas: health and error responses."""

from typing import Optional

from pydantic import BaseModel, Field


class DependencyHealth(BaseModel):
    """Health status for a dependency."""

    status: str = Field(..., description="Dependency status (ok/error/not_configured)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status")
    database: DependencyHealth = Field(..., description="PostgreSQL health")
    credential_cipher: DependencyHealth = Field(
        ..., description="Whether a credential encryption key is loaded"
    )
    queue_worker: DependencyHealth = Field(..., description="Deferred operation worker")
    latency_ms: dict[str, float] = Field(..., description="Latency per dependency")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(None, description="Error code")
    retryable: bool = Field(default=False, description="Whether error is retryable")
