"""Advertising platform API client and error taxonomy."""

from app.services.platform.client import (
    AdPlatformClient,
    PlatformResponse,
    RateLimitSignal,
    parse_rate_limit_headers,
)
from app.services.platform.errors import (
    PlatformAPIError,
    PlatformError,
    PlatformNetworkError,
    PlatformRateLimitError,
    PlatformTimeoutError,
    classify_error,
    is_not_found,
    translate_error,
)

__all__ = [
    "AdPlatformClient",
    "PlatformResponse",
    "RateLimitSignal",
    "parse_rate_limit_headers",
    "PlatformError",
    "PlatformAPIError",
    "PlatformRateLimitError",
    "PlatformTimeoutError",
    "PlatformNetworkError",
    "classify_error",
    "is_not_found",
    "translate_error",
]
