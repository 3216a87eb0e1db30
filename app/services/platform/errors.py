"""Advertising platform errors, classification and user-facing translation."""

import re
from typing import Any, Optional

from app.provisioning.types import ErrorCategory

# Platform error codes
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613, 80004})
TRANSIENT_CODES = frozenset({1, 2, 368})
# Token invalid (190), permission (10, 200), invalid parameter (100),
# object not found (803), policy (1487741), account spend restriction (2635)
ENTITY_FATAL_CODES = frozenset({10, 100, 190, 200, 803, 1487741, 2635})

_RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "throttle")
_FATAL_PATTERNS = (
    "account disabled",
    "account suspended",
    "account closed",
    "invalid oauth",
    "permission",
    "invalid parameter",
)
_NOT_FOUND_PATTERNS = ("does not exist", "not found", "invalid id", "unsupported get request")


class PlatformError(Exception):
    """Base error for advertising platform calls."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
        user_title: Optional[str] = None,
        user_message: Optional[str] = None,
        fbtrace_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        signal: Any = None,
    ):
        self.message = message
        self.code = code
        self.subcode = subcode
        self.error_type = error_type
        self.status_code = status_code
        self.user_title = user_title
        self.user_message = user_message
        self.fbtrace_id = fbtrace_id
        self.payload = payload or {}
        # RateLimitSignal parsed from the failed response, if any
        self.signal = signal
        super().__init__(message)

    @property
    def category(self) -> ErrorCategory:
        return classify_error(self)


class PlatformAPIError(PlatformError):
    """The platform answered with an error body."""


class PlatformRateLimitError(PlatformAPIError):
    """The platform throttled the call."""

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class PlatformTimeoutError(PlatformError):
    """Request to the platform timed out."""


class PlatformNetworkError(PlatformError):
    """Connection to the platform failed."""


def classify_error(error: Exception) -> ErrorCategory:
    """Classify an exception into the retry taxonomy.

    Unknown errors are treated as transient so they get another attempt.
    """
    if isinstance(error, PlatformRateLimitError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, (PlatformTimeoutError, PlatformNetworkError)):
        return ErrorCategory.TRANSIENT

    code = getattr(error, "code", None)
    status_code = getattr(error, "status_code", None)
    message = str(error).lower()

    if code in RATE_LIMIT_CODES or any(p in message for p in _RATE_LIMIT_PATTERNS):
        return ErrorCategory.RATE_LIMIT
    if code in ENTITY_FATAL_CODES or any(p in message for p in _FATAL_PATTERNS):
        return ErrorCategory.ENTITY_FATAL
    if code in TRANSIENT_CODES or (status_code is not None and status_code >= 500):
        return ErrorCategory.TRANSIENT
    # Unknown
    return ErrorCategory.TRANSIENT


def is_not_found(error: Exception) -> bool:
    """True when the platform reports the entity does not exist."""
    if getattr(error, "code", None) == 803:
        return True
    message = str(error).lower()
    return any(p in message for p in _NOT_FOUND_PATTERNS)


def simplify_error_message(message: str) -> str:
    """Strip platform codes and prefixes, truncate to 200 chars."""
    simplified = re.sub(r"\(#\d+\)", "", message)
    simplified = re.sub(r"\bat\s+[\w.]+:\d+:\d+", "", simplified)
    simplified = re.sub(r"\bError:\s*", "", simplified).strip()
    if len(simplified) > 200:
        simplified = simplified[:197] + "..."
    return simplified


def translate_error(error: Exception) -> tuple[str, str]:
    """Translate an error into (user_facing_message, reason_tag)."""
    code = getattr(error, "code", None)
    message = getattr(error, "message", None) or str(error) or "Unknown error"
    lowered = message.lower()

    if isinstance(error, PlatformRateLimitError) or code in RATE_LIMIT_CODES:
        return (
            "Platform rate limit reached. Creation will be retried automatically, "
            "please wait a few minutes.",
            "rate_limit",
        )
    if code == 100 and "budget" in lowered:
        return (
            "Budget settings are invalid. Check that the daily or lifetime budget "
            "meets the platform minimum.",
            "budget",
        )
    if code == 100 and ("targeting" in lowered or "audience" in lowered):
        return (
            "Targeting settings are too narrow or invalid. Adjust location, age "
            "or interest targeting.",
            "targeting",
        )
    if code in (190, 200):
        return (
            "Access token expired or insufficient permissions. Reconnect the "
            "advertising account.",
            "permissions",
        )
    if code == 2635:
        return (
            "The ad account has spending restrictions. Check the ad account settings.",
            "account",
        )
    if any(word in lowered for word in ("image", "video", "media")):
        return (
            "Media upload failed. Check file size, format and dimensions.",
            "media",
        )
    if code == 1487741 or "policy" in lowered or "prohibited" in lowered:
        return (
            "Ad content violates the platform advertising policies. Review the "
            "text, images and targeting.",
            "policy",
        )
    if "pixel" in lowered or "conversion" in lowered:
        return (
            "Pixel or conversion tracking setup is invalid.",
            "pixel",
        )
    if "placement" in lowered:
        return ("Invalid ad placement settings.", "placement")
    if code == 100:
        return (
            f"Invalid campaign settings: {simplify_error_message(message)}",
            "invalid_param",
        )
    if isinstance(error, (PlatformTimeoutError, PlatformNetworkError)):
        return (
            "Connection to the platform timed out. The request will be retried "
            "automatically.",
            "network",
        )
    return (f"Platform API error: {simplify_error_message(message)}", "unknown")


def extract_error_details(error: Exception) -> dict[str, Any]:
    """Structured error payload stored on failure records."""
    user_message, reason_tag = translate_error(error)
    return {
        "code": getattr(error, "code", None),
        "subcode": getattr(error, "subcode", None),
        "type": getattr(error, "error_type", None) or type(error).__name__,
        "message": getattr(error, "message", None) or str(error),
        "status_code": getattr(error, "status_code", None),
        "user_title": getattr(error, "user_title", None),
        "user_message": getattr(error, "user_message", None) or user_message,
        "fbtrace_id": getattr(error, "fbtrace_id", None),
        "reason": reason_tag,
        "category": classify_error(error).value,
    }
