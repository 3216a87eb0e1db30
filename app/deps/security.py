"""Security dependencies for FastAPI routes.

Provides:
- Caller identity from the X-User-Id header
- Constant-time API key comparison (used by the request middleware)
"""

import hmac
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status

logger = structlog.get_logger(__name__)

USER_ID_HEADER = "X-User-Id"
MAX_USER_ID_LENGTH = 128


# =============================================================================
# Caller Identity
# =============================================================================


@dataclass
class CurrentUser:
    """The user on whose behalf a request acts.

    Authentication happens upstream (gateway or dashboard backend); this
    service trusts the forwarded user id once the API key has been checked.
    """

    user_id: str


def get_current_user(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
) -> CurrentUser:
    """
    Resolve the calling user.

    Returns 401 when the header is missing or blank, 400 when it is too long.

    Usage:
        @router.get("/provisioning/queue")
        async def list_queue(user: CurrentUser = Depends(get_current_user)):
            ...
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": f"User identity required. Provide {USER_ID_HEADER} header.",
                "error_code": "USER_ID_REQUIRED",
            },
        )
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": f"{USER_ID_HEADER} must be at most {MAX_USER_ID_LENGTH} characters",
                "error_code": "INVALID_USER_ID",
            },
        )
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return CurrentUser(user_id=user_id)


def get_user_id(user: CurrentUser = Depends(get_current_user)) -> str:
    """Shortcut dependency returning only the user id."""
    return user.user_id


# =============================================================================
# API Key
# =============================================================================


def verify_api_key(provided: str, expected: str) -> bool:
    """Constant-time comparison of a provided key against the configured one."""
    return hmac.compare_digest(provided.encode(), expected.encode())
