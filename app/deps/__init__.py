"""FastAPI dependencies for caller identity and security."""

from app.deps.security import (
    CurrentUser,
    get_current_user,
    get_user_id,
    verify_api_key,
)

__all__ = [
    "CurrentUser",
    "get_current_user",
    "get_user_id",
    "verify_api_key",
]
