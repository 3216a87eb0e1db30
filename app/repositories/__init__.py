"""Database repositories for the provisioning service."""

from app.repositories import (
    credentials,
    deferred_operations,
    failures,
    jobs,
    rate_limits,
    slots,
    verifications,
)

__all__ = [
    "credentials",
    "deferred_operations",
    "failures",
    "jobs",
    "rate_limits",
    "slots",
    "verifications",
]
