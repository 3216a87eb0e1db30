"""Bulk Entity Provisioning Service

Creates a campaign with many ad sets and ads against a rate-limited
advertising platform, with per-entity failure tracking and confirmed rollback.
"""

__version__ = "0.1.0"
