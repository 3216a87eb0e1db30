"""Provisioning type definitions."""

from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    """Creation job lifecycle statuses."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class SlotStatus(str, Enum):
    """Entity slot statuses."""

    PENDING = "pending"
    CREATING = "creating"
    CREATED = "created"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_claimable(self) -> bool:
        """Only pending or failed slots may re-enter creating."""
        return self in (SlotStatus.PENDING, SlotStatus.FAILED)


class EntityType(str, Enum):
    """External entity kinds, in dependency order."""

    CAMPAIGN = "campaign"
    AD_SET = "ad_set"
    AD = "ad"

    @property
    def parent(self) -> Optional["EntityType"]:
        """The entity type this one must be attached to."""
        if self is EntityType.AD_SET:
            return EntityType.CAMPAIGN
        if self is EntityType.AD:
            return EntityType.AD_SET
        return None

    @classmethod
    def creation_order(cls) -> list["EntityType"]:
        return [cls.CAMPAIGN, cls.AD_SET, cls.AD]

    @classmethod
    def deletion_order(cls) -> list["EntityType"]:
        return [cls.AD, cls.AD_SET, cls.CAMPAIGN]


class OperationStatus(str, Enum):
    """Deferred operation statuses."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (OperationStatus.QUEUED, OperationStatus.PROCESSING)


class ActionType(str, Enum):
    """Deferred operation action types."""

    CREATE_CAMPAIGN = "create_campaign"
    CREATE_AD_SET = "create_ad_set"
    CREATE_AD = "create_ad"
    DELETE_ENTITY = "delete_entity"

    @classmethod
    def for_entity(cls, entity_type: EntityType) -> "ActionType":
        """Map an entity type to its creation action."""
        return {
            EntityType.CAMPAIGN: cls.CREATE_CAMPAIGN,
            EntityType.AD_SET: cls.CREATE_AD_SET,
            EntityType.AD: cls.CREATE_AD,
        }[entity_type]


class FailureStatus(str, Enum):
    """Failure record statuses."""

    FAILED = "failed"
    RETRYING = "retrying"
    RECOVERED = "recovered"
    PERMANENT_FAILURE = "permanent_failure"

    @property
    def is_final(self) -> bool:
        """Final records never change retry_count again."""
        return self in (FailureStatus.RECOVERED, FailureStatus.PERMANENT_FAILURE)


class ErrorCategory(str, Enum):
    """Error taxonomy used for retry decisions.

    - preflight_fatal: blocked before any mutating call, never retried
    - rate_limit / transient: retried automatically
    - entity_fatal: rejected for this entity's parameters, left for manual fix
    """

    PREFLIGHT_FATAL = "preflight_fatal"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    ENTITY_FATAL = "entity_fatal"

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorCategory.RATE_LIMIT, ErrorCategory.TRANSIENT)
