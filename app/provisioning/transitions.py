"""Status transition tables for the provisioning state machines.

Every status change goes through ``ensure_transition`` so an illegal move is
rejected before any row is written. The repositories repeat the same rule in
their ``WHERE status = ...`` guards, which makes the check atomic in storage.
"""

from enum import Enum
from typing import Mapping, Optional, TypeVar

from app.provisioning.types import (
    FailureStatus,
    JobStatus,
    OperationStatus,
    SlotStatus,
)

S = TypeVar("S", bound=Enum)


JOB_TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    # in_progress -> in_progress is a retry pass
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    # failed -> completed only when manual retries fill every slot
    JobStatus.FAILED: frozenset({JobStatus.ROLLED_BACK, JobStatus.COMPLETED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ROLLED_BACK: frozenset(),
}

SLOT_TRANSITIONS: Mapping[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.PENDING: frozenset({SlotStatus.CREATING, SlotStatus.ROLLED_BACK}),
    SlotStatus.FAILED: frozenset({SlotStatus.CREATING, SlotStatus.ROLLED_BACK}),
    # An in-flight attempt settles first; rollback picks it up afterwards
    SlotStatus.CREATING: frozenset({SlotStatus.CREATED, SlotStatus.FAILED}),
    SlotStatus.CREATED: frozenset({SlotStatus.ROLLED_BACK}),
    SlotStatus.ROLLED_BACK: frozenset(),
}

OPERATION_TRANSITIONS: Mapping[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.QUEUED: frozenset(
        {OperationStatus.PROCESSING, OperationStatus.CANCELLED}
    ),
    # processing -> queued is a reschedule (backoff or still throttled)
    OperationStatus.PROCESSING: frozenset(
        {
            OperationStatus.QUEUED,
            OperationStatus.COMPLETED,
            OperationStatus.FAILED,
            OperationStatus.CANCELLED,
        }
    ),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}

FAILURE_TRANSITIONS: Mapping[FailureStatus, frozenset[FailureStatus]] = {
    FailureStatus.FAILED: frozenset(
        {FailureStatus.RETRYING, FailureStatus.PERMANENT_FAILURE}
    ),
    FailureStatus.RETRYING: frozenset(
        {
            FailureStatus.RECOVERED,
            FailureStatus.FAILED,
            FailureStatus.PERMANENT_FAILURE,
        }
    ),
    FailureStatus.RECOVERED: frozenset(),
    FailureStatus.PERMANENT_FAILURE: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a status transition is not allowed."""

    def __init__(
        self,
        entity: str,
        from_status: Enum,
        to_status: Enum,
        message: Optional[str] = None,
    ):
        self.error_code = "INVALID_TRANSITION"
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"{entity} cannot move from {from_status.value} to {to_status.value}"
        )
        super().__init__(self.message)


def sources_for(table: Mapping[S, frozenset[S]], target: S) -> list[S]:
    """All statuses that may legally move to ``target``.

    Used to build compare-and-set guards, e.g. ``WHERE status = ANY($2)``.
    """
    return [source for source, targets in table.items() if target in targets]


def can_transition(table: Mapping[S, frozenset[S]], from_status: S, to_status: S) -> bool:
    return to_status in table.get(from_status, frozenset())


def ensure_transition(
    entity: str,
    table: Mapping[S, frozenset[S]],
    from_status: S,
    to_status: S,
) -> None:
    """Raise InvalidTransitionError unless ``from_status -> to_status`` is allowed."""
    if not can_transition(table, from_status, to_status):
        raise InvalidTransitionError(entity, from_status, to_status)
