"""Batch and queue-item lifecycles enforced by the delivery service."""

from enum import Enum


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class InvalidTransition(ValueError):
    """Raised for a status change the lifecycle does not allow."""


BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.PROCESSING},
    BatchStatus.PROCESSING: {BatchStatus.COMPLETED},
    BatchStatus.COMPLETED: set(),
}

QUEUE_ITEM_TRANSITIONS: dict[QueueItemStatus, set[QueueItemStatus]] = {
    QueueItemStatus.PENDING: {QueueItemStatus.PROCESSING},
    QueueItemStatus.PROCESSING: {QueueItemStatus.SENT, QueueItemStatus.PENDING, QueueItemStatus.FAILED},
    QueueItemStatus.SENT: set(),
    QueueItemStatus.FAILED: set(),
}

# Enum members with equal string values compare equal, so each lifecycle
# keeps its own table keyed by enum class.
_TRANSITIONS = {
    BatchStatus: BATCH_TRANSITIONS,
    QueueItemStatus: QUEUE_ITEM_TRANSITIONS,
}


def validate_transition(current: BatchStatus | QueueItemStatus, new: BatchStatus | QueueItemStatus) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if type(current) is not type(new):
        raise InvalidTransition(f"Invalid transition: {current!r} -> {new!r}")
    table = _TRANSITIONS[type(current)]
    if new not in table.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current.value} -> {new.value}")


def is_terminal(status: BatchStatus | QueueItemStatus) -> bool:
    """True when no further transition is allowed from `status`."""

    return not _TRANSITIONS[type(status)][status]
