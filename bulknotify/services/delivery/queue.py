"""Queue and batch row operations used by the delivery service.

Every status change is a conditional update guarded by the expected prior
status, and every counter change is a store-level increment, so concurrent
passes can share the same tables without application-side locking.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select, update

from bulknotify.common.metrics import queue_oldest_pending_age_seconds, queue_pending_total
from bulknotify.common.state_machine import BatchStatus, QueueItemStatus, validate_transition
from bulknotify.services.delivery.models import NotificationBatch, NotificationQueueItem


BATCH_COUNTERS = ("processed_count", "failed_count")


def select_pending_ids(db, limit: int, batch_id: str | None = None) -> list[str]:
    """Oldest-first ids of pending items, optionally scoped to one batch."""

    stmt = (
        select(NotificationQueueItem.id)
        .where(NotificationQueueItem.status == QueueItemStatus.PENDING.value)
        .order_by(NotificationQueueItem.created_at, NotificationQueueItem.id)
        .limit(limit)
    )
    if batch_id is not None:
        stmt = stmt.where(NotificationQueueItem.batch_id == batch_id)
    return list(db.execute(stmt).scalars())


def transition_queue_item(
    db,
    item_id: str,
    current: QueueItemStatus,
    new: QueueItemStatus,
    **values,
) -> bool:
    """Move one item from `current` to `new`; False if another writer got there first."""

    validate_transition(current, new)
    result = db.execute(
        update(NotificationQueueItem)
        .where(NotificationQueueItem.id == item_id, NotificationQueueItem.status == current.value)
        .values(status=new.value, **values)
    )
    return result.rowcount == 1


def claim_queue_item(db, item_id: str) -> bool:
    """Claim a pending item and count the attempt before delivery starts."""

    return transition_queue_item(
        db,
        item_id,
        QueueItemStatus.PENDING,
        QueueItemStatus.PROCESSING,
        attempts=NotificationQueueItem.attempts + 1,
    )


def mark_queue_item_sent(db, item_id: str) -> bool:
    return transition_queue_item(
        db,
        item_id,
        QueueItemStatus.PROCESSING,
        QueueItemStatus.SENT,
        processed_at=datetime.now(timezone.utc),
    )


def release_queue_item(db, item_id: str, error_message: str) -> bool:
    """Return a claimed item to `pending` so a later pass retries it."""

    return transition_queue_item(
        db,
        item_id,
        QueueItemStatus.PROCESSING,
        QueueItemStatus.PENDING,
        error_message=error_message,
    )


def fail_queue_item(db, item_id: str, error_message: str) -> bool:
    return transition_queue_item(
        db,
        item_id,
        QueueItemStatus.PROCESSING,
        QueueItemStatus.FAILED,
        error_message=error_message,
        processed_at=datetime.now(timezone.utc),
    )


def transition_batch(db, batch_id: str, current: BatchStatus, new: BatchStatus, **values) -> bool:
    """Conditional batch status change; only the first concurrent caller wins."""

    validate_transition(current, new)
    result = db.execute(
        update(NotificationBatch)
        .where(NotificationBatch.id == batch_id, NotificationBatch.status == current.value)
        .values(status=new.value, **values)
    )
    return result.rowcount == 1


def increment_batch_counter(db, batch_id: str, counter: str) -> None:
    """Atomically bump `processed_count` or `failed_count` by one."""

    if counter not in BATCH_COUNTERS:
        raise ValueError(f"unknown batch counter: {counter}")
    column = getattr(NotificationBatch, counter)
    db.execute(update(NotificationBatch).where(NotificationBatch.id == batch_id).values({counter: column + 1}))


def count_pending(db, batch_id: str | None = None) -> int:
    stmt = (
        select(func.count())
        .select_from(NotificationQueueItem)
        .where(NotificationQueueItem.status == QueueItemStatus.PENDING.value)
    )
    if batch_id is not None:
        stmt = stmt.where(NotificationQueueItem.batch_id == batch_id)
    return db.execute(stmt).scalar_one()


def update_queue_backlog_metrics(db, service_name: str) -> None:
    """Update service-level gauges for pending queue depth and oldest age."""

    now = datetime.now(timezone.utc)
    pending_count = count_pending(db)
    oldest_pending = db.execute(
        select(func.min(NotificationQueueItem.created_at)).where(
            NotificationQueueItem.status == QueueItemStatus.PENDING.value
        )
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    queue_pending_total.labels(service=service_name).set(float(pending_count))
    queue_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
