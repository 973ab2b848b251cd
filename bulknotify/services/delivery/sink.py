"""Delivery sink: materializes queue items into user-visible notifications."""

import hashlib

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from bulknotify.common.errors import DeliveryFailure
from bulknotify.common.logging import logger
from bulknotify.services.delivery.models import Notification, NotificationQueueItem


DEFAULT_TITLE = "New Training Assigned"
DEFAULT_MESSAGE = "You have been assigned a new training module"


def idempotency_key(item: NotificationQueueItem) -> str:
    """Stable key per recipient, type and batch (or item, for ad-hoc sends)."""

    scope = item.batch_id or f"item:{item.id}"
    raw = f"{item.user_id}|{item.notification_type}|{scope}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class NotificationSink:
    """Insert-only writer for the `notifications` table.

    Runs inside the caller's session so the notification row commits together
    with the queue item's `sent` transition. A row that already holds the
    item's key can only come from a writer outside this service (a backfill,
    another producer on the same table); it is reused instead of inserting
    again.
    """

    def deliver(self, db, item: NotificationQueueItem) -> Notification:
        key = idempotency_key(item)
        existing = db.execute(select(Notification).where(Notification.idempotency_key == key)).scalar_one_or_none()
        if existing is not None:
            logger.info("duplicate delivery skipped queue_item_id=%s notification_id=%s", item.id, existing.id)
            return existing

        data = item.notification_data or {}
        notification = Notification(
            user_id=item.user_id,
            title=data.get("title") or DEFAULT_TITLE,
            message=data.get("message") or DEFAULT_MESSAGE,
            type=item.notification_type,
            data=data,
            idempotency_key=key,
        )
        try:
            db.add(notification)
            db.flush()
        except SQLAlchemyError as exc:
            raise DeliveryFailure(item.id, str(exc)) from exc
        return notification
