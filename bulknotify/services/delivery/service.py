"""Bulk notification delivery logic.

Fans one batch request out into per-recipient queue rows, drains the queue in
bounded passes with at-least-once delivery, and keeps batch progress counters
in step with item outcomes.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from bulknotify.common.config import settings
from bulknotify.common.errors import InvalidRequest, NotFound, StoreError
from bulknotify.common.logging import batch_id_ctx, logger, queue_item_id_ctx
from bulknotify.common.metrics import (
    batches_created_total,
    claims_lost_total,
    delivery_retries_total,
    notifications_failed_total,
    notifications_sent_total,
    processing_pass_seconds,
    queue_chunk_failures_total,
    queue_items_enqueued_total,
)
from bulknotify.common.state_machine import BatchStatus, QueueItemStatus, is_terminal
from bulknotify.common.tracing import tracer
from bulknotify.services.delivery.models import NotificationBatch, NotificationQueueItem
from bulknotify.services.delivery.queue import (
    claim_queue_item,
    count_pending,
    fail_queue_item,
    increment_batch_counter,
    mark_queue_item_sent,
    release_queue_item,
    select_pending_ids,
    transition_batch,
    update_queue_backlog_metrics,
)
from bulknotify.services.delivery.schemas import BatchCreated, BatchStatusReport, PassResult, QueuedNotification
from bulknotify.services.delivery.sink import NotificationSink


SENT = "sent"
RETRY = "retry"
FAILED = "failed"
SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _report(batch: NotificationBatch, pending_count: int | None = None) -> BatchStatusReport:
    return BatchStatusReport(
        id=batch.id,
        job_type=batch.job_type,
        total_count=batch.total_count,
        processed_count=batch.processed_count,
        failed_count=batch.failed_count,
        status=batch.status,
        metadata=batch.metadata_ or {},
        created_by=batch.created_by,
        created_at=batch.created_at,
        started_at=batch.started_at,
        completed_at=batch.completed_at,
        pending_count=pending_count,
    )


class DeliveryService:
    """Owns batch fan-out, queue draining and progress reporting."""

    def __init__(
        self,
        session_factory,
        sink: NotificationSink | None = None,
        service_name: str = "bulk-notification",
        chunk_size: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.sink = sink or NotificationSink()
        self.service_name = service_name
        self.chunk_size = chunk_size or settings.queue_chunk_size
        self.max_attempts = max_attempts or settings.max_attempts

    def _batch_size(self, batch_size: int | None) -> int:
        if batch_size is None:
            return settings.default_batch_size
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise InvalidRequest("batchSize must be a positive integer")
        return batch_size

    # -- Batch creation -------------------------------------------------

    def create_batch(
        self,
        user_ids: list[str] | None,
        notification_type: str | None = None,
        notification_data: dict | None = None,
        batch_size: int | None = None,
        created_by: str | None = None,
    ) -> BatchCreated:
        """Persist a batch, fan recipients into queue rows, then run one pass.

        Duplicate recipient ids collapse to one queue row. Chunks that fail to
        insert are logged and skipped; `total_count` is then lowered to the
        number of rows actually queued.
        """

        if not user_ids:
            raise InvalidRequest("userIds required")
        batch_size = self._batch_size(batch_size)
        recipients = list(dict.fromkeys(user_ids))
        notification_type = notification_type or settings.default_job_type
        data = dict(notification_data or {})

        try:
            with self.session_factory() as db:
                batch = NotificationBatch(
                    job_type=notification_type,
                    total_count=len(recipients),
                    processed_count=0,
                    failed_count=0,
                    status=BatchStatus.PENDING.value,
                    metadata_=data,
                    created_by=created_by,
                )
                db.add(batch)
                db.commit()
                batch_id = batch.id
        except SQLAlchemyError as exc:
            logger.error("batch insert failed job_type=%s error=%s", notification_type, exc)
            raise StoreError(f"batch insert failed: {exc}") from exc

        token = batch_id_ctx.set(batch_id)
        try:
            batches_created_total.labels(service=self.service_name, job_type=notification_type).inc()

            queued = 0
            enqueued_at = _utcnow()
            for start in range(0, len(recipients), self.chunk_size):
                chunk = recipients[start : start + self.chunk_size]
                try:
                    with self.session_factory() as db:
                        self._insert_chunk(db, batch_id, chunk, notification_type, data, enqueued_at, start)
                        db.commit()
                    queued += len(chunk)
                    queue_items_enqueued_total.labels(service=self.service_name).inc(len(chunk))
                except SQLAlchemyError as exc:
                    queue_chunk_failures_total.labels(service=self.service_name).inc()
                    logger.error(
                        "queue chunk insert failed batch_id=%s offset=%s size=%s error=%s",
                        batch_id,
                        start,
                        len(chunk),
                        exc,
                    )

            if queued != len(recipients):
                self._reconcile_total(batch_id, requested=len(recipients), queued=queued)

            logger.info("batch created batch_id=%s job_type=%s queued=%s", batch_id, notification_type, queued)
            result = self.process_batch(batch_id=batch_id, batch_size=batch_size)
        finally:
            batch_id_ctx.reset(token)
        return BatchCreated(batch_id=batch_id, total_queued=queued, processed=result.processed)

    def _insert_chunk(
        self,
        db,
        batch_id: str,
        user_ids: list[str],
        notification_type: str,
        data: dict,
        enqueued_at: datetime,
        offset: int,
    ) -> None:
        # One microsecond per recipient position keeps oldest-first equal to request order.
        db.add_all(
            [
                NotificationQueueItem(
                    batch_id=batch_id,
                    user_id=user_id,
                    notification_type=notification_type,
                    notification_data=data,
                    status=QueueItemStatus.PENDING.value,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    created_at=enqueued_at + timedelta(microseconds=offset + position),
                )
                for position, user_id in enumerate(user_ids)
            ]
        )
        db.flush()

    def _reconcile_total(self, batch_id: str, requested: int, queued: int) -> None:
        """Align `total_count` with rows that exist, or drop an empty batch."""

        try:
            with self.session_factory() as db:
                if queued == 0:
                    db.execute(delete(NotificationBatch).where(NotificationBatch.id == batch_id))
                else:
                    db.execute(
                        update(NotificationBatch).where(NotificationBatch.id == batch_id).values(total_count=queued)
                    )
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"batch total reconcile failed: {exc}") from exc

        if queued == 0:
            logger.error("batch rolled back, no queue rows written batch_id=%s requested=%s", batch_id, requested)
            raise StoreError("no queue rows could be written for batch")
        logger.warning("batch total adjusted batch_id=%s requested=%s queued=%s", batch_id, requested, queued)

    def enqueue_notification(
        self,
        user_id: str | None,
        notification_type: str | None = None,
        notification_data: dict | None = None,
    ) -> QueuedNotification:
        """Queue one ad-hoc notification outside any batch and try it once."""

        if not user_id:
            raise InvalidRequest("userId required")
        try:
            with self.session_factory() as db:
                item = NotificationQueueItem(
                    batch_id=None,
                    user_id=user_id,
                    notification_type=notification_type or settings.default_job_type,
                    notification_data=dict(notification_data or {}),
                    status=QueueItemStatus.PENDING.value,
                    attempts=0,
                    max_attempts=self.max_attempts,
                )
                db.add(item)
                db.commit()
                item_id = item.id
        except SQLAlchemyError as exc:
            raise StoreError(f"queue insert failed: {exc}") from exc

        outcome, _ = self._process_item(item_id)
        return QueuedNotification(queue_item_id=item_id, processed=1 if outcome == SENT else 0)

    # -- Processing -----------------------------------------------------

    def process_batch(self, batch_id: str | None = None, batch_size: int | None = None) -> PassResult:
        """Run one bounded pass over pending items, oldest first.

        Scoped to `batch_id` when given, otherwise system-wide. An unknown
        batch yields an empty result. Per-item delivery failures never abort
        the pass.
        """

        batch_size = self._batch_size(batch_size)
        scoped = batch_id is not None
        token = batch_id_ctx.set(batch_id) if scoped else None
        try:
            return self._run_pass(batch_id, batch_size, scoped)
        finally:
            if token is not None:
                batch_id_ctx.reset(token)

    def _run_pass(self, batch_id: str | None, batch_size: int, scoped: bool) -> PassResult:
        with tracer.start_as_current_span("notification.process_batch"), processing_pass_seconds.labels(
            service=self.service_name, scoped=str(scoped).lower()
        ).time():
            try:
                with self.session_factory() as db:
                    if scoped and db.get(NotificationBatch, batch_id) is None:
                        logger.info("process_batch unknown batch batch_id=%s", batch_id)
                        return PassResult()
                    candidate_ids = select_pending_ids(db, batch_size, batch_id)
                    if scoped and candidate_ids:
                        self._start_batch(db, batch_id)
                    db.commit()
            except SQLAlchemyError as exc:
                raise StoreError(f"pending selection failed: {exc}") from exc

            processed = 0
            failed = 0
            touched: set[str] = set()
            for item_id in candidate_ids:
                outcome, item_batch_id = self._process_item(item_id)
                if outcome == SENT:
                    processed += 1
                elif outcome == FAILED:
                    failed += 1
                if item_batch_id:
                    touched.add(item_batch_id)

            try:
                with self.session_factory() as db:
                    if scoped:
                        remaining = self._finalize_batch(db, batch_id)
                    else:
                        for touched_id in sorted(touched):
                            self._finalize_batch(db, touched_id)
                        remaining = count_pending(db)
                    update_queue_backlog_metrics(db, self.service_name)
                    db.commit()
            except SQLAlchemyError as exc:
                raise StoreError(f"pass bookkeeping failed: {exc}") from exc

        logger.info(
            "pass finished batch_id=%s processed=%s failed=%s remaining=%s",
            batch_id,
            processed,
            failed,
            remaining,
        )
        return PassResult(processed=processed, remaining=remaining, failed=failed)

    def _start_batch(self, db, batch_id: str) -> None:
        if transition_batch(db, batch_id, BatchStatus.PENDING, BatchStatus.PROCESSING, started_at=_utcnow()):
            logger.info("batch started batch_id=%s", batch_id)

    def _finalize_batch(self, db, batch_id: str) -> int:
        """Complete the batch once nothing is pending; returns the pending count."""

        remaining = count_pending(db, batch_id)
        if remaining:
            return remaining
        batch = db.get(NotificationBatch, batch_id)
        if batch is None or is_terminal(BatchStatus(batch.status)):
            return 0
        if batch.status == BatchStatus.PENDING.value:
            self._start_batch(db, batch_id)
        if transition_batch(db, batch_id, BatchStatus.PROCESSING, BatchStatus.COMPLETED, completed_at=_utcnow()):
            logger.info("batch completed batch_id=%s", batch_id)
        return 0

    def _process_item(self, item_id: str) -> tuple[str, str | None]:
        """Claim, deliver and record the outcome of one queue item."""

        token = queue_item_id_ctx.set(item_id)
        try:
            try:
                with self.session_factory() as db:
                    claimed = claim_queue_item(db, item_id)
                    db.commit()
                    if not claimed:
                        claims_lost_total.labels(service=self.service_name).inc()
                        logger.info("claim lost queue_item_id=%s", item_id)
                        return SKIPPED, None
                    item = db.get(NotificationQueueItem, item_id)
                    batch_id = item.batch_id
                    notification_type = item.notification_type
                    if batch_id is not None:
                        self._start_batch(db, batch_id)
                        db.commit()
            except SQLAlchemyError as exc:
                raise StoreError(f"claim failed for queue item {item_id}: {exc}") from exc

            try:
                with self.session_factory() as db:
                    item = db.get(NotificationQueueItem, item_id)
                    self.sink.deliver(db, item)
                    mark_queue_item_sent(db, item_id)
                    if batch_id is not None:
                        increment_batch_counter(db, batch_id, "processed_count")
                    db.commit()
                notifications_sent_total.labels(service=self.service_name, notification_type=notification_type).inc()
                return SENT, batch_id
            except Exception as exc:
                logger.warning("delivery attempt failed queue_item_id=%s error=%s", item_id, exc)
                return self._record_failure(item_id, batch_id, notification_type, str(exc)), batch_id
        finally:
            queue_item_id_ctx.reset(token)

    def _record_failure(self, item_id: str, batch_id: str | None, notification_type: str, reason: str) -> str:
        try:
            with self.session_factory() as db:
                item = db.get(NotificationQueueItem, item_id)
                if item.attempts < item.max_attempts:
                    release_queue_item(db, item_id, reason)
                    db.commit()
                    delivery_retries_total.labels(
                        service=self.service_name, notification_type=notification_type
                    ).inc()
                    return RETRY
                fail_queue_item(db, item_id, reason)
                if batch_id is not None:
                    increment_batch_counter(db, batch_id, "failed_count")
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"failure bookkeeping failed for queue item {item_id}: {exc}") from exc
        notifications_failed_total.labels(service=self.service_name, notification_type=notification_type).inc()
        logger.error("queue item failed permanently queue_item_id=%s attempts=%s", item_id, item.attempts)
        return FAILED

    # -- Reporting ------------------------------------------------------

    def get_status(self, batch_id: str | None) -> BatchStatusReport:
        """Batch fields plus a fresh count of its pending items. Read-only."""

        if not batch_id:
            raise InvalidRequest("batchId required")
        try:
            with self.session_factory() as db:
                batch = db.get(NotificationBatch, batch_id)
                if batch is None:
                    raise NotFound(f"batch {batch_id} not found")
                return _report(batch, count_pending(db, batch_id))
        except SQLAlchemyError as exc:
            raise StoreError(f"status query failed: {exc}") from exc

    def list_batches(self, status: str | None = None, limit: int | None = None) -> list[BatchStatusReport]:
        """Newest-first batch listing for the admin batches page."""

        limit = 50 if limit is None else limit
        if limit <= 0:
            raise InvalidRequest("limit must be a positive integer")
        stmt = select(NotificationBatch).order_by(NotificationBatch.created_at.desc()).limit(limit)
        if status is not None:
            try:
                stmt = stmt.where(NotificationBatch.status == BatchStatus(status).value)
            except ValueError as exc:
                raise InvalidRequest(f"unknown batch status: {status}") from exc
        try:
            with self.session_factory() as db:
                return [_report(batch) for batch in db.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise StoreError(f"batch listing failed: {exc}") from exc
