"""Batch creation: validation, chunked fan-out and the immediate first pass."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from bulknotify.common.db import Base
from bulknotify.common.errors import InvalidRequest, StoreError
from bulknotify.services.delivery.models import Notification, NotificationBatch, NotificationQueueItem
from bulknotify.services.delivery.queue import select_pending_ids
from bulknotify.services.delivery.schemas import PassResult
from bulknotify.services.delivery.sink import DEFAULT_MESSAGE, DEFAULT_TITLE


def _count(session_factory, model):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_create_batch_fans_out_one_pending_item_per_user(service, session_factory, monkeypatch):
    monkeypatch.setattr(service, "process_batch", lambda batch_id=None, batch_size=None: PassResult())

    result = service.create_batch(["a", "b", "c"])

    assert result.total_queued == 3
    with session_factory() as db:
        batch = db.get(NotificationBatch, result.batch_id)
        items = db.execute(
            select(NotificationQueueItem).where(NotificationQueueItem.batch_id == result.batch_id)
        ).scalars().all()
    assert batch.total_count == 3
    assert batch.status == "pending"
    assert batch.job_type == "training_assigned"
    assert sorted(item.user_id for item in items) == ["a", "b", "c"]
    assert all(item.status == "pending" and item.attempts == 0 for item in items)
    assert all(item.max_attempts == 3 for item in items)


def test_empty_user_ids_rejected_before_any_write(service, session_factory):
    with pytest.raises(InvalidRequest):
        service.create_batch([])
    with pytest.raises(InvalidRequest):
        service.create_batch(None)

    assert _count(session_factory, NotificationBatch) == 0
    assert _count(session_factory, NotificationQueueItem) == 0


def test_non_positive_batch_size_rejected(service, session_factory):
    with pytest.raises(InvalidRequest):
        service.create_batch(["a"], batch_size=0)
    assert _count(session_factory, NotificationBatch) == 0


def test_small_batch_completes_in_first_pass(service, session_factory):
    result = service.create_batch(["u1", "u2", "u3", "u4", "u5"])

    assert result.success is True
    assert result.total_queued == 5
    assert result.processed == 5
    with session_factory() as db:
        batch = db.get(NotificationBatch, result.batch_id)
        notifications = db.execute(select(Notification)).scalars().all()
    assert batch.status == "completed"
    assert batch.processed_count == 5
    assert batch.failed_count == 0
    assert batch.started_at is not None
    assert batch.completed_at is not None
    assert {n.title for n in notifications} == {DEFAULT_TITLE}
    assert {n.message for n in notifications} == {DEFAULT_MESSAGE}


def test_payload_and_creator_are_kept(service, session_factory):
    data = {"title": "Fire drill", "message": "Read the SOP", "moduleId": "m-42", "deadline": "2025-12-31"}

    result = service.create_batch(
        ["u1"],
        notification_type="sop_published",
        notification_data=data,
        created_by="hr-7",
    )

    with session_factory() as db:
        batch = db.get(NotificationBatch, result.batch_id)
        notification = db.execute(select(Notification)).scalar_one()
    assert batch.metadata_ == data
    assert batch.created_by == "hr-7"
    assert batch.job_type == "sop_published"
    assert notification.title == "Fire drill"
    assert notification.type == "sop_published"
    assert notification.data["moduleId"] == "m-42"


def test_duplicate_recipients_collapse(service, session_factory):
    result = service.create_batch(["a", "b", "a"])

    assert result.total_queued == 2
    assert _count(session_factory, NotificationQueueItem) == 2
    assert _count(session_factory, Notification) == 2


def test_failed_chunk_is_skipped_and_total_adjusted(service, session_factory, monkeypatch):
    original = service._insert_chunk
    calls = {"n": 0}

    def flaky_insert(*args):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return original(*args)

    monkeypatch.setattr(service, "_insert_chunk", flaky_insert)

    # chunk_size=2: [a, b] ok, [c, d] fails, [e] ok
    result = service.create_batch(["a", "b", "c", "d", "e"])

    assert calls["n"] == 3
    assert result.total_queued == 3
    with session_factory() as db:
        batch = db.get(NotificationBatch, result.batch_id)
        users = db.execute(select(NotificationQueueItem.user_id)).scalars().all()
    assert sorted(users) == ["a", "b", "e"]
    assert batch.total_count == 3
    assert batch.processed_count == 3
    assert batch.status == "completed"


def test_batch_rolled_back_when_no_chunk_lands(service, session_factory, monkeypatch):
    def broken_insert(*_args, **_kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(service, "_insert_chunk", broken_insert)

    with pytest.raises(StoreError):
        service.create_batch(["a", "b", "c"])

    assert _count(session_factory, NotificationBatch) == 0
    assert _count(session_factory, NotificationQueueItem) == 0


def test_batch_insert_failure_writes_no_queue_rows(service, session_factory):
    engine = session_factory.kw["bind"]
    Base.metadata.tables["notification_batches"].drop(engine)

    with pytest.raises(StoreError):
        service.create_batch(["a", "b"])

    assert _count(session_factory, NotificationQueueItem) == 0


def test_pending_order_follows_recipient_order(service, session_factory, monkeypatch):
    monkeypatch.setattr(service, "process_batch", lambda batch_id=None, batch_size=None: PassResult())

    # chunk_size=2 splits these across three chunk inserts
    recipients = ["e", "d", "c", "b", "a"]
    result = service.create_batch(recipients)

    with session_factory() as db:
        ids = select_pending_ids(db, 10, result.batch_id)
        users = [db.get(NotificationQueueItem, item_id).user_id for item_id in ids]
    assert users == recipients
