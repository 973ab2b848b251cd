"""Status reporting and batch listing."""

from datetime import datetime, timezone

import pytest

from bulknotify.common.errors import InvalidRequest, NotFound


def test_status_reports_counters_and_pending(service, seed_batch):
    batch_id = seed_batch(["u1", "u2", "u3"], data={"title": "Pool closed"})
    service.process_batch(batch_id=batch_id, batch_size=1)

    report = service.get_status(batch_id)

    assert report.id == batch_id
    assert report.total_count == 3
    assert report.processed_count == 1
    assert report.failed_count == 0
    assert report.pending_count == 2
    assert report.status == "processing"
    assert report.metadata == {"title": "Pool closed"}


def test_status_is_idempotent_between_passes(service, seed_batch):
    batch_id = seed_batch(["u1", "u2"])
    service.process_batch(batch_id=batch_id, batch_size=1)

    assert service.get_status(batch_id) == service.get_status(batch_id)


def test_status_unknown_batch(service):
    with pytest.raises(NotFound):
        service.get_status("missing")


def test_status_requires_batch_id(service):
    with pytest.raises(InvalidRequest):
        service.get_status(None)


def test_list_batches_newest_first_with_filter(service, seed_batch):
    old = seed_batch(["u1"], created_at=datetime(2025, 11, 1, tzinfo=timezone.utc))
    new = seed_batch(["u2"], created_at=datetime(2025, 12, 1, tzinfo=timezone.utc))
    service.process_batch(batch_id=old)

    listed = service.list_batches()
    assert [b.id for b in listed] == [new, old]
    assert all(b.pending_count is None for b in listed)

    completed = service.list_batches(status="completed")
    assert [b.id for b in completed] == [old]

    assert [b.id for b in service.list_batches(limit=1)] == [new]


def test_list_batches_rejects_unknown_status(service):
    with pytest.raises(InvalidRequest):
        service.list_batches(status="archived")
