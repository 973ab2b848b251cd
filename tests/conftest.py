"""Shared fixtures: in-memory SQLite store and a service wired to it."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-service-key")
os.environ.setdefault("TRACING_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bulknotify.common.db import Base
from bulknotify.common.errors import DeliveryFailure
from bulknotify.services.delivery import models  # noqa: F401
from bulknotify.services.delivery.service import DeliveryService
from bulknotify.services.delivery.sink import NotificationSink


class FailingSink(NotificationSink):
    """Delivery channel double that rejects selected users."""

    def __init__(self, failing_users=None) -> None:
        self.failing_users = failing_users
        self.calls = 0

    def deliver(self, db, item):
        self.calls += 1
        if self.failing_users is None or item.user_id in self.failing_users:
            raise DeliveryFailure(item.id, "channel unavailable")
        return super().deliver(db, item)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def service(session_factory):
    return DeliveryService(session_factory, chunk_size=2)


@pytest.fixture()
def seed_batch(session_factory):
    """Insert a batch and its pending queue rows directly, without a first pass."""

    from datetime import datetime, timedelta, timezone

    from bulknotify.services.delivery.models import NotificationBatch, NotificationQueueItem

    def _seed(user_ids, max_attempts=3, job_type="training_assigned", data=None, created_at=None):
        created_at = created_at or datetime(2025, 12, 19, 9, 0, tzinfo=timezone.utc)
        with session_factory() as db:
            batch = NotificationBatch(
                job_type=job_type,
                total_count=len(user_ids),
                processed_count=0,
                failed_count=0,
                status="pending",
                metadata_=data or {},
                created_at=created_at,
            )
            db.add(batch)
            db.flush()
            for offset, user_id in enumerate(user_ids):
                db.add(
                    NotificationQueueItem(
                        batch_id=batch.id,
                        user_id=user_id,
                        notification_type=job_type,
                        notification_data=data or {},
                        status="pending",
                        attempts=0,
                        max_attempts=max_attempts,
                        created_at=created_at + timedelta(seconds=offset),
                    )
                )
            db.commit()
            return batch.id

    return _seed
