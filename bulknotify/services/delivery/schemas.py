"""API request/response schemas for the bulk notification dispatch endpoint."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DispatchRequest(BaseModel):
    """Single payload shape accepted by the dispatch endpoint.

    `action` selects the operation; the remaining fields are read by the
    operation that needs them. Field names follow the camelCase used by the
    intranet frontend.
    """

    model_config = ConfigDict(populate_by_name=True)

    action: str | None = None
    user_ids: list[str] | None = Field(default=None, alias="userIds")
    user_id: str | None = Field(default=None, alias="userId")
    notification_type: str | None = Field(default=None, alias="notificationType")
    notification_data: dict[str, Any] | None = Field(default=None, alias="notificationData")
    batch_id: str | None = Field(default=None, alias="batchId")
    batch_size: int | None = Field(default=None, alias="batchSize")
    created_by: str | None = Field(default=None, alias="createdBy")
    status: str | None = None
    limit: int | None = None


class BatchCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    batch_id: str = Field(alias="batchId")
    total_queued: int = Field(alias="totalQueued")
    processed: int


class PassResult(BaseModel):
    """Outcome of one processing pass; callers re-invoke while `remaining > 0`."""

    processed: int = 0
    remaining: int = 0
    failed: int = 0


class BatchStatusReport(BaseModel):
    """Batch row fields plus a live pending count."""

    id: str
    job_type: str
    total_count: int
    processed_count: int
    failed_count: int
    status: str
    metadata: dict[str, Any]
    created_by: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pending_count: int | None = None


class QueuedNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    queue_item_id: str = Field(alias="queueItemId")
    processed: int
