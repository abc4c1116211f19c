from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class AutoSendCycleResponse(BaseModel):
    processed: int
    sent: int
    failed: int
    retried: int
    cancelled: int
    rescheduled: int
    skipped: int
    errors: list[str]


class FailedQueueItem(BaseModel):
    id: UUID
    message_id: UUID
    draft_id: UUID
    connection_id: UUID
    source: str
    attempts: int
    max_attempts: int
    error_message: str | None
    last_attempt_at: datetime | None
    updated_at: datetime


class FailedQueueItemsResponse(BaseModel):
    items: list[FailedQueueItem]


class RetryQueueItemResponse(BaseModel):
    status: str
    queue_item_id: UUID
    scheduled_send_at: datetime


class ReconnectRequiredItem(BaseModel):
    connection_id: UUID
    provider: str
    account_email: str
    last_error: str | None
    updated_at: datetime


class ReconnectRequiredResponse(BaseModel):
    items: list[ReconnectRequiredItem]
