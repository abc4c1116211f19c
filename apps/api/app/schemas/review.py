from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class ReviewQueueItemOut(BaseModel):
    id: UUID
    type: str
    message_id: UUID
    draft_id: UUID | None
    subject: str
    sender_email: str
    sender_name: str | None
    review_reason: str
    review_reason_label: str
    review_context: dict[str, Any] | None
    uncertainty_notes: str | None
    draft_body: str | None
    confidence_score: float | None
    timestamp: datetime
    created_at: datetime


class ReviewQueueResponse(BaseModel):
    items: list[ReviewQueueItemOut]


class ReviewQueueCountResponse(BaseModel):
    count: int


class ReviewApproveRequest(BaseModel):
    draft_id: UUID | None = None


class ReviewEditAndSendRequest(BaseModel):
    draft_id: UUID | None = None
    edited_body: str = Field(min_length=1, max_length=100_000)


class ReviewRejectRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)


class ReviewActionResponse(BaseModel):
    action: str
    status: str
    message_id: UUID
    draft_id: UUID | None = None
    queue_item_id: UUID | None = None
    scheduled_send_at: datetime | None = None
    detail: str | None = None
