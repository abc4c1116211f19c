from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.enums import HandleAction


class GateDecisionResponse(BaseModel):
    outcome: str
    reason_code: str
    reason: str
    details: dict[str, Any]
    queue_item_id: UUID | None = None
    scheduled_send_at: datetime | None = None


class HandleMessageRequest(BaseModel):
    action: HandleAction
    mark_read: bool | None = None
    archive: bool | None = None
    apply_label: bool | None = None


class BatchHandleRequest(HandleMessageRequest):
    message_ids: list[UUID] = Field(min_length=1, max_length=200)


class ProviderActionsOut(BaseModel):
    marked_read: bool
    archived: bool
    labeled: bool
    errors: list[str]


class HandleMessageResponse(BaseModel):
    success: bool
    status: str
    handled_at: datetime | None = None
    archived_in_provider: bool = False
    provider_actions: ProviderActionsOut | None = None
    error: str | None = None


class BatchHandleItem(BaseModel):
    message_id: UUID
    result: HandleMessageResponse


class BatchHandleResponse(BaseModel):
    total: int
    successful: int
    failed: int
    results: list[BatchHandleItem]
