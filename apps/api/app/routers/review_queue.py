from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.deps import WorkspaceContext, get_provider_registry, require_workspace
from app.db.session import get_session
from app.schemas.review import (
    ReviewActionResponse,
    ReviewApproveRequest,
    ReviewEditAndSendRequest,
    ReviewQueueCountResponse,
    ReviewQueueItemOut,
    ReviewQueueResponse,
    ReviewRejectRequest,
)
from app.services.providers.registry import ProviderRegistry
from app.services.review_queue import (
    ReviewActionResult,
    count_review_queue,
    list_review_queue,
    review_approve,
    review_edit_and_send,
    review_handle_manually,
    review_reject,
)

router = APIRouter(prefix="/review-queue", tags=["review"])


@router.get("", response_model=ReviewQueueResponse)
def review_queue_list(
    limit: int = Query(default=50, ge=1, le=100),
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReviewQueueResponse:
    items = list_review_queue(session=session, workspace_id=ctx.workspace_id, limit=limit)
    return ReviewQueueResponse(items=[ReviewQueueItemOut(**asdict(i)) for i in items])


@router.get("/count", response_model=ReviewQueueCountResponse)
def review_queue_count(
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReviewQueueCountResponse:
    return ReviewQueueCountResponse(count=count_review_queue(session=session, workspace_id=ctx.workspace_id))


@router.post("/{message_id}/approve", response_model=ReviewActionResponse)
def review_queue_approve(
    message_id: UUID,
    payload: ReviewApproveRequest | None = None,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReviewActionResponse:
    result = review_approve(
        session=session,
        workspace_id=ctx.workspace_id,
        message_id=message_id,
        draft_id=payload.draft_id if payload else None,
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return _out(result)


@router.post("/{message_id}/edit-and-send", response_model=ReviewActionResponse)
def review_queue_edit_and_send(
    message_id: UUID,
    payload: ReviewEditAndSendRequest,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReviewActionResponse:
    result = review_edit_and_send(
        session=session,
        workspace_id=ctx.workspace_id,
        message_id=message_id,
        draft_id=payload.draft_id,
        edited_body=payload.edited_body,
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return _out(result)


@router.post("/{message_id}/reject", response_model=ReviewActionResponse)
def review_queue_reject(
    message_id: UUID,
    payload: ReviewRejectRequest | None = None,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReviewActionResponse:
    result = review_reject(
        session=session,
        workspace_id=ctx.workspace_id,
        message_id=message_id,
        notes=payload.notes if payload else None,
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return _out(result)


@router.post("/{message_id}/handle-manually", response_model=ReviewActionResponse)
def review_queue_handle_manually(
    message_id: UUID,
    payload: ReviewRejectRequest | None = None,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> ReviewActionResponse:
    result = review_handle_manually(
        session=session,
        workspace_id=ctx.workspace_id,
        message_id=message_id,
        notes=payload.notes if payload else None,
        actor_user_id=ctx.user_id,
        registry=registry,
    )
    session.commit()
    return _out(result)


def _out(result: ReviewActionResult) -> ReviewActionResponse:
    return ReviewActionResponse(
        action=result.action.value,
        status=result.status,
        message_id=result.message_id,
        draft_id=result.draft_id,
        queue_item_id=result.queue_item_id,
        scheduled_send_at=result.scheduled_send_at,
        detail=result.detail,
    )
