from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.deps import WorkspaceContext, require_cron_secret, require_workspace
from app.db.session import get_session
from app.schemas.ops import (
    AutoSendCycleResponse,
    FailedQueueItem,
    FailedQueueItemsResponse,
    ReconnectRequiredItem,
    ReconnectRequiredResponse,
    RetryQueueItemResponse,
)
from app.services.auto_send_queue import list_failed_items, list_reconnect_required, retry_failed_item
from app.worker.auto_send import run_queue_worker_cycle

router = APIRouter(prefix="/ops", tags=["ops"])


@router.post(
    "/auto-send/run-cycle",
    response_model=AutoSendCycleResponse,
    dependencies=[Depends(require_cron_secret)],
)
def auto_send_run_cycle() -> AutoSendCycleResponse:
    return AutoSendCycleResponse(**asdict(run_queue_worker_cycle()))


@router.get("/auto-send/failed", response_model=FailedQueueItemsResponse)
def auto_send_failed_list(
    limit: int = Query(default=50, ge=1, le=200),
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> FailedQueueItemsResponse:
    rows = list_failed_items(session=session, workspace_id=ctx.workspace_id, limit=limit)
    return FailedQueueItemsResponse(
        items=[
            FailedQueueItem(
                id=row.id,
                message_id=row.message_id,
                draft_id=row.draft_id,
                connection_id=row.connection_id,
                source=row.source.value,
                attempts=row.attempts,
                max_attempts=row.max_attempts,
                error_message=row.error_message,
                last_attempt_at=row.last_attempt_at,
                updated_at=row.updated_at,
            )
            for row in rows
        ]
    )


@router.post("/auto-send/{item_id}/retry", response_model=RetryQueueItemResponse)
def auto_send_retry(
    item_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> RetryQueueItemResponse:
    item = retry_failed_item(
        session=session,
        workspace_id=ctx.workspace_id,
        item_id=item_id,
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return RetryQueueItemResponse(
        status="queued",
        queue_item_id=item.id,
        scheduled_send_at=item.scheduled_send_at,
    )


@router.get("/channels/reconnect-required", response_model=ReconnectRequiredResponse)
def channels_reconnect_required(
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> ReconnectRequiredResponse:
    rows = list_reconnect_required(session=session, workspace_id=ctx.workspace_id)
    return ReconnectRequiredResponse(
        items=[
            ReconnectRequiredItem(
                connection_id=row.id,
                provider=row.provider.value,
                account_email=row.account_email,
                last_error=row.last_error,
                updated_at=row.updated_at,
            )
            for row in rows
        ]
    )
