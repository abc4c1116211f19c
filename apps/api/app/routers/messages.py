from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import WorkspaceContext, get_provider_registry, require_workspace
from app.db.session import get_session
from app.schemas.messages import (
    BatchHandleItem,
    BatchHandleRequest,
    BatchHandleResponse,
    GateDecisionResponse,
    HandleMessageRequest,
    HandleMessageResponse,
    ProviderActionsOut,
)
from app.services.draft_evaluation import evaluate_draft
from app.services.message_handling import (
    HandleOverrides,
    HandleResult,
    batch_handle_messages,
    get_message,
    handle_message,
    restore_message,
)
from app.services.providers.registry import ProviderRegistry

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/batch-handle", response_model=BatchHandleResponse)
def messages_batch_handle(
    payload: BatchHandleRequest,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> BatchHandleResponse:
    result = batch_handle_messages(
        session=session,
        workspace_id=ctx.workspace_id,
        message_ids=payload.message_ids,
        action=payload.action,
        registry=registry,
        overrides=_overrides(payload),
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return BatchHandleResponse(
        total=result.total,
        successful=result.successful,
        failed=result.failed,
        results=[BatchHandleItem(message_id=mid, result=_handle_out(r)) for mid, r in result.results],
    )


@router.post("/{message_id}/drafts/{draft_id}/evaluate", response_model=GateDecisionResponse)
def message_draft_evaluate(
    message_id: UUID,
    draft_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
) -> GateDecisionResponse:
    get_message(session=session, message_id=message_id, workspace_id=ctx.workspace_id)
    decision = evaluate_draft(
        session=session,
        message_id=message_id,
        draft_id=draft_id,
        actor_user_id=ctx.user_id,
    )
    session.commit()
    return GateDecisionResponse(
        outcome=decision.outcome.value,
        reason_code=decision.reason_code,
        reason=decision.reason,
        details=decision.details,
        queue_item_id=decision.queue_item_id,
        scheduled_send_at=decision.scheduled_send_at,
    )


@router.post("/{message_id}/handle", response_model=HandleMessageResponse)
def message_handle(
    message_id: UUID,
    payload: HandleMessageRequest,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> HandleMessageResponse:
    result = handle_message(
        session=session,
        message_id=message_id,
        action=payload.action,
        registry=registry,
        overrides=_overrides(payload),
        actor_user_id=ctx.user_id,
        workspace_id=ctx.workspace_id,
    )
    session.commit()
    return _handle_out(result)


@router.post("/{message_id}/restore", response_model=HandleMessageResponse)
def message_restore(
    message_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> HandleMessageResponse:
    result = restore_message(
        session=session,
        message_id=message_id,
        registry=registry,
        actor_user_id=ctx.user_id,
        workspace_id=ctx.workspace_id,
    )
    session.commit()
    return _handle_out(result)


def _overrides(payload: HandleMessageRequest) -> HandleOverrides:
    return HandleOverrides(
        mark_read=payload.mark_read,
        archive=payload.archive,
        apply_label=payload.apply_label,
    )


def _handle_out(result: HandleResult) -> HandleMessageResponse:
    actions = result.provider_actions
    return HandleMessageResponse(
        success=result.success,
        status=result.status,
        handled_at=result.handled_at,
        archived_in_provider=result.archived_in_provider,
        provider_actions=(
            ProviderActionsOut(
                marked_read=actions.marked_read,
                archived=actions.archived,
                labeled=actions.labeled,
                errors=list(actions.errors),
            )
            if actions is not None
            else None
        ),
        error=result.error,
    )
