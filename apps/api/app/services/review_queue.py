from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.log import log_json
from app.core.metrics import observe_review_action
from app.models.base import utcnow
from app.models.enums import REVIEW_REASON_LABELS, HandleAction, QueueItemSource, ReviewAction
from app.models.messages import Draft, Message
from app.services.audit import record_audit_event
from app.services.auto_send_queue import cancel_pending_for_message, enqueue_auto_send
from app.services.errors import ConsistencyError
from app.services.message_handling import get_message, handle_message
from app.services.providers.registry import ProviderRegistry

logger = logging.getLogger("autopilot.api")


@dataclass(frozen=True)
class ReviewQueueItem:
    id: UUID
    type: str  # message|draft
    message_id: UUID
    draft_id: UUID | None
    subject: str
    sender_email: str
    sender_name: str | None
    review_reason: str
    review_reason_label: str
    review_context: dict | None
    uncertainty_notes: str | None
    draft_body: str | None
    confidence_score: float | None
    timestamp: datetime
    created_at: datetime


@dataclass(frozen=True)
class ReviewActionResult:
    action: ReviewAction
    status: str  # ok|noop
    message_id: UUID
    draft_id: UUID | None = None
    queue_item_id: UUID | None = None
    scheduled_send_at: datetime | None = None
    detail: str | None = None


def reason_label(reason: str | None) -> str:
    if not reason:
        return "needs review"
    return REVIEW_REASON_LABELS.get(reason, reason.replace("_", " "))


def list_review_queue(*, session: Session, workspace_id: UUID, limit: int = 50) -> list[ReviewQueueItem]:
    limit = max(1, min(100, limit))

    flagged = list(
        session.execute(
            select(Message)
            .where(
                Message.workspace_id == workspace_id,
                Message.requires_human_review.is_(True),
                Message.reviewed_at.is_(None),
            )
            .order_by(Message.timestamp.desc())
            .limit(limit)
        ).scalars()
    )

    items: list[ReviewQueueItem] = []
    seen: set[UUID] = set()
    for msg in flagged:
        draft = _latest_draft(session=session, message_id=msg.id)
        items.append(
            _item(
                id=msg.id,
                type="message",
                message=msg,
                draft=draft,
                reason=msg.review_reason,
                context=msg.review_context,
                created_at=msg.created_at,
            )
        )
        seen.add(msg.id)

    held = session.execute(
        select(Draft, Message)
        .join(Message, Message.id == Draft.message_id)
        .where(
            Draft.workspace_id == workspace_id,
            Draft.hold_for_review.is_(True),
            Draft.auto_sent.is_(False),
            Message.handled_by_assistant.is_(False),
        )
        .order_by(Draft.created_at.desc())
        .limit(limit)
    ).all()

    for draft, msg in held:
        if msg.id in seen:
            continue
        items.append(
            _item(
                id=draft.id,
                type="draft",
                message=msg,
                draft=draft,
                reason=draft.review_reason,
                context=None,
                created_at=draft.created_at,
            )
        )
        seen.add(msg.id)

    items.sort(key=lambda i: i.timestamp, reverse=True)
    return items[:limit]


def count_review_queue(*, session: Session, workspace_id: UUID) -> int:
    message_ids = set(
        session.execute(
            select(Message.id).where(
                Message.workspace_id == workspace_id,
                Message.requires_human_review.is_(True),
                Message.reviewed_at.is_(None),
            )
        ).scalars()
    )
    message_ids.update(
        session.execute(
            select(Draft.message_id)
            .join(Message, Message.id == Draft.message_id)
            .where(
                Draft.workspace_id == workspace_id,
                Draft.hold_for_review.is_(True),
                Draft.auto_sent.is_(False),
                Message.handled_by_assistant.is_(False),
            )
        ).scalars()
    )
    return len(message_ids)


def review_approve(
    *,
    session: Session,
    workspace_id: UUID,
    message_id: UUID,
    actor_user_id: UUID | None,
    draft_id: UUID | None = None,
    now: datetime | None = None,
) -> ReviewActionResult:
    """Approve the held draft; it is queued for immediate send without window checks."""
    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)
    return _run(
        ReviewAction.approve,
        message,
        lambda: _approve(
            session=session,
            message=message,
            draft_id=draft_id,
            actor_user_id=actor_user_id,
            now=now or utcnow(),
            edited_body=None,
        ),
    )


def review_edit_and_send(
    *,
    session: Session,
    workspace_id: UUID,
    message_id: UUID,
    edited_body: str,
    actor_user_id: UUID | None,
    draft_id: UUID | None = None,
    now: datetime | None = None,
) -> ReviewActionResult:
    if not (edited_body or "").strip():
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Edited body is empty")

    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)
    return _run(
        ReviewAction.edit_and_send,
        message,
        lambda: _approve(
            session=session,
            message=message,
            draft_id=draft_id,
            actor_user_id=actor_user_id,
            now=now or utcnow(),
            edited_body=edited_body,
        ),
    )


def review_reject(
    *,
    session: Session,
    workspace_id: UUID,
    message_id: UUID,
    actor_user_id: UUID | None,
    notes: str | None = None,
    now: datetime | None = None,
) -> ReviewActionResult:
    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)
    return _run(
        ReviewAction.reject,
        message,
        lambda: _reject(
            session=session,
            message=message,
            actor_user_id=actor_user_id,
            notes=notes,
            now=now or utcnow(),
            action=ReviewAction.reject,
        ),
    )


def review_handle_manually(
    *,
    session: Session,
    workspace_id: UUID,
    message_id: UUID,
    actor_user_id: UUID | None,
    registry: ProviderRegistry,
    notes: str | None = None,
    now: datetime | None = None,
) -> ReviewActionResult:
    """Reviewer dealt with the message outside the assistant."""
    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)

    def run() -> ReviewActionResult:
        _reject(
            session=session,
            message=message,
            actor_user_id=actor_user_id,
            notes=notes,
            now=now or utcnow(),
            action=ReviewAction.handle_manually,
        )
        handled = handle_message(
            session=session,
            message_id=message.id,
            action=HandleAction.manually_handled,
            registry=registry,
            actor_user_id=actor_user_id,
        )
        return ReviewActionResult(
            action=ReviewAction.handle_manually,
            status="ok",
            message_id=message.id,
            detail=handled.error,
        )

    return _run(ReviewAction.handle_manually, message, run)


def _run(action: ReviewAction, message: Message, fn: Callable[[], ReviewActionResult]) -> ReviewActionResult:
    try:
        result = fn()
    except ConsistencyError as e:
        result = ReviewActionResult(action=action, status="noop", message_id=message.id, detail=str(e))
    observe_review_action(action=action.value, status=result.status)
    log_json(logger, "review.action", action=action.value, status=result.status, message_id=str(message.id))
    return result


def _approve(
    *,
    session: Session,
    message: Message,
    draft_id: UUID | None,
    actor_user_id: UUID | None,
    now: datetime,
    edited_body: str | None,
) -> ReviewActionResult:
    action = ReviewAction.edit_and_send if edited_body is not None else ReviewAction.approve
    draft = _resolve_draft(session=session, message=message, draft_id=draft_id)
    _ensure_reviewable(message=message, draft=draft)
    if message.channel_connection_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Message has no channel connection to reply through",
        )

    if edited_body is not None:
        if draft.original_body is None:
            draft.original_body = draft.body
        draft.body = edited_body
        draft.edited_at = now
        draft.edited_by = actor_user_id
        draft.edit_count = (draft.edit_count or 0) + 1

    message.requires_human_review = False
    message.reviewed_at = now
    message.reviewed_by = actor_user_id
    _release_held_drafts(session=session, message=message)
    draft.hold_for_review = False
    draft.review_reason = None
    session.flush()

    # The approved draft replaces whatever the gate had queued for this message.
    superseded = cancel_pending_for_message(
        session=session, message_id=message.id, reason=f"superseded by review {action.value}"
    )
    item, _created = enqueue_auto_send(
        session=session,
        workspace_id=message.workspace_id,
        message_id=message.id,
        draft_id=draft.id,
        connection_id=message.channel_connection_id,
        scheduled_send_at=now,
        confidence_score=draft.confidence_score,
        delay_minutes=0,
        source=QueueItemSource.review,
    )

    event_type = "review.edited_and_sent" if edited_body is not None else "review.approved"
    event_data: dict = {"draft_id": str(draft.id), "queue_item_id": str(item.id)}
    if edited_body is not None:
        event_data["edit_count"] = draft.edit_count
    if superseded:
        event_data["cancelled_queue_items"] = superseded
    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=actor_user_id,
        message_id=message.id,
        event_type=event_type,
        event_data=event_data,
    )

    return ReviewActionResult(
        action=action,
        status="ok",
        message_id=message.id,
        draft_id=draft.id,
        queue_item_id=item.id,
        scheduled_send_at=item.scheduled_send_at,
    )


def _reject(
    *,
    session: Session,
    message: Message,
    actor_user_id: UUID | None,
    notes: str | None,
    now: datetime,
    action: ReviewAction,
) -> ReviewActionResult:
    held = _held_drafts(session=session, message=message)
    if message.handled_by_assistant:
        raise ConsistencyError("message is already handled")
    if not (message.requires_human_review and message.reviewed_at is None) and not held:
        raise ConsistencyError("message is not awaiting review")

    message.requires_human_review = False
    message.reviewed_at = now
    message.reviewed_by = actor_user_id
    message.review_context = {
        **(message.review_context or {}),
        "decision": action.value,
        "notes": notes,
        "decided_at": now.isoformat(),
    }
    _release_held_drafts(session=session, message=message, held=held)

    cancelled = cancel_pending_for_message(session=session, message_id=message.id, reason=f"review {action.value}")
    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=actor_user_id,
        message_id=message.id,
        event_type="review.rejected" if action == ReviewAction.reject else "review.handled_manually",
        event_data={"notes": notes, "cancelled_queue_items": cancelled},
    )
    session.flush()
    return ReviewActionResult(action=action, status="ok", message_id=message.id)


def _held_drafts(*, session: Session, message: Message) -> list[Draft]:
    return list(
        session.execute(
            select(Draft).where(Draft.message_id == message.id, Draft.hold_for_review.is_(True))
        ).scalars()
    )


def _release_held_drafts(*, session: Session, message: Message, held: list[Draft] | None = None) -> None:
    # Any decision on the message settles every held draft, or the message would resurface in the queue.
    for d in held if held is not None else _held_drafts(session=session, message=message):
        d.hold_for_review = False
        d.review_reason = None


def _resolve_draft(*, session: Session, message: Message, draft_id: UUID | None) -> Draft:
    if draft_id is not None:
        draft = session.get(Draft, draft_id)
        if draft is None or draft.message_id != message.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
        return draft
    draft = _latest_draft(session=session, message_id=message.id)
    if draft is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Message has no draft")
    return draft


def _ensure_reviewable(*, message: Message, draft: Draft) -> None:
    if draft.auto_sent:
        raise ConsistencyError("reply was already sent")
    if message.handled_by_assistant:
        raise ConsistencyError("message is already handled")
    in_review = draft.hold_for_review or (message.requires_human_review and message.reviewed_at is None)
    if not in_review:
        raise ConsistencyError("message is not awaiting review")


def _latest_draft(*, session: Session, message_id: UUID) -> Draft | None:
    return (
        session.execute(
            select(Draft).where(Draft.message_id == message_id).order_by(Draft.created_at.desc()).limit(1)
        )
        .scalars()
        .first()
    )


def _item(
    *,
    id: UUID,
    type: str,
    message: Message,
    draft: Draft | None,
    reason: str | None,
    context: dict | None,
    created_at: datetime,
) -> ReviewQueueItem:
    return ReviewQueueItem(
        id=id,
        type=type,
        message_id=message.id,
        draft_id=draft.id if draft is not None else None,
        subject=message.subject or "(no subject)",
        sender_email=message.sender_email,
        sender_name=message.sender_name,
        review_reason=reason or "unspecified",
        review_reason_label=reason_label(reason),
        review_context=context,
        uncertainty_notes=draft.uncertainty_notes if draft is not None else None,
        draft_body=draft.body if draft is not None else None,
        confidence_score=draft.confidence_score if draft is not None else None,
        timestamp=message.timestamp,
        created_at=created_at,
    )
