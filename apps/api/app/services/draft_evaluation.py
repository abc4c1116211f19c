from __future__ import annotations

import logging
import random
from dataclasses import replace
from datetime import datetime
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.log import log_json
from app.core.metrics import observe_gate_decision
from app.models.auto_send import AutoSendQueueItem
from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import REVIEW_REASON_LABELS, AutoSendStatus, GateOutcome, ReviewReason
from app.models.messages import Draft, Message
from app.services.audit import record_audit_event
from app.services.auto_send_queue import cancel_pending_for_message, enqueue_auto_send
from app.services.confidence_gate import EligibilityFacts, GateDecision, GateInput, evaluate_gate
from app.services.errors import PolicyError
from app.services.policy import PolicyStore, SqlPolicyStore
from app.services.send_scheduler import schedule_send

logger = logging.getLogger("autopilot.api")


def evaluate_draft(
    *,
    session: Session,
    message_id: UUID,
    draft_id: UUID,
    policy_store: PolicyStore | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
    actor_user_id: UUID | None = None,
) -> GateDecision:
    """Run the confidence gate for a draft and apply its outcome.

    The `gate.decision` audit row is written before any queue item. Gate and
    scheduler failures never escape; they degrade to review. Caller commits.
    """
    now = now or utcnow()
    message, draft = _load_pair(session=session, message_id=message_id, draft_id=draft_id)

    if message.handled_by_assistant:
        decision = GateDecision(
            outcome=GateOutcome.skip,
            reason_code="already_handled",
            reason="message is already handled",
        )
        _record_decision(session=session, message=message, draft=draft, decision=decision, actor=actor_user_id)
        return decision

    store = policy_store or SqlPolicyStore(session)
    try:
        policy = store.auto_send_policy(message.workspace_id)
    except PolicyError as e:
        log_json(logger, "policy.error", level=logging.WARNING, workspace_id=str(message.workspace_id), error=str(e))
        policy = None

    try:
        decision = evaluate_gate(_gate_input(session=session, message=message, draft=draft, now=now), policy)
    except Exception as e:  # noqa: BLE001
        log_json(
            logger,
            "gate.error",
            level=logging.ERROR,
            message_id=str(message.id),
            draft_id=str(draft.id),
            error=str(e),
        )
        decision = _review(ReviewReason.flagged, {"error": "gate evaluation failed"})

    if decision.outcome == GateOutcome.auto_send:
        if message.channel_connection_id is None:
            decision = GateDecision(
                outcome=GateOutcome.skip,
                reason_code="no_channel_connection",
                reason="message has no channel connection to reply through",
            )
        else:
            try:
                plan = schedule_send(policy, now=now, rng=rng)
            except ValueError as e:
                log_json(
                    logger,
                    "scheduler.error",
                    level=logging.WARNING,
                    message_id=str(message.id),
                    error=str(e),
                )
                decision = _review(ReviewReason.scheduling_error, {"error": str(e)})
            else:
                decision = replace(
                    decision,
                    scheduled_send_at=plan.scheduled_send_at,
                    details={
                        **decision.details,
                        "delay_minutes": plan.delay_minutes,
                        "adjusted_to_window": plan.adjusted_to_window,
                    },
                )

    _record_decision(session=session, message=message, draft=draft, decision=decision, actor=actor_user_id)

    if decision.outcome == GateOutcome.hold_for_review:
        flag_for_review(
            message=message,
            draft=draft,
            reason_code=decision.reason_code,
            context={"reason": decision.reason, "details": decision.details, "draft_id": str(draft.id)},
        )
        cancelled = cancel_pending_for_message(session=session, message_id=message.id, reason="held for review")
        if cancelled:
            record_audit_event(
                session=session,
                workspace_id=message.workspace_id,
                actor_user_id=actor_user_id,
                message_id=message.id,
                event_type="auto_send.cancelled",
                event_data={"reason": "held for review", "cancelled_queue_items": cancelled},
            )
        session.flush()
        return decision

    if decision.outcome == GateOutcome.skip:
        return decision

    item, created = enqueue_auto_send(
        session=session,
        workspace_id=message.workspace_id,
        message_id=message.id,
        draft_id=draft.id,
        connection_id=message.channel_connection_id,
        scheduled_send_at=decision.scheduled_send_at,
        confidence_score=draft.confidence_score,
        delay_minutes=decision.details.get("delay_minutes"),
    )
    if created:
        record_audit_event(
            session=session,
            workspace_id=message.workspace_id,
            actor_user_id=actor_user_id,
            message_id=message.id,
            event_type="auto_send.queued",
            event_data={
                "queue_item_id": str(item.id),
                "draft_id": str(draft.id),
                "scheduled_send_at": item.scheduled_send_at.isoformat(),
                "delay_minutes": item.delay_minutes,
            },
        )
    return replace(decision, queue_item_id=item.id, scheduled_send_at=item.scheduled_send_at)


def flag_for_review(*, message: Message, draft: Draft | None, reason_code: str, context: dict) -> None:
    message.requires_human_review = True
    message.review_reason = reason_code
    message.review_context = context
    message.reviewed_at = None
    message.reviewed_by = None
    if draft is not None:
        draft.hold_for_review = True
        draft.review_reason = reason_code


def _load_pair(*, session: Session, message_id: UUID, draft_id: UUID) -> tuple[Message, Draft]:
    message = session.get(Message, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    draft = session.get(Draft, draft_id)
    if draft is None or draft.message_id != message.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
    return message, draft


def _gate_input(*, session: Session, message: Message, draft: Draft, now: datetime) -> GateInput:
    flagged = bool(draft.hold_for_review or message.requires_human_review)
    return GateInput(
        confidence_score=draft.confidence_score,
        priority=message.priority.value if message.priority is not None else None,
        category=message.category,
        flagged=flagged,
        flag_reason=(draft.review_reason or message.review_reason) if flagged else None,
        facts=_eligibility_facts(session=session, message=message, now=now),
    )


def _eligibility_facts(*, session: Session, message: Message, now: datetime) -> EligibilityFacts:
    connection_email = None
    if message.channel_connection_id is not None:
        connection = session.get(ChannelConnection, message.channel_connection_id)
        connection_email = connection.account_email if connection is not None else None

    thread_reply_count = 0
    if message.provider_thread_id:
        thread_reply_count = session.execute(
            select(func.count(AutoSendQueueItem.id))
            .join(Message, Message.id == AutoSendQueueItem.message_id)
            .where(
                AutoSendQueueItem.workspace_id == message.workspace_id,
                AutoSendQueueItem.status == AutoSendStatus.sent,
                Message.provider_thread_id == message.provider_thread_id,
            )
        ).scalar_one()

    last_reply_to_sender_at = session.execute(
        select(func.max(AutoSendQueueItem.sent_at))
        .join(Message, Message.id == AutoSendQueueItem.message_id)
        .where(
            AutoSendQueueItem.workspace_id == message.workspace_id,
            AutoSendQueueItem.status == AutoSendStatus.sent,
            func.lower(Message.sender_email) == (message.sender_email or "").strip().lower(),
        )
    ).scalar_one_or_none()

    return EligibilityFacts(
        sender_email=message.sender_email,
        connection_email=connection_email,
        thread_reply_count=int(thread_reply_count or 0),
        last_reply_to_sender_at=last_reply_to_sender_at,
        now=now,
    )


def _record_decision(
    *,
    session: Session,
    message: Message,
    draft: Draft,
    decision: GateDecision,
    actor: UUID | None,
) -> None:
    observe_gate_decision(outcome=decision.outcome.value, reason=decision.reason_code)
    log_json(
        logger,
        "gate.decision",
        message_id=str(message.id),
        draft_id=str(draft.id),
        outcome=decision.outcome.value,
        reason=decision.reason_code,
    )
    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=actor,
        message_id=message.id,
        event_type="gate.decision",
        event_data={
            "draft_id": str(draft.id),
            "outcome": decision.outcome.value,
            "reason_code": decision.reason_code,
            "reason": decision.reason,
            "details": decision.details,
        },
    )


def _review(reason: ReviewReason, details: dict) -> GateDecision:
    return GateDecision(
        outcome=GateOutcome.hold_for_review,
        reason_code=reason.value,
        reason=REVIEW_REASON_LABELS[reason],
        details=details,
    )
