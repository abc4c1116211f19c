from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.log import log_json
from app.models.enums import MessagePriority, ReviewReason
from app.models.messages import Draft, Message
from app.services.audit import record_audit_event
from app.services.confidence_gate import GateDecision
from app.services.draft_evaluation import evaluate_draft, flag_for_review
from app.services.message_handling import HandleResult, get_message, handle_no_action_needed
from app.services.policy import PolicyStore
from app.services.providers.registry import ProviderRegistry

logger = logging.getLogger("autopilot.api")


@dataclass(frozen=True)
class Classification:
    priority: str
    category: str | None = None
    confidence: float | None = None
    needs_reply: bool = True


@dataclass(frozen=True)
class GeneratedDraft:
    body: str
    confidence_score: float
    hold_for_review: bool = False
    review_reason: str | None = None
    uncertainty_notes: str | None = None
    scheduling_context: dict | None = None


class ClassificationService(Protocol):
    def classify(self, message: Message) -> Classification: ...


class DraftGenerator(Protocol):
    def generate(self, message: Message, options: dict | None = None) -> GeneratedDraft: ...


@dataclass(frozen=True)
class PipelineResult:
    stage: str  # classification_failed|no_action|draft_generation_failed|evaluated
    draft_id: UUID | None = None
    decision: GateDecision | None = None
    handled: HandleResult | None = None


def process_incoming_message(
    *,
    session: Session,
    message_id: UUID,
    classifier: ClassificationService,
    generator: DraftGenerator,
    registry: ProviderRegistry | None = None,
    policy_store: PolicyStore | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> PipelineResult:
    """Classify, draft and gate one newly ingested message. Caller commits."""
    message = get_message(session=session, message_id=message_id)

    try:
        classification = classifier.classify(message)
        priority = MessagePriority(str(classification.priority).strip().lower())
    except Exception as e:  # noqa: BLE001
        _flag(session=session, message=message, draft=None, reason=ReviewReason.classification_failed, error=e)
        return PipelineResult(stage="classification_failed")

    message.priority = priority
    message.category = (classification.category or "").strip().lower() or None
    message.classification_confidence = classification.confidence
    session.flush()

    if not classification.needs_reply and registry is not None:
        handled = handle_no_action_needed(
            session=session,
            message_id=message.id,
            registry=registry,
            policy_store=policy_store,
        )
        return PipelineResult(stage="no_action", handled=handled)

    try:
        generated = generator.generate(message, {"category": message.category, "priority": priority.value})
    except Exception as e:  # noqa: BLE001
        _flag(session=session, message=message, draft=None, reason=ReviewReason.draft_generation_failed, error=e)
        return PipelineResult(stage="draft_generation_failed")

    hold = bool(generated.hold_for_review)
    draft = Draft(
        workspace_id=message.workspace_id,
        message_id=message.id,
        body=generated.body,
        confidence_score=generated.confidence_score,
        hold_for_review=hold,
        review_reason=(generated.review_reason or ReviewReason.flagged.value) if hold else None,
        uncertainty_notes=generated.uncertainty_notes,
        scheduling_context=generated.scheduling_context,
    )
    session.add(draft)
    session.flush()

    decision = evaluate_draft(
        session=session,
        message_id=message.id,
        draft_id=draft.id,
        policy_store=policy_store,
        now=now,
        rng=rng,
    )
    return PipelineResult(stage="evaluated", draft_id=draft.id, decision=decision)


def _flag(*, session: Session, message: Message, draft: Draft | None, reason: ReviewReason, error: Exception) -> None:
    flag_for_review(
        message=message,
        draft=draft,
        reason_code=reason.value,
        context={"reason": reason.value.replace("_", " ")},
    )
    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=None,
        message_id=message.id,
        event_type=f"pipeline.{reason.value}",
        event_data={"error": str(error)},
    )
    log_json(
        logger,
        f"pipeline.{reason.value}",
        level=logging.WARNING,
        message_id=str(message.id),
        error=str(error),
    )
    session.flush()
