from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import AuditEvent
from app.models.auto_send import AutoSendQueueItem
from app.models.enums import AutoSendStatus, GateOutcome, HandleAction, QueueItemSource
from app.services.auto_send_queue import enqueue_auto_send
from app.services.draft_evaluation import evaluate_draft
from app.services.review_queue import (
    count_review_queue,
    list_review_queue,
    reason_label,
    review_approve,
    review_edit_and_send,
    review_handle_manually,
    review_reject,
)
from app.worker.auto_send import WorkerConfig, run_queue_worker_cycle

NOW = datetime(2026, 10, 19, 11, 0, tzinfo=UTC)
WORKER = WorkerConfig(worker_id="review-test")


def _held(seed, conn, *, reason="low_confidence", **message_kwargs):
    msg = seed.message(connection=conn, **message_kwargs)
    draft = seed.draft(msg, confidence_score=0.6, hold_for_review=True, review_reason=reason)
    return msg, draft


def test_queue_merges_flagged_messages_and_held_drafts(db_session: Session, seed) -> None:
    conn = seed.connection()
    flagged = seed.message(
        connection=conn,
        requires_human_review=True,
        review_reason="classification_failed",
        timestamp=datetime(2026, 10, 19, 8, 0, tzinfo=UTC),
    )
    both, _ = _held(
        seed,
        conn,
        requires_human_review=True,
        review_reason="low_confidence",
        timestamp=datetime(2026, 10, 19, 10, 0, tzinfo=UTC),
    )
    draft_only_msg, draft_only = _held(
        seed, conn, reason="sensitive_category", timestamp=datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
    )
    seed.message(connection=conn)

    items = list_review_queue(session=db_session, workspace_id=seed.workspace_id)

    assert [i.message_id for i in items] == [both.id, draft_only_msg.id, flagged.id]
    assert items[0].type == "message"
    assert items[0].draft_body == "Thanks, will do."
    assert items[1].type == "draft"
    assert items[1].id == draft_only.id
    assert items[1].review_reason_label == "sensitive category"
    assert items[2].draft_id is None
    assert items[2].review_reason_label == "could not classify"
    assert count_review_queue(session=db_session, workspace_id=seed.workspace_id) == 3


def test_queue_is_scoped_and_limited(db_session: Session, seed) -> None:
    conn = seed.connection()
    for i in range(3):
        _held(seed, conn, timestamp=NOW - timedelta(minutes=i))

    assert len(list_review_queue(session=db_session, workspace_id=seed.workspace_id, limit=2)) == 2
    assert len(list_review_queue(session=db_session, workspace_id=seed.workspace_id, limit=0)) == 1
    assert list_review_queue(session=db_session, workspace_id=uuid4()) == []


def test_reason_labels() -> None:
    assert reason_label("low_confidence") == "low confidence"
    assert reason_label("odd_custom_reason") == "odd custom reason"
    assert reason_label(None) == "needs review"


def test_approve_queues_immediate_review_send(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg, draft = _held(seed, conn, requires_human_review=True, review_reason="low_confidence")
    actor = uuid4()

    result = review_approve(
        session=db_session, workspace_id=seed.workspace_id, message_id=msg.id, actor_user_id=actor, now=NOW
    )

    assert result.status == "ok"
    assert result.draft_id == draft.id
    assert result.scheduled_send_at == NOW
    item = db_session.get(AutoSendQueueItem, result.queue_item_id)
    assert item.source == QueueItemSource.review
    assert item.status == AutoSendStatus.pending
    assert item.delay_minutes == 0
    assert msg.requires_human_review is False
    assert msg.reviewed_by == actor
    assert draft.hold_for_review is False
    assert count_review_queue(session=db_session, workspace_id=seed.workspace_id) == 0

    again = review_approve(
        session=db_session, workspace_id=seed.workspace_id, message_id=msg.id, actor_user_id=actor, now=NOW
    )
    assert again.status == "noop"
    rows = db_session.execute(select(AutoSendQueueItem)).scalars().all()
    assert len(rows) == 1


def test_approve_requires_channel_connection(db_session: Session, seed) -> None:
    msg = seed.message(requires_human_review=True, review_reason="low_confidence")
    seed.draft(msg, hold_for_review=True, review_reason="low_confidence")

    with pytest.raises(HTTPException) as exc:
        review_approve(session=db_session, workspace_id=seed.workspace_id, message_id=msg.id, actor_user_id=None)
    assert exc.value.status_code == 422


def test_approve_unknown_draft_is_404(db_session: Session, seed) -> None:
    msg, _ = _held(seed, seed.connection())
    with pytest.raises(HTTPException) as exc:
        review_approve(
            session=db_session,
            workspace_id=seed.workspace_id,
            message_id=msg.id,
            draft_id=uuid4(),
            actor_user_id=None,
        )
    assert exc.value.status_code == 404


def test_edit_and_send_keeps_original_body(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg, draft = _held(seed, conn)
    actor = uuid4()

    result = review_edit_and_send(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        edited_body="Thanks Alice, I'll have it to you by Friday.",
        actor_user_id=actor,
        now=NOW,
    )

    assert result.status == "ok"
    assert draft.original_body == "Thanks, will do."
    assert draft.body == "Thanks Alice, I'll have it to you by Friday."
    assert draft.edit_count == 1
    assert draft.edited_by == actor
    assert draft.edited_at == NOW
    events = db_session.execute(select(AuditEvent).where(AuditEvent.message_id == msg.id)).scalars().all()
    edited = [e for e in events if e.event_type == "review.edited_and_sent"]
    assert edited[0].event_data["edit_count"] == 1


def test_edit_and_send_rejects_blank_body(db_session: Session, seed) -> None:
    msg, _ = _held(seed, seed.connection())
    with pytest.raises(HTTPException) as exc:
        review_edit_and_send(
            session=db_session,
            workspace_id=seed.workspace_id,
            message_id=msg.id,
            edited_body="   ",
            actor_user_id=None,
        )
    assert exc.value.status_code == 422


def test_reject_clears_flags_and_cancels_pending_send(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg, draft = _held(seed, conn, requires_human_review=True, review_reason="low_confidence",
                       review_context={"reason": "low confidence"})
    item, _ = enqueue_auto_send(
        session=db_session,
        workspace_id=msg.workspace_id,
        message_id=msg.id,
        draft_id=draft.id,
        connection_id=conn.id,
        scheduled_send_at=NOW,
    )

    result = review_reject(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        actor_user_id=None,
        notes="not appropriate",
        now=NOW,
    )

    assert result.status == "ok"
    assert msg.requires_human_review is False
    assert msg.review_context["reason"] == "low confidence"
    assert msg.review_context["decision"] == "reject"
    assert msg.review_context["notes"] == "not appropriate"
    assert draft.hold_for_review is False
    assert msg.handled_by_assistant is False
    db_session.expire_all()
    assert db_session.get(AutoSendQueueItem, item.id).status == AutoSendStatus.cancelled

    again = review_reject(session=db_session, workspace_id=seed.workspace_id, message_id=msg.id, actor_user_id=None)
    assert again.status == "noop"


def test_rejected_send_is_not_dispatched_by_next_cycle(
    db_session: Session, seed, fake_adapter, fake_registry
) -> None:
    seed.settings()
    conn = seed.connection()
    msg, draft = _held(seed, conn, requires_human_review=True, review_reason="low_confidence")
    enqueue_auto_send(
        session=db_session,
        workspace_id=msg.workspace_id,
        message_id=msg.id,
        draft_id=draft.id,
        connection_id=conn.id,
        scheduled_send_at=NOW,
        source=QueueItemSource.review,
    )
    review_reject(session=db_session, workspace_id=seed.workspace_id, message_id=msg.id, actor_user_id=None, now=NOW)
    db_session.commit()

    result = run_queue_worker_cycle(config=WORKER, registry=fake_registry, now=NOW + timedelta(hours=1))

    assert result.processed == 0
    assert fake_adapter.sent == []
    assert again.status == "noop"


def test_handle_manually_marks_message_handled(db_session: Session, seed, fake_adapter, fake_registry) -> None:
    seed.settings()
    msg, draft = _held(seed, seed.connection(), requires_human_review=True, review_reason="low_confidence")

    result = review_handle_manually(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        actor_user_id=None,
        registry=fake_registry,
        now=NOW,
    )

    assert result.status == "ok"
    assert msg.handled_by_assistant is True
    assert msg.handle_action == HandleAction.manually_handled
    assert msg.review_context["decision"] == "handle_manually"
    assert draft.hold_for_review is False
    assert len(fake_adapter.handled) == 1

    again = review_handle_manually(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        actor_user_id=None,
        registry=fake_registry,
    )
    assert again.status == "noop"


def test_actions_on_other_workspace_are_404(db_session: Session, seed) -> None:
    msg, _ = _held(seed, seed.connection())
    with pytest.raises(HTTPException) as exc:
        review_reject(session=db_session, workspace_id=uuid4(), message_id=msg.id, actor_user_id=None)
    assert exc.value.status_code == 404


def test_edit_and_send_replaces_earlier_gate_send(db_session: Session, seed, fake_adapter, fake_registry) -> None:
    seed.settings()
    conn = seed.connection()
    msg = seed.message(connection=conn)
    first = seed.draft(msg, body="draft A", confidence_score=0.95)
    second = seed.draft(msg, body="draft B", confidence_score=0.5)
    queued = evaluate_draft(session=db_session, message_id=msg.id, draft_id=first.id, now=NOW)
    held = evaluate_draft(session=db_session, message_id=msg.id, draft_id=second.id, now=NOW)
    assert (queued.outcome, held.outcome) == (GateOutcome.auto_send, GateOutcome.hold_for_review)

    result = review_edit_and_send(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        draft_id=second.id,
        edited_body="EDITED",
        actor_user_id=None,
        now=NOW,
    )
    db_session.commit()

    db_session.expire_all()
    item = db_session.get(AutoSendQueueItem, result.queue_item_id)
    assert item.draft_id == second.id
    assert item.source == QueueItemSource.review
    assert item.scheduled_send_at == NOW
    assert db_session.get(AutoSendQueueItem, queued.queue_item_id).status == AutoSendStatus.cancelled

    cycle = run_queue_worker_cycle(config=WORKER, registry=fake_registry, now=NOW + timedelta(minutes=30))
    assert cycle.sent == 1
    assert [body for _threading, body in fake_adapter.sent] == ["EDITED"]


def test_approve_settles_every_held_draft(db_session: Session, seed) -> None:
    seed.settings()
    conn = seed.connection()
    msg = seed.message(connection=conn)
    older = seed.draft(msg, body="first try", confidence_score=0.6)
    newer = seed.draft(msg, body="second try", confidence_score=0.7)
    for d in (older, newer):
        evaluate_draft(session=db_session, message_id=msg.id, draft_id=d.id, now=NOW)
    assert len(list_review_queue(session=db_session, workspace_id=seed.workspace_id)) == 1

    result = review_approve(
        session=db_session,
        workspace_id=seed.workspace_id,
        message_id=msg.id,
        draft_id=newer.id,
        actor_user_id=None,
        now=NOW,
    )
    db_session.commit()

    assert result.status == "ok"
    assert older.hold_for_review is False
    assert older.review_reason is None
    assert list_review_queue(session=db_session, workspace_id=seed.workspace_id) == []
    assert count_review_queue(session=db_session, workspace_id=seed.workspace_id) == 0
