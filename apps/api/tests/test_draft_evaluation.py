from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import AuditEvent
from app.models.auto_send import AutoSendQueueItem
from app.models.enums import AutoSendStatus, GateOutcome, QueueItemSource
from app.services.auto_send_queue import enqueue_auto_send
from app.services.draft_evaluation import evaluate_draft
from app.services.errors import PolicyError
from app.services.policy import InboxZeroPolicy

NOW = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)


def _events(session: Session, message_id) -> list[str]:
    rows = session.execute(select(AuditEvent).where(AuditEvent.message_id == message_id)).scalars()
    return [r.event_type for r in rows]


def test_confident_draft_is_queued_for_ten_past(db_session: Session, seed) -> None:
    seed.settings()
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    decision = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW)
    db_session.commit()

    assert decision.outcome == GateOutcome.auto_send
    assert decision.scheduled_send_at == NOW + timedelta(minutes=10)
    assert decision.queue_item_id is not None

    item = db_session.get(AutoSendQueueItem, decision.queue_item_id)
    assert item.status == AutoSendStatus.pending
    assert item.source == QueueItemSource.gate
    assert item.scheduled_send_at == datetime(2026, 10, 19, 10, 10, tzinfo=UTC)
    assert item.delay_minutes == 10
    assert item.attempts == 0
    assert item.max_attempts == 3

    by_type = {
        e.event_type: e
        for e in db_session.execute(select(AuditEvent).where(AuditEvent.message_id == msg.id)).scalars()
    }
    assert by_type["gate.decision"].created_at <= by_type["auto_send.queued"].created_at
    assert by_type["gate.decision"].event_data["outcome"] == "auto_send"


def test_low_confidence_flags_message_and_draft(db_session: Session, seed) -> None:
    seed.settings()
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg, confidence_score=0.60)

    decision = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW)
    db_session.commit()

    assert decision.outcome == GateOutcome.hold_for_review
    assert "confidence" in decision.reason
    assert msg.requires_human_review is True
    assert msg.review_reason == "low_confidence"
    assert msg.review_context["details"]["confidence_gap"] == 0.25
    assert draft.hold_for_review is True
    assert draft.review_reason == "low_confidence"
    assert db_session.execute(select(AutoSendQueueItem)).scalars().all() == []


def test_no_policy_row_skips(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    decision = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW)
    assert decision.outcome == GateOutcome.skip
    assert decision.reason_code == "policy_missing"
    assert msg.requires_human_review is False


def test_bad_timezone_degrades_to_review(db_session: Session, seed) -> None:
    seed.settings(timezone="Nowhere/Special")
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    decision = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW)
    assert decision.outcome == GateOutcome.hold_for_review
    assert decision.reason_code == "scheduling_error"
    assert draft.hold_for_review is True


def test_re_evaluation_keeps_single_active_item(db_session: Session, seed) -> None:
    seed.settings(auto_send_delay_type="random", auto_send_delay_min=10, auto_send_delay_max=30)
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    first = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW, rng=random.Random(3))
    second = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW, rng=random.Random(9))
    db_session.commit()

    assert first.queue_item_id == second.queue_item_id
    active = db_session.execute(
        select(AutoSendQueueItem).where(AutoSendQueueItem.message_id == msg.id)
    ).scalars().all()
    assert len(active) == 1
    assert _events(db_session, msg.id).count("auto_send.queued") == 1


def test_enqueue_is_idempotent_per_message(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    first, created_first = enqueue_auto_send(
        session=db_session,
        workspace_id=msg.workspace_id,
        message_id=msg.id,
        draft_id=draft.id,
        connection_id=conn.id,
        scheduled_send_at=NOW,
    )
    second, created_second = enqueue_auto_send(
        session=db_session,
        workspace_id=msg.workspace_id,
        message_id=msg.id,
        draft_id=draft.id,
        connection_id=conn.id,
        scheduled_send_at=NOW + timedelta(hours=1),
    )
    assert created_first is True
    assert created_second is False
    assert first.id == second.id


def test_thread_reply_limit_uses_sent_history(db_session: Session, seed) -> None:
    seed.settings()
    conn = seed.connection()
    earlier = seed.message(connection=conn, provider_thread_id="thread-1")
    earlier_draft = seed.draft(earlier)
    db_session.add(
        AutoSendQueueItem(
            workspace_id=earlier.workspace_id,
            message_id=earlier.id,
            draft_id=earlier_draft.id,
            connection_id=conn.id,
            status=AutoSendStatus.sent,
            scheduled_send_at=NOW - timedelta(days=1),
            sent_at=NOW - timedelta(days=1),
        )
    )
    db_session.flush()

    follow_up = seed.message(connection=conn, provider_thread_id="thread-1", sender_email="carol@example.com")
    draft = seed.draft(follow_up)

    decision = evaluate_draft(session=db_session, message_id=follow_up.id, draft_id=draft.id, now=NOW)
    assert decision.outcome == GateOutcome.skip
    assert decision.reason_code == "thread_reply_limit"


def test_sender_cooldown_uses_last_sent_reply(db_session: Session, seed) -> None:
    seed.settings(sender_cooldown_minutes=60)
    conn = seed.connection()
    earlier = seed.message(connection=conn)
    earlier_draft = seed.draft(earlier)
    db_session.add(
        AutoSendQueueItem(
            workspace_id=earlier.workspace_id,
            message_id=earlier.id,
            draft_id=earlier_draft.id,
            connection_id=conn.id,
            status=AutoSendStatus.sent,
            scheduled_send_at=NOW - timedelta(minutes=20),
            sent_at=NOW - timedelta(minutes=20),
        )
    )
    db_session.flush()

    msg = seed.message(connection=conn)
    draft = seed.draft(msg)
    decision = evaluate_draft(session=db_session, message_id=msg.id, draft_id=draft.id, now=NOW)
    assert decision.reason_code == "sender_cooldown"


class BrokenPolicyStore:
    def auto_send_policy(self, workspace_id):  # type: ignore[no-untyped-def]
        raise PolicyError("policy row is unreadable")

    def inbox_zero_policy(self, workspace_id):  # type: ignore[no-untyped-def]
        return InboxZeroPolicy()


def test_unreadable_policy_is_treated_as_missing(db_session: Session, seed) -> None:
    conn = seed.connection()
    msg = seed.message(connection=conn)
    draft = seed.draft(msg)

    decision = evaluate_draft(
        session=db_session,
        message_id=msg.id,
        draft_id=draft.id,
        policy_store=BrokenPolicyStore(),
        now=NOW,
    )
    assert decision.outcome == GateOutcome.skip
    assert decision.reason_code == "policy_missing"


def test_hold_after_auto_send_cancels_queued_send(db_session: Session, seed) -> None:
    seed.settings()
    conn = seed.connection()
    msg = seed.message(connection=conn)
    confident = seed.draft(msg, body="draft A", confidence_score=0.95)
    shaky = seed.draft(msg, body="draft B", confidence_score=0.5)

    queued = evaluate_draft(session=db_session, message_id=msg.id, draft_id=confident.id, now=NOW)
    held = evaluate_draft(session=db_session, message_id=msg.id, draft_id=shaky.id, now=NOW)
    db_session.commit()

    assert queued.outcome == GateOutcome.auto_send
    assert held.outcome == GateOutcome.hold_for_review
    db_session.expire_all()
    item = db_session.get(AutoSendQueueItem, queued.queue_item_id)
    assert item.status == AutoSendStatus.cancelled
    assert item.error_message == "held for review"
    assert "auto_send.cancelled" in _events(db_session, msg.id)
