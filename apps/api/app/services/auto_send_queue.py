from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from fastapi import HTTPException, status
from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.auto_send import AutoSendQueueItem
from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import ACTIVE_AUTO_SEND_STATUSES, AutoSendStatus, QueueItemSource
from app.services.audit import record_audit_event

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def get_active_item(*, session: Session, message_id: UUID) -> AutoSendQueueItem | None:
    return (
        session.execute(
            select(AutoSendQueueItem).where(
                AutoSendQueueItem.message_id == message_id,
                AutoSendQueueItem.status.in_(ACTIVE_AUTO_SEND_STATUSES),
            )
        )
        .scalars()
        .first()
    )


def enqueue_auto_send(
    *,
    session: Session,
    workspace_id: UUID,
    message_id: UUID,
    draft_id: UUID,
    connection_id: UUID,
    scheduled_send_at: datetime,
    confidence_score: float | None = None,
    delay_minutes: int | None = None,
    source: QueueItemSource = QueueItemSource.gate,
    max_attempts: int | None = None,
) -> tuple[AutoSendQueueItem, bool]:
    """Insert a pending item unless the message already has an active one.

    Returns `(item, created)`. The partial unique index on active items makes
    concurrent enqueues for one message collapse onto a single row.
    """
    now = utcnow()
    values = {
        "id": uuid4(),
        "workspace_id": workspace_id,
        "message_id": message_id,
        "draft_id": draft_id,
        "connection_id": connection_id,
        "source": source,
        "status": AutoSendStatus.pending,
        "scheduled_send_at": scheduled_send_at,
        "confidence_score": confidence_score,
        "delay_minutes": delay_minutes,
        "attempts": 0,
        "max_attempts": max_attempts or get_settings().AUTO_SEND_MAX_ATTEMPTS,
        "created_at": now,
        "updated_at": now,
    }

    dialect = session.get_bind().dialect.name
    dialect_insert = _UPSERT_INSERTS.get(dialect)
    if dialect_insert is None:
        existing = get_active_item(session=session, message_id=message_id)
        if existing is not None:
            return existing, False
        session.execute(insert(AutoSendQueueItem).values(**values))
        inserted_id = values["id"]
    else:
        stmt = (
            dialect_insert(AutoSendQueueItem)
            .values(**values)
            .on_conflict_do_nothing()
            .returning(AutoSendQueueItem.id)
        )
        inserted_id = session.execute(stmt).scalar_one_or_none()

    if inserted_id is None:
        existing = get_active_item(session=session, message_id=message_id)
        if existing is None:
            raise RuntimeError(f"auto-send enqueue conflict without an active item for {message_id}")
        return existing, False

    item = session.get(AutoSendQueueItem, inserted_id)
    if item is None:
        raise RuntimeError(f"auto-send item {inserted_id} vanished after insert")
    return item, True


def list_due_item_ids(*, session: Session, now: datetime, limit: int) -> list[UUID]:
    rows = session.execute(
        select(AutoSendQueueItem.id)
        .where(
            AutoSendQueueItem.status == AutoSendStatus.pending,
            AutoSendQueueItem.scheduled_send_at <= now,
            AutoSendQueueItem.attempts < AutoSendQueueItem.max_attempts,
        )
        .order_by(AutoSendQueueItem.scheduled_send_at.asc())
        .limit(max(1, limit))
    ).scalars()
    return list(rows)


def claim_queue_item(*, session: Session, item_id: UUID, worker_id: str, now: datetime) -> bool:
    """Single conditional update; only one caller can move a row out of `pending`."""
    res = session.execute(
        update(AutoSendQueueItem)
        .where(
            AutoSendQueueItem.id == item_id,
            AutoSendQueueItem.status == AutoSendStatus.pending,
        )
        .values(
            status=AutoSendStatus.processing,
            locked_at=now,
            locked_by=worker_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def cancel_pending_for_message(*, session: Session, message_id: UUID, reason: str) -> int:
    now = utcnow()
    res = session.execute(
        update(AutoSendQueueItem)
        .where(
            AutoSendQueueItem.message_id == message_id,
            AutoSendQueueItem.status == AutoSendStatus.pending,
        )
        .values(status=AutoSendStatus.cancelled, error_message=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def list_failed_items(*, session: Session, workspace_id: UUID, limit: int = 50) -> list[AutoSendQueueItem]:
    return list(
        session.execute(
            select(AutoSendQueueItem)
            .where(
                AutoSendQueueItem.workspace_id == workspace_id,
                AutoSendQueueItem.status == AutoSendStatus.failed,
            )
            .order_by(AutoSendQueueItem.updated_at.desc())
            .limit(max(1, min(200, limit)))
        ).scalars()
    )


def retry_failed_item(
    *,
    session: Session,
    workspace_id: UUID,
    item_id: UUID,
    actor_user_id: UUID | None,
    now: datetime | None = None,
) -> AutoSendQueueItem:
    """Re-enqueue a failed send as a fresh pending row; the failed row stays failed."""
    failed = session.get(AutoSendQueueItem, item_id)
    if failed is None or failed.workspace_id != workspace_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue item not found")
    if failed.status != AutoSendStatus.failed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed items can be retried (status is {failed.status.value})",
        )

    item, created = enqueue_auto_send(
        session=session,
        workspace_id=workspace_id,
        message_id=failed.message_id,
        draft_id=failed.draft_id,
        connection_id=failed.connection_id,
        scheduled_send_at=now or utcnow(),
        confidence_score=failed.confidence_score,
        delay_minutes=0,
        source=failed.source,
    )
    if not created:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Message already has an active send",
        )

    record_audit_event(
        session=session,
        workspace_id=workspace_id,
        actor_user_id=actor_user_id,
        message_id=failed.message_id,
        event_type="auto_send.retried",
        event_data={"failed_item_id": str(failed.id), "queue_item_id": str(item.id)},
    )
    return item


def list_reconnect_required(*, session: Session, workspace_id: UUID) -> list[ChannelConnection]:
    return list(
        session.execute(
            select(ChannelConnection)
            .where(
                ChannelConnection.workspace_id == workspace_id,
                ChannelConnection.needs_reconnect.is_(True),
            )
            .order_by(ChannelConnection.updated_at.desc())
        ).scalars()
    )
