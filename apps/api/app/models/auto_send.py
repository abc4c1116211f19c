from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Enum, Float, ForeignKey, Index, Integer, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow
from app.models.enums import AutoSendStatus, QueueItemSource

_ACTIVE_STATUS_SQL = "status IN ('pending', 'processing')"


class AutoSendQueueItem(Base):
    __tablename__ = "auto_send_queue"
    __table_args__ = (
        # At most one non-terminal item per message.
        Index(
            "auto_send_queue_active_message_uq",
            "message_id",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_SQL),
            sqlite_where=text(_ACTIVE_STATUS_SQL),
        ),
        Index("auto_send_queue_due_idx", "status", "scheduled_send_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    message_id: Mapped[UUID] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    draft_id: Mapped[UUID] = mapped_column(
        ForeignKey("message_drafts.id", ondelete="CASCADE"), nullable=False
    )
    connection_id: Mapped[UUID] = mapped_column(
        ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False
    )

    source: Mapped[QueueItemSource] = mapped_column(
        Enum(QueueItemSource, name="auto_send_source", native_enum=False, length=16),
        nullable=False,
        default=QueueItemSource.gate,
    )
    status: Mapped[AutoSendStatus] = mapped_column(
        Enum(AutoSendStatus, name="auto_send_status", native_enum=False, length=16),
        nullable=False,
        default=AutoSendStatus.pending,
    )
    scheduled_send_at: Mapped[datetime] = mapped_column(nullable=False)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )
