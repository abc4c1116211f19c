from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Enum, Float, ForeignKey, Index, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, utcnow
from app.models.enums import HandleAction, MessagePriority


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "NOT handled_by_assistant OR (handled_at IS NOT NULL AND handle_action IS NOT NULL)",
            name="messages_handled_fields_ck",
        ),
        Index("messages_review_idx", "workspace_id", "requires_human_review", "reviewed_at"),
        Index("messages_thread_idx", "workspace_id", "provider_thread_id"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    channel_connection_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("channel_connections.id", ondelete="SET NULL"), nullable=True
    )

    provider_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_thread_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    rfc_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    references_header: Mapped[str | None] = mapped_column(Text, nullable=True)

    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender_email: Mapped[str] = mapped_column(Text, nullable=False)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    priority: Mapped[MessagePriority | None] = mapped_column(
        Enum(MessagePriority, name="message_priority", native_enum=False, length=16),
        nullable=True,
    )
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    requires_human_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)

    handled_by_assistant: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    handled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    handle_action: Mapped[HandleAction | None] = mapped_column(
        Enum(HandleAction, name="handle_action", native_enum=False, length=32),
        nullable=True,
    )
    archived_in_provider: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class Draft(Base):
    __tablename__ = "message_drafts"
    __table_args__ = (
        CheckConstraint(
            "NOT hold_for_review OR (review_reason IS NOT NULL AND review_reason <> '')",
            name="message_drafts_hold_reason_ck",
        ),
        Index("message_drafts_hold_idx", "workspace_id", "hold_for_review"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False)
    message_id: Mapped[UUID] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )

    body: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    hold_for_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    uncertainty_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduling_context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    original_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    edited_at: Mapped[datetime | None] = mapped_column(nullable=True)
    edited_by: Mapped[UUID | None] = mapped_column(nullable=True)
    edit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    auto_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )
