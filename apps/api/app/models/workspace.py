from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Enum, Float, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, utcnow
from app.models.enums import DelayType


class WorkspaceSettings(Base):
    __tablename__ = "workspace_settings"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)

    auto_send_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_send_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_send_delay_type: Mapped[DelayType] = mapped_column(
        Enum(DelayType, name="auto_send_delay_type", native_enum=False, length=16),
        nullable=False,
        default=DelayType.random,
    )
    auto_send_delay_min: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    auto_send_delay_max: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    auto_send_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.85)
    auto_send_time_start: Mapped[str] = mapped_column(Text, nullable=False, default="09:00")
    auto_send_time_end: Mapped[str] = mapped_column(Text, nullable=False, default="21:00")
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")

    # Eligibility filters; NULL sender patterns means "use the built-in list".
    excluded_categories: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    excluded_sender_patterns: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    domain_allowlist: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    domain_blocklist: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    max_replies_per_thread: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    sender_cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    inbox_zero_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_archive_handled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    apply_handled_label: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )
