from __future__ import annotations

from app.models.audit import AuditEvent  # noqa: F401
from app.models.auto_send import AutoSendQueueItem  # noqa: F401
from app.models.base import Base as Base  # noqa: F401
from app.models.channels import ChannelConnection  # noqa: F401
from app.models.enums import (  # noqa: F401
    AutoSendStatus,
    ChannelProvider,
    DelayType,
    GateOutcome,
    HandleAction,
    MessagePriority,
    QueueItemSource,
    ReviewAction,
    ReviewReason,
)
from app.models.messages import Draft, Message  # noqa: F401
from app.models.workspace import WorkspaceSettings  # noqa: F401
