from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.audit import AuditEvent


def record_audit_event(
    *,
    session: Session,
    workspace_id: UUID,
    actor_user_id: UUID | None,
    event_type: str,
    event_data: dict[str, Any],
    message_id: UUID | None = None,
) -> AuditEvent:
    """Append an audit row in the caller's transaction. `actor_user_id` is None for automated actions."""
    event = AuditEvent(
        workspace_id=workspace_id,
        message_id=message_id,
        actor_user_id=actor_user_id,
        event_type=event_type,
        event_data=event_data,
    )
    session.add(event)
    session.flush()
    return event
