from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.log import log_json
from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import HandleAction
from app.models.messages import Message
from app.services.audit import record_audit_event
from app.services.auto_send_queue import cancel_pending_for_message
from app.services.errors import ConsistencyError, ProviderError
from app.services.policy import InboxZeroPolicy, PolicyStore, SqlPolicyStore
from app.services.providers.base import HandleOptions, ProviderActions, describe_error
from app.services.providers.registry import ProviderRegistry

logger = logging.getLogger("autopilot.api")


@dataclass(frozen=True)
class HandleOverrides:
    mark_read: bool | None = None
    archive: bool | None = None
    apply_label: bool | None = None


@dataclass(frozen=True)
class HandleResult:
    success: bool
    status: str
    handled_at: datetime | None = None
    archived_in_provider: bool = False
    provider_actions: ProviderActions | None = None
    error: str | None = None


@dataclass
class BatchHandleResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    results: list[tuple[UUID, HandleResult]] = field(default_factory=list)


def resolve_handle_options(policy: InboxZeroPolicy, overrides: HandleOverrides | None) -> HandleOptions:
    o = overrides or HandleOverrides()
    return HandleOptions(
        mark_read=True if o.mark_read is None else o.mark_read,
        archive=policy.auto_archive and (True if o.archive is None else o.archive),
        apply_label=policy.apply_label and (True if o.apply_label is None else o.apply_label),
    )


def get_message(*, session: Session, message_id: UUID, workspace_id: UUID | None = None) -> Message:
    message = session.get(Message, message_id)
    if message is None or (workspace_id is not None and message.workspace_id != workspace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return message


def handle_message(
    *,
    session: Session,
    message_id: UUID,
    action: HandleAction,
    registry: ProviderRegistry,
    overrides: HandleOverrides | None = None,
    policy_store: PolicyStore | None = None,
    actor_user_id: UUID | None = None,
    workspace_id: UUID | None = None,
) -> HandleResult:
    """Mark a message handled and apply the inbox-zero side effects in its provider.

    Provider failures are recorded on the result; the DB transition happens
    regardless. Handling an already handled message is a no-op. Caller commits.
    """
    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)
    try:
        return _handle(
            session=session,
            message=message,
            action=action,
            registry=registry,
            overrides=overrides,
            policy_store=policy_store or SqlPolicyStore(session),
            actor_user_id=actor_user_id,
        )
    except ConsistencyError as e:
        return HandleResult(
            success=True,
            status="noop",
            handled_at=message.handled_at,
            archived_in_provider=message.archived_in_provider,
            error=str(e),
        )


def handle_no_action_needed(
    *,
    session: Session,
    message_id: UUID,
    registry: ProviderRegistry,
    policy_store: PolicyStore | None = None,
) -> HandleResult:
    return handle_message(
        session=session,
        message_id=message_id,
        action=HandleAction.classified_no_action,
        registry=registry,
        overrides=HandleOverrides(mark_read=True, archive=True, apply_label=True),
        policy_store=policy_store,
    )


def batch_handle_messages(
    *,
    session: Session,
    workspace_id: UUID,
    message_ids: list[UUID],
    action: HandleAction,
    registry: ProviderRegistry,
    overrides: HandleOverrides | None = None,
    policy_store: PolicyStore | None = None,
    actor_user_id: UUID | None = None,
) -> BatchHandleResult:
    store = policy_store or SqlPolicyStore(session)
    out = BatchHandleResult(total=len(message_ids))

    for message_id in message_ids:
        message = session.get(Message, message_id)
        if message is None or message.workspace_id != workspace_id:
            result = HandleResult(success=False, status="not_found", error="Message not found")
        else:
            try:
                result = _handle(
                    session=session,
                    message=message,
                    action=action,
                    registry=registry,
                    overrides=overrides,
                    policy_store=store,
                    actor_user_id=actor_user_id,
                )
            except ConsistencyError as e:
                result = HandleResult(
                    success=True,
                    status="noop",
                    handled_at=message.handled_at,
                    archived_in_provider=message.archived_in_provider,
                    error=str(e),
                )

        out.results.append((message_id, result))
        if result.success:
            out.successful += 1
        else:
            out.failed += 1

    return out


def restore_message(
    *,
    session: Session,
    message_id: UUID,
    registry: ProviderRegistry,
    actor_user_id: UUID | None = None,
    workspace_id: UUID | None = None,
) -> HandleResult:
    """Undo handling. DB fields are reset whether or not the provider restore succeeds."""
    message = get_message(session=session, message_id=message_id, workspace_id=workspace_id)
    if not message.handled_by_assistant:
        return HandleResult(success=True, status="noop", error="message is not handled")

    restore_error = None
    provider_restored = False
    connection = _connection_for(session=session, message=message)
    if connection is not None and message.provider_message_id:
        try:
            res = registry.get(connection.provider).restore(connection, message.provider_message_id)
        except ProviderError as e:
            restore_error = describe_error(e)
        else:
            provider_restored = res.success
            restore_error = res.error

    previous_action = message.handle_action
    message.handled_by_assistant = False
    message.handled_at = None
    message.handle_action = None
    message.archived_in_provider = False

    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=actor_user_id,
        message_id=message.id,
        event_type="message.restored",
        event_data={
            "previous_action": previous_action.value if previous_action is not None else None,
            "provider_restored": provider_restored,
            "provider_error": restore_error,
        },
    )
    log_json(
        logger,
        "message.restored",
        message_id=str(message.id),
        provider_restored=provider_restored,
        provider_error=restore_error,
    )
    session.flush()
    return HandleResult(success=True, status="restored", error=restore_error)


def _handle(
    *,
    session: Session,
    message: Message,
    action: HandleAction,
    registry: ProviderRegistry,
    overrides: HandleOverrides | None,
    policy_store: PolicyStore,
    actor_user_id: UUID | None,
) -> HandleResult:
    if message.handled_by_assistant:
        raise ConsistencyError(f"message already handled ({message.handle_action})")

    policy = policy_store.inbox_zero_policy(message.workspace_id)
    options = resolve_handle_options(policy, overrides)

    actions: ProviderActions | None = None
    connection = _connection_for(session=session, message=message)
    if policy.enabled and connection is not None and message.provider_message_id:
        try:
            actions = registry.get(connection.provider).mark_handled(
                connection, message.provider_message_id, options
            )
        except ProviderError as e:
            actions = ProviderActions(errors=(describe_error(e),))

    handled_at = utcnow()
    archived = bool(actions and actions.archived)
    message.handled_by_assistant = True
    message.handled_at = handled_at
    message.handle_action = action
    message.archived_in_provider = archived

    if action != HandleAction.auto_replied:
        cancel_pending_for_message(session=session, message_id=message.id, reason=f"message {action.value}")

    record_audit_event(
        session=session,
        workspace_id=message.workspace_id,
        actor_user_id=actor_user_id,
        message_id=message.id,
        event_type="message.handled",
        event_data={
            "action": action.value,
            "archived_in_provider": archived,
            "provider_actions": _actions_dict(actions),
        },
    )
    log_json(
        logger,
        "message.handled",
        message_id=str(message.id),
        action=action.value,
        archived_in_provider=archived,
    )
    session.flush()

    return HandleResult(
        success=True,
        status="handled",
        handled_at=handled_at,
        archived_in_provider=archived,
        provider_actions=actions,
        error="; ".join(actions.errors) if actions and actions.errors else None,
    )


def _connection_for(*, session: Session, message: Message) -> ChannelConnection | None:
    if message.channel_connection_id is None:
        return None
    return session.get(ChannelConnection, message.channel_connection_id)


def _actions_dict(actions: ProviderActions | None) -> dict | None:
    if actions is None:
        return None
    return {
        "marked_read": actions.marked_read,
        "archived": actions.archived,
        "labeled": actions.labeled,
        "errors": list(actions.errors),
    }
