from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.http import build_provider_http_client
from app.core.log import log_json
from app.core.metrics import observe_auto_send_cycle, observe_auto_send_result
from app.db.session import get_sessionmaker
from app.models.auto_send import AutoSendQueueItem
from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import AutoSendStatus, HandleAction, QueueItemSource, ReviewReason
from app.models.messages import Draft, Message
from app.services.audit import record_audit_event
from app.services.auto_send_queue import claim_queue_item, list_due_item_ids
from app.services.draft_evaluation import flag_for_review
from app.services.errors import PolicyError, ProviderError, ProviderPermanentError
from app.services.message_handling import handle_message
from app.services.policy import PolicyStore, SqlPolicyStore
from app.services.providers.base import ThreadingInfo, describe_error
from app.services.providers.registry import ProviderRegistry, build_provider_registry
from app.services.send_scheduler import in_send_window, next_window_start

logger = logging.getLogger("autopilot.worker")

MAX_RETRY_BACKOFF_SECONDS = 3600.0


@dataclass(frozen=True)
class WorkerConfig:
    batch_limit: int = 20
    max_concurrency: int = 1
    retry_backoff_seconds: float = 60.0
    poll_interval_seconds: float = 60.0
    worker_id: str = socket.gethostname()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> WorkerConfig:
        s = settings or get_settings()
        return cls(
            batch_limit=s.AUTO_SEND_BATCH_LIMIT,
            max_concurrency=s.AUTO_SEND_MAX_CONCURRENCY,
            retry_backoff_seconds=s.AUTO_SEND_RETRY_BACKOFF_SECONDS,
            poll_interval_seconds=s.AUTO_SEND_POLL_INTERVAL_SECONDS,
        )


@dataclass
class CycleResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    rescheduled: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record(self, outcome: str, error: str | None = None) -> None:
        self.processed += 1
        if outcome == "sent":
            self.sent += 1
        elif outcome == "failed":
            self.failed += 1
        elif outcome == "retry":
            self.retried += 1
        elif outcome == "cancelled":
            self.cancelled += 1
        elif outcome == "rescheduled":
            self.rescheduled += 1
        else:
            self.skipped += 1
        if error:
            self.errors.append(error)


@dataclass(frozen=True)
class _Outcome:
    result: str
    error: str | None = None


def retry_backoff(base_seconds: float, attempts: int) -> timedelta:
    if base_seconds <= 0:
        return timedelta(0)
    return timedelta(seconds=min(MAX_RETRY_BACKOFF_SECONDS, base_seconds * (2 ** max(0, attempts - 1))))


def run_queue_worker_cycle(
    *,
    config: WorkerConfig | None = None,
    registry: ProviderRegistry | None = None,
    policy_store_factory: Callable[[Session], PolicyStore] = SqlPolicyStore,
    now: datetime | None = None,
) -> CycleResult:
    """Claim and dispatch every due auto-send item once.

    A failing item never stops the cycle. Each item gets its own session.
    """
    config = config or WorkerConfig.from_settings()
    started = time.perf_counter()
    now = now or utcnow()

    if registry is None:
        with build_provider_http_client() as client:
            return run_queue_worker_cycle(
                config=config,
                registry=build_provider_registry(client),
                policy_store_factory=policy_store_factory,
                now=now,
            )

    SessionLocal = get_sessionmaker()
    with SessionLocal() as session:
        item_ids = list_due_item_ids(session=session, now=now, limit=config.batch_limit)

    def work(item_id: UUID) -> _Outcome:
        return _process_item(
            item_id=item_id,
            config=config,
            registry=registry,
            policy_store_factory=policy_store_factory,
            now=now,
        )

    result = CycleResult()
    if config.max_concurrency > 1 and len(item_ids) > 1:
        with ThreadPoolExecutor(max_workers=config.max_concurrency) as pool:
            outcomes = list(pool.map(work, item_ids))
    else:
        outcomes = [work(item_id) for item_id in item_ids]

    for outcome in outcomes:
        observe_auto_send_result(result=outcome.result)
        result.record(outcome.result, outcome.error)

    duration_ms = int((time.perf_counter() - started) * 1000)
    observe_auto_send_cycle(duration_ms=duration_ms)
    log_json(
        logger,
        "auto_send.cycle",
        worker_id=config.worker_id,
        due=len(item_ids),
        sent=result.sent,
        failed=result.failed,
        retried=result.retried,
        cancelled=result.cancelled,
        rescheduled=result.rescheduled,
        skipped=result.skipped,
        duration_ms=duration_ms,
    )
    return result


def _process_item(
    *,
    item_id: UUID,
    config: WorkerConfig,
    registry: ProviderRegistry,
    policy_store_factory: Callable[[Session], PolicyStore],
    now: datetime,
) -> _Outcome:
    session = get_sessionmaker()()
    try:
        if not claim_queue_item(session=session, item_id=item_id, worker_id=config.worker_id, now=now):
            session.commit()
            return _Outcome("skipped")
        session.commit()

        item = session.get(AutoSendQueueItem, item_id)
        if item is None:
            return _Outcome("skipped")

        try:
            outcome = _dispatch(
                session=session,
                item=item,
                config=config,
                registry=registry,
                policy_store=policy_store_factory(session),
                now=now,
            )
            session.commit()
        except Exception as e:  # noqa: BLE001
            session.rollback()
            log_json(logger, "auto_send.error", level=logging.ERROR, queue_item_id=str(item_id), error=str(e))
            item = session.get(AutoSendQueueItem, item_id)
            if item is None:
                return _Outcome("skipped", str(e))
            outcome = _record_failure(session=session, item=item, config=config, now=now, error=str(e))
            session.commit()
            return outcome

        if outcome.result == "sent":
            _mark_replied(session=session, item=item, registry=registry, policy_store=policy_store_factory(session))
        return outcome
    finally:
        session.close()


def _dispatch(
    *,
    session: Session,
    item: AutoSendQueueItem,
    config: WorkerConfig,
    registry: ProviderRegistry,
    policy_store: PolicyStore,
    now: datetime,
) -> _Outcome:
    message = session.get(Message, item.message_id)
    draft = session.get(Draft, item.draft_id)
    connection = session.get(ChannelConnection, item.connection_id)
    if message is None or draft is None or connection is None:
        return _record_failure(
            session=session, item=item, config=config, now=now, error="message, draft or connection is missing",
            permanent=True,
        )

    if draft.auto_sent or message.handled_by_assistant:
        return _cancel(session=session, item=item, now=now, reason="message already handled")

    if not connection.is_enabled or connection.needs_reconnect:
        return _record_failure(
            session=session, item=item, config=config, now=now, error="channel connection needs reconnect",
            permanent=True,
        )

    if item.source == QueueItemSource.gate:
        # A reviewer owns the reply now; only a review-sourced item may send it.
        if message.requires_human_review or draft.hold_for_review:
            return _cancel(session=session, item=item, now=now, reason="message awaits review")
        try:
            policy = policy_store.auto_send_policy(item.workspace_id)
        except PolicyError as e:
            return _cancel(session=session, item=item, now=now, reason=f"policy unreadable: {e}")
        if policy is None or not policy.enabled or policy.paused:
            return _cancel(session=session, item=item, now=now, reason="auto-send disabled or paused")
        try:
            inside = in_send_window(now, policy)
            resume_at = None if inside else next_window_start(now, policy)
        except ValueError as e:
            flag_for_review(
                message=message,
                draft=draft,
                reason_code=ReviewReason.scheduling_error.value,
                context={"reason": "could not schedule send", "details": {"error": str(e)}},
            )
            return _cancel(session=session, item=item, now=now, reason=f"invalid send window: {e}")
        if resume_at is not None:
            return _reschedule(session=session, item=item, now=now, resume_at=resume_at)

    threading = ThreadingInfo(
        provider_message_id=message.provider_message_id,
        provider_thread_id=message.provider_thread_id,
        rfc_message_id=message.rfc_message_id,
        references=message.references_header,
        subject=message.subject,
        to_email=message.sender_email,
        to_name=message.sender_name,
    )
    try:
        adapter = registry.get(connection.provider)
        res = adapter.send_reply(connection, threading, draft.body)
    except ProviderPermanentError as e:
        return _record_failure(
            session=session, item=item, config=config, now=now, error=describe_error(e), permanent=True,
            connection=connection, provider_error=e,
        )
    except ProviderError as e:
        return _record_failure(session=session, item=item, config=config, now=now, error=describe_error(e))

    if not res.success:
        return _record_failure(
            session=session, item=item, config=config, now=now, error=res.error or "send failed"
        )

    item.status = AutoSendStatus.sent
    item.sent_at = now
    item.sent_message_id = res.provider_message_id
    item.last_attempt_at = now
    item.error_message = None
    item.locked_at = None
    item.locked_by = None
    draft.auto_sent = True
    draft.auto_sent_at = now

    record_audit_event(
        session=session,
        workspace_id=item.workspace_id,
        actor_user_id=None,
        message_id=item.message_id,
        event_type="auto_send.sent",
        event_data={
            "queue_item_id": str(item.id),
            "draft_id": str(draft.id),
            "source": item.source.value,
            "provider": connection.provider.value,
            "provider_message_id": res.provider_message_id,
        },
    )
    log_json(logger, "auto_send.sent", queue_item_id=str(item.id), provider=connection.provider.value)
    return _Outcome("sent")


def _record_failure(
    *,
    session: Session,
    item: AutoSendQueueItem,
    config: WorkerConfig,
    now: datetime,
    error: str,
    permanent: bool = False,
    connection: ChannelConnection | None = None,
    provider_error: ProviderError | None = None,
) -> _Outcome:
    item.attempts = (item.attempts or 0) + 1
    item.error_message = error
    item.last_attempt_at = now
    item.locked_at = None
    item.locked_by = None

    if permanent or item.attempts >= item.max_attempts:
        item.status = AutoSendStatus.failed
        record_audit_event(
            session=session,
            workspace_id=item.workspace_id,
            actor_user_id=None,
            message_id=item.message_id,
            event_type="auto_send.failed",
            event_data={
                "queue_item_id": str(item.id),
                "attempts": item.attempts,
                "permanent": permanent,
                "error": error,
            },
        )
        if connection is not None and provider_error is not None and _needs_reconnect(provider_error):
            connection.needs_reconnect = True
            connection.last_error = error
            record_audit_event(
                session=session,
                workspace_id=connection.workspace_id,
                actor_user_id=None,
                message_id=item.message_id,
                event_type="channel.reconnect_required",
                event_data={"connection_id": str(connection.id), "error": error},
            )
        log_json(
            logger,
            "auto_send.failed",
            level=logging.WARNING,
            queue_item_id=str(item.id),
            attempts=item.attempts,
            permanent=permanent,
            error=error,
        )
        return _Outcome("failed", error)

    item.status = AutoSendStatus.pending
    item.scheduled_send_at = now + retry_backoff(config.retry_backoff_seconds, item.attempts)
    record_audit_event(
        session=session,
        workspace_id=item.workspace_id,
        actor_user_id=None,
        message_id=item.message_id,
        event_type="auto_send.retry_scheduled",
        event_data={
            "queue_item_id": str(item.id),
            "attempts": item.attempts,
            "next_attempt_at": item.scheduled_send_at.isoformat(),
            "error": error,
        },
    )
    log_json(
        logger,
        "auto_send.retry",
        level=logging.WARNING,
        queue_item_id=str(item.id),
        attempts=item.attempts,
        error=error,
    )
    return _Outcome("retry", error)


def _cancel(*, session: Session, item: AutoSendQueueItem, now: datetime, reason: str) -> _Outcome:
    item.status = AutoSendStatus.cancelled
    item.error_message = reason
    item.locked_at = None
    item.locked_by = None
    record_audit_event(
        session=session,
        workspace_id=item.workspace_id,
        actor_user_id=None,
        message_id=item.message_id,
        event_type="auto_send.cancelled",
        event_data={"queue_item_id": str(item.id), "reason": reason},
    )
    log_json(logger, "auto_send.cancelled", queue_item_id=str(item.id), reason=reason)
    return _Outcome("cancelled")


def _reschedule(*, session: Session, item: AutoSendQueueItem, now: datetime, resume_at: datetime) -> _Outcome:
    item.status = AutoSendStatus.pending
    item.scheduled_send_at = resume_at
    item.locked_at = None
    item.locked_by = None
    record_audit_event(
        session=session,
        workspace_id=item.workspace_id,
        actor_user_id=None,
        message_id=item.message_id,
        event_type="auto_send.rescheduled",
        event_data={"queue_item_id": str(item.id), "scheduled_send_at": resume_at.isoformat()},
    )
    return _Outcome("rescheduled")


def _mark_replied(
    *,
    session: Session,
    item: AutoSendQueueItem,
    registry: ProviderRegistry,
    policy_store: PolicyStore,
) -> None:
    # The send is already committed; inbox-zero bookkeeping must not undo it.
    try:
        handle_message(
            session=session,
            message_id=item.message_id,
            action=HandleAction.auto_replied,
            registry=registry,
            policy_store=policy_store,
        )
        session.commit()
    except Exception as e:  # noqa: BLE001
        session.rollback()
        log_json(
            logger,
            "auto_send.handle_failed",
            level=logging.ERROR,
            queue_item_id=str(item.id),
            message_id=str(item.message_id),
            error=str(e),
        )


def _needs_reconnect(e: ProviderError) -> bool:
    # Credential problems carry no HTTP status; 401/403 are auth or permission failures.
    return e.status_code is None or e.status_code in (401, 403)
