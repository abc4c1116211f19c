from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.enums import DelayType
from app.services.errors import PolicyError
from app.models.workspace import WorkspaceSettings

# System and bulk senders that should never receive an automated reply.
DEFAULT_EXCLUDED_SENDER_PATTERNS: tuple[str, ...] = (
    "noreply@",
    "no-reply@",
    "no_reply@",
    "donotreply@",
    "do-not-reply@",
    "do_not_reply@",
    "mailer-daemon@",
    "mailerdaemon@",
    "postmaster@",
    "daemon@",
    "bounce@",
    "bounces@",
    "notifications@",
    "notification@",
    "email-notifications@",
    "alert@",
    "alerts@",
    "system@",
    "automated@",
    "auto@",
    "news@",
    "newsletter@",
    "marketing@",
    "promo@",
    "promotions@",
    "updates@",
    "info@",
    "support@",
    "feedback@",
    "survey@",
)

DEFAULT_EXCLUDED_CATEGORIES: tuple[str, ...] = ("marketing", "newsletter", "junk_email", "social")


@dataclass(frozen=True)
class AutoSendPolicy:
    enabled: bool = False
    paused: bool = False
    delay_type: DelayType = DelayType.random
    delay_min: int = 10
    delay_max: int = 30
    confidence_threshold: float = 0.85
    window_start: str = "09:00"
    window_end: str = "21:00"
    timezone: str = "UTC"
    excluded_categories: tuple[str, ...] = DEFAULT_EXCLUDED_CATEGORIES
    excluded_sender_patterns: tuple[str, ...] = DEFAULT_EXCLUDED_SENDER_PATTERNS
    domain_allowlist: tuple[str, ...] = ()
    domain_blocklist: tuple[str, ...] = ()
    max_replies_per_thread: int = 1
    sender_cooldown_minutes: int = 60


@dataclass(frozen=True)
class InboxZeroPolicy:
    enabled: bool = True
    auto_archive: bool = True
    apply_label: bool = True


class PolicyStore(Protocol):
    def auto_send_policy(self, workspace_id: UUID) -> AutoSendPolicy | None: ...

    def inbox_zero_policy(self, workspace_id: UUID) -> InboxZeroPolicy: ...


class SqlPolicyStore:
    """Reads workspace policy rows; callers fetch once per evaluation."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _row(self, workspace_id: UUID) -> WorkspaceSettings | None:
        return (
            self._session.execute(
                select(WorkspaceSettings).where(WorkspaceSettings.workspace_id == workspace_id)
            )
            .scalars()
            .first()
        )

    def auto_send_policy(self, workspace_id: UUID) -> AutoSendPolicy | None:
        row = self._row(workspace_id)
        if row is None:
            return None
        try:
            delay_type = DelayType(row.auto_send_delay_type)
        except ValueError as e:
            raise PolicyError(f"unknown delay type {row.auto_send_delay_type!r}") from e
        return AutoSendPolicy(
            enabled=row.auto_send_enabled,
            paused=row.auto_send_paused,
            delay_type=delay_type,
            delay_min=row.auto_send_delay_min,
            delay_max=row.auto_send_delay_max,
            confidence_threshold=row.auto_send_confidence_threshold,
            window_start=row.auto_send_time_start,
            window_end=row.auto_send_time_end,
            timezone=row.timezone or "UTC",
            excluded_categories=_as_tuple(row.excluded_categories, DEFAULT_EXCLUDED_CATEGORIES),
            excluded_sender_patterns=_as_tuple(
                row.excluded_sender_patterns, DEFAULT_EXCLUDED_SENDER_PATTERNS
            ),
            domain_allowlist=_as_tuple(row.domain_allowlist, ()),
            domain_blocklist=_as_tuple(row.domain_blocklist, ()),
            max_replies_per_thread=row.max_replies_per_thread,
            sender_cooldown_minutes=row.sender_cooldown_minutes,
        )

    def inbox_zero_policy(self, workspace_id: UUID) -> InboxZeroPolicy:
        row = self._row(workspace_id)
        if row is None:
            return InboxZeroPolicy()
        return InboxZeroPolicy(
            enabled=row.inbox_zero_enabled,
            auto_archive=row.auto_archive_handled,
            apply_label=row.apply_handled_label,
        )


def _as_tuple(values: list[str] | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if values is None:
        return default
    return tuple(v.strip().lower() for v in values if isinstance(v, str) and v.strip())
