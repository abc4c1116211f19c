"""Confidence gate: maps a draft and its message to auto-send, review or skip.

Pure and total. Everything the decision needs (policy, message attributes,
reply history facts) is passed in; nothing here touches the database or a
provider, and every input combination yields exactly one decision.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from uuid import UUID

from app.models.enums import REVIEW_REASON_LABELS, GateOutcome, MessagePriority, ReviewReason
from app.services.policy import AutoSendPolicy

HIGH_PRIORITIES = frozenset({MessagePriority.urgent.value, MessagePriority.high.value})

# Categories where an unsupervised reply is never appropriate.
SENSITIVE_CATEGORIES = frozenset(
    {"personal", "work", "finance", "financial", "security", "security_alert", "support"}
)


@dataclass(frozen=True)
class EligibilityFacts:
    sender_email: str | None = None
    connection_email: str | None = None
    thread_reply_count: int = 0
    last_reply_to_sender_at: datetime | None = None
    now: datetime | None = None


@dataclass(frozen=True)
class GateInput:
    confidence_score: float | None
    priority: str | None = None
    category: str | None = None
    flagged: bool = False
    flag_reason: str | None = None
    facts: EligibilityFacts = field(default_factory=EligibilityFacts)


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    reason_code: str
    reason: str
    details: dict = field(default_factory=dict)
    queue_item_id: UUID | None = None
    scheduled_send_at: datetime | None = None


def evaluate_gate(gate_input: GateInput, policy: AutoSendPolicy | None) -> GateDecision:
    if policy is None:
        return _skip("policy_missing", "no auto-send policy for workspace")
    if not policy.enabled:
        return _skip("auto_send_disabled", "auto-send disabled")
    if policy.paused:
        return _skip("auto_send_paused", "auto-send paused")

    priority = _norm(gate_input.priority)
    category = _norm(gate_input.category)

    if priority in HIGH_PRIORITIES:
        if gate_input.flagged:
            return _hold(ReviewReason.high_priority, {"priority": priority})
        return _skip("high_priority", f"{priority} priority is never auto-sent", {"priority": priority})

    if category in SENSITIVE_CATEGORIES:
        return _hold(ReviewReason.sensitive_category, {"category": category})

    if category and category in policy.excluded_categories:
        return _skip("excluded_category", f"excluded category: {category}", {"category": category})

    skip = _check_sender_filters(gate_input.facts, policy)
    if skip is not None:
        return skip

    if gate_input.flagged:
        reason = gate_input.flag_reason or ReviewReason.flagged.value
        return _hold(reason, {})

    confidence = _coerce_confidence(gate_input.confidence_score)
    threshold = policy.confidence_threshold
    if confidence < threshold:
        gap = round(threshold - confidence, 4)
        decision = _hold(
            ReviewReason.low_confidence,
            {"confidence": confidence, "threshold": threshold, "confidence_gap": gap},
        )
        return replace(
            decision,
            reason=f"low confidence: {confidence:.2f} is {gap:.2f} below threshold {threshold:.2f}",
        )

    return GateDecision(
        outcome=GateOutcome.auto_send,
        reason_code="eligible",
        reason="passed all checks",
        details={"confidence": confidence, "threshold": threshold},
    )


def matches_excluded_sender(email: str, patterns: tuple[str, ...] | list[str]) -> bool:
    """Pattern forms: `noreply@` prefix, `@fragment` contains, exact address, bare fragment."""
    lower_email = (email or "").strip().lower()
    if not lower_email:
        return True

    for raw in patterns:
        pattern = (raw or "").strip().lower()
        if not pattern:
            continue
        if pattern.endswith("@"):
            if lower_email.startswith(pattern):
                return True
        elif pattern.startswith("@"):
            if pattern in lower_email:
                return True
        elif "@" in pattern:
            if lower_email == pattern:
                return True
        elif pattern in lower_email:
            return True
    return False


def domain_matches(email: str, domains: tuple[str, ...] | list[str]) -> bool:
    _, _, domain = (email or "").strip().lower().partition("@")
    if not domain:
        return False
    for raw in domains:
        d = (raw or "").strip().lower()
        if d and (domain == d or domain.endswith("." + d)):
            return True
    return False


def _check_sender_filters(facts: EligibilityFacts, policy: AutoSendPolicy) -> GateDecision | None:
    sender = facts.sender_email
    if sender is None:
        return None
    sender_norm = sender.strip().lower()

    if facts.connection_email and sender_norm == facts.connection_email.strip().lower():
        return _skip("self_reply", "message is from our own account", {"sender": sender_norm})

    if matches_excluded_sender(sender_norm, policy.excluded_sender_patterns):
        return _skip("excluded_sender", "sender matches an excluded pattern", {"sender": sender_norm})

    if policy.domain_blocklist and domain_matches(sender_norm, policy.domain_blocklist):
        return _skip("blocked_domain", "sender domain is blocked", {"sender": sender_norm})

    if policy.domain_allowlist and not domain_matches(sender_norm, policy.domain_allowlist):
        return _skip("domain_not_allowed", "sender domain is not allowlisted", {"sender": sender_norm})

    limit = max(1, policy.max_replies_per_thread)
    if facts.thread_reply_count >= limit:
        return _skip(
            "thread_reply_limit",
            f"thread reply limit reached ({facts.thread_reply_count}/{limit})",
            {"reply_count": facts.thread_reply_count, "limit": limit},
        )

    if (
        policy.sender_cooldown_minutes > 0
        and facts.last_reply_to_sender_at is not None
        and facts.now is not None
        and facts.now - facts.last_reply_to_sender_at < timedelta(minutes=policy.sender_cooldown_minutes)
    ):
        return _skip(
            "sender_cooldown",
            "sender cooldown active",
            {"last_reply_at": facts.last_reply_to_sender_at.isoformat()},
        )

    return None


def _coerce_confidence(value: float | None) -> float:
    if value is None:
        return 0.0
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return min(1.0, max(0.0, v))


def _norm(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


def _skip(code: str, reason: str, details: dict | None = None) -> GateDecision:
    return GateDecision(outcome=GateOutcome.skip, reason_code=code, reason=reason, details=details or {})


def _hold(code: str, details: dict) -> GateDecision:
    code = str(code)
    return GateDecision(
        outcome=GateOutcome.hold_for_review,
        reason_code=code,
        reason=REVIEW_REASON_LABELS.get(code, code.replace("_", " ")),
        details=details,
    )
