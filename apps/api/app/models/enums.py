from __future__ import annotations

import enum


class ChannelProvider(enum.StrEnum):
    gmail = "gmail"
    outlook = "outlook"


class MessagePriority(enum.StrEnum):
    urgent = "urgent"
    high = "high"
    medium = "medium"
    low = "low"


class DelayType(enum.StrEnum):
    exact = "exact"
    random = "random"


class GateOutcome(enum.StrEnum):
    auto_send = "auto_send"
    hold_for_review = "hold_for_review"
    skip = "skip"


class ReviewReason(enum.StrEnum):
    low_confidence = "low_confidence"
    sensitive_category = "sensitive_category"
    high_priority = "high_priority"
    classification_failed = "classification_failed"
    draft_generation_failed = "draft_generation_failed"
    no_calendar_match = "no_calendar_match"
    scheduling_error = "scheduling_error"
    flagged = "flagged"


REVIEW_REASON_LABELS: dict[str, str] = {
    ReviewReason.low_confidence: "low confidence",
    ReviewReason.sensitive_category: "sensitive category",
    ReviewReason.high_priority: "high priority",
    ReviewReason.classification_failed: "could not classify",
    ReviewReason.draft_generation_failed: "could not draft a reply",
    ReviewReason.no_calendar_match: "no calendar match",
    ReviewReason.scheduling_error: "could not schedule send",
    ReviewReason.flagged: "flagged for review",
}


class AutoSendStatus(enum.StrEnum):
    pending = "pending"
    processing = "processing"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_AUTO_SEND_STATUSES = (AutoSendStatus.pending, AutoSendStatus.processing)


class QueueItemSource(enum.StrEnum):
    gate = "gate"
    review = "review"


class HandleAction(enum.StrEnum):
    auto_replied = "auto_replied"
    classified_no_action = "classified_no_action"
    manually_dismissed = "manually_dismissed"
    manually_handled = "manually_handled"


class ReviewAction(enum.StrEnum):
    approve = "approve"
    edit_and_send = "edit_and_send"
    reject = "reject"
    handle_manually = "handle_manually"
