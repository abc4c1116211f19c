from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.models.enums import DelayType
from app.services.policy import AutoSendPolicy


@dataclass(frozen=True)
class SendPlan:
    scheduled_send_at: datetime
    delay_minutes: int
    adjusted_to_window: bool


def parse_hhmm(value: str) -> time:
    raw = (value or "").strip()
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time of day: {value!r}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError as e:
        raise ValueError(f"invalid time of day: {value!r}") from e
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"invalid time of day: {value!r}")
    return time(hour, minute)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo((name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone: {name!r}") from e


def compute_delay_minutes(policy: AutoSendPolicy, rng: random.Random | None = None) -> int:
    lo = max(0, int(policy.delay_min))
    if policy.delay_type == DelayType.exact:
        return lo
    hi = max(0, int(policy.delay_max))
    if hi <= lo:
        return lo
    return (rng or random.Random()).randint(lo, hi)


def is_within_send_window(local_time: time, start: time, end: time) -> bool:
    """Half-open `[start, end)`; `start > end` wraps midnight, `start == end` is always open."""
    t = local_time.replace(second=0, microsecond=0, tzinfo=None)
    if start == end:
        return True
    if start < end:
        return start <= t < end
    return t >= start or t < end


def in_send_window(at: datetime, policy: AutoSendPolicy) -> bool:
    tz = resolve_timezone(policy.timezone)
    start = parse_hhmm(policy.window_start)
    end = parse_hhmm(policy.window_end)
    return is_within_send_window(_aware(at).astimezone(tz).time(), start, end)


def next_window_start(after: datetime, policy: AutoSendPolicy) -> datetime:
    """First occurrence of the window start strictly after `after`, returned in UTC."""
    tz = resolve_timezone(policy.timezone)
    start = parse_hhmm(policy.window_start)
    local = _aware(after).astimezone(tz)

    candidate = datetime.combine(local.date(), start, tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), start, tzinfo=tz)
    return candidate.astimezone(UTC)


def schedule_send(
    policy: AutoSendPolicy,
    *,
    now: datetime,
    rng: random.Random | None = None,
) -> SendPlan:
    delay = compute_delay_minutes(policy, rng)
    scheduled = _aware(now).astimezone(UTC) + timedelta(minutes=delay)

    if in_send_window(scheduled, policy):
        return SendPlan(scheduled_send_at=scheduled, delay_minutes=delay, adjusted_to_window=False)

    return SendPlan(
        scheduled_send_at=next_window_start(scheduled, policy),
        delay_minutes=delay,
        adjusted_to_window=True,
    )


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
