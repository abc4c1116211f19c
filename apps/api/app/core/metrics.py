from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "autopilot_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "autopilot_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_GATE_DECISIONS_TOTAL = Counter(
    "autopilot_gate_decisions_total",
    "Confidence gate decisions by outcome and reason.",
    labelnames=("outcome", "reason"),
)
_AUTO_SEND_RESULTS_TOTAL = Counter(
    "autopilot_auto_send_results_total",
    "Auto-send queue items processed by the worker, by result.",
    labelnames=("result",),
)
_AUTO_SEND_CYCLE_DURATION_SECONDS = Histogram(
    "autopilot_auto_send_cycle_duration_seconds",
    "Duration of one auto-send worker cycle in seconds.",
)
_PROVIDER_CALLS_TOTAL = Counter(
    "autopilot_provider_calls_total",
    "Provider adapter calls by provider, operation and result.",
    labelnames=("provider", "operation", "result"),
)
_REVIEW_ACTIONS_TOTAL = Counter(
    "autopilot_review_actions_total",
    "Review queue actions recorded by reviewers.",
    labelnames=("action", "status"),
)


def _seconds(duration_ms: int) -> float:
    return max(0.0, duration_ms / 1000.0)


def observe_http_request(*, method: str, path: str, status_code: int, duration_ms: int) -> None:
    labels = {"method": method or "UNKNOWN", "path": path or "unknown"}
    _HTTP_REQUESTS_TOTAL.labels(status_code=str(status_code), **labels).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(_seconds(duration_ms))


def observe_gate_decision(*, outcome: str, reason: str) -> None:
    _GATE_DECISIONS_TOTAL.labels(outcome=outcome, reason=reason or "none").inc()


def observe_auto_send_result(*, result: str) -> None:
    _AUTO_SEND_RESULTS_TOTAL.labels(result=result).inc()


def observe_auto_send_cycle(*, duration_ms: int) -> None:
    _AUTO_SEND_CYCLE_DURATION_SECONDS.observe(_seconds(duration_ms))


def observe_provider_call(*, provider: str, operation: str, ok: bool) -> None:
    _PROVIDER_CALLS_TOTAL.labels(
        provider=provider,
        operation=operation,
        result="ok" if ok else "error",
    ).inc()


def observe_review_action(*, action: str, status: str) -> None:
    _REVIEW_ACTIONS_TOTAL.labels(action=action, status=status).inc()
