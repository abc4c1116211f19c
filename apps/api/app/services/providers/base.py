from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from app.core.log import log_json
from app.core.metrics import observe_provider_call
from app.models.channels import ChannelConnection
from app.models.enums import ChannelProvider
from app.services.errors import ProviderError, ProviderTransientError, classify_status_code

logger = logging.getLogger("autopilot.providers")


@dataclass(frozen=True)
class ThreadingInfo:
    provider_message_id: str | None
    provider_thread_id: str | None
    rfc_message_id: str | None
    references: str | None
    subject: str | None
    to_email: str
    to_name: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class HandleOptions:
    mark_read: bool = True
    archive: bool = True
    apply_label: bool = True


@dataclass(frozen=True)
class ProviderActions:
    marked_read: bool = False
    archived: bool = False
    labeled: bool = False
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class RestoreResult:
    success: bool
    error: str | None = None


class ProviderAdapter(ABC):
    """One mailbox provider behind a common send/handle/restore surface.

    `send_reply` raises ProviderTransientError / ProviderPermanentError on
    failure. `mark_handled` and `restore` never raise provider errors; each
    side effect reports its own outcome.
    """

    provider: ChannelProvider

    @abstractmethod
    def send_reply(self, connection: ChannelConnection, threading: ThreadingInfo, body: str) -> SendResult: ...

    @abstractmethod
    def mark_handled(
        self,
        connection: ChannelConnection,
        provider_message_id: str,
        options: HandleOptions,
    ) -> ProviderActions: ...

    @abstractmethod
    def restore(self, connection: ChannelConnection, provider_message_id: str) -> RestoreResult: ...


def reply_subject(subject: str | None) -> str:
    s = (subject or "").strip()
    if s.lower().startswith("re:"):
        return s
    return f"Re: {s}" if s else "Re:"


def reference_chain(references: str | None, rfc_message_id: str | None) -> str | None:
    parts = [p for p in (references or "").split() if p]
    if rfc_message_id and rfc_message_id not in parts:
        parts.append(rfc_message_id)
    return " ".join(parts) or None


def provider_request(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    provider: str,
    operation: str,
    access_token: str,
    **kwargs,
) -> httpx.Response:
    headers = {"Authorization": f"Bearer {access_token}", **kwargs.pop("headers", {})}
    try:
        res = client.request(method, url, headers=headers, **kwargs)
    except httpx.TimeoutException as e:
        observe_provider_call(provider=provider, operation=operation, ok=False)
        raise ProviderTransientError(f"{provider} {operation} timed out", provider=provider) from e
    except httpx.TransportError as e:
        observe_provider_call(provider=provider, operation=operation, ok=False)
        raise ProviderTransientError(f"{provider} {operation} network error: {e}", provider=provider) from e

    if res.status_code >= 400:
        observe_provider_call(provider=provider, operation=operation, ok=False)
        message = _error_message(res, default=f"{provider} {operation} failed")
        log_json(
            logger,
            "provider.error",
            level=logging.WARNING,
            provider=provider,
            operation=operation,
            status_code=res.status_code,
            error=message,
        )
        error_cls = classify_status_code(res.status_code)
        raise error_cls(message, provider=provider, status_code=res.status_code)

    observe_provider_call(provider=provider, operation=operation, ok=True)
    return res


def describe_error(e: ProviderError) -> str:
    if e.status_code is not None:
        return f"{e} (HTTP {e.status_code})"
    return str(e)


def _error_message(res: httpx.Response, *, default: str) -> str:
    try:
        payload = res.json()
    except ValueError:
        return default
    if not isinstance(payload, dict):
        return default
    err = payload.get("error")
    if isinstance(err, dict):
        return err.get("message") or default
    if isinstance(err, str):
        return payload.get("error_description") or err
    return default
