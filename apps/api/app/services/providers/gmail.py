from __future__ import annotations

import base64
from email.message import EmailMessage
from email.utils import formataddr

import httpx

from app.models.channels import ChannelConnection
from app.models.enums import ChannelProvider
from app.services.errors import ProviderError
from app.services.providers.base import (
    HandleOptions,
    ProviderActions,
    ProviderAdapter,
    RestoreResult,
    SendResult,
    ThreadingInfo,
    describe_error,
    provider_request,
    reference_chain,
    reply_subject,
)
from app.services.providers.credentials import TokenResolver

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


def build_reply_mime(*, from_email: str, threading: ThreadingInfo, body: str) -> bytes:
    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = formataddr((threading.to_name or "", threading.to_email))
    msg["Subject"] = reply_subject(threading.subject)
    if threading.rfc_message_id:
        msg["In-Reply-To"] = threading.rfc_message_id
    refs = reference_chain(threading.references, threading.rfc_message_id)
    if refs:
        msg["References"] = refs
    msg.set_content(body)
    return msg.as_bytes()


class GmailAdapter(ProviderAdapter):
    provider = ChannelProvider.gmail

    def __init__(self, *, http_client: httpx.Client, tokens: TokenResolver, label_name: str) -> None:
        self._client = http_client
        self._tokens = tokens
        self._label_name = label_name
        self._label_ids: dict[str, str] = {}

    def send_reply(self, connection: ChannelConnection, threading: ThreadingInfo, body: str) -> SendResult:
        access_token = self._tokens.access_token(connection)
        raw = build_reply_mime(from_email=connection.account_email, threading=threading, body=body)
        payload: dict[str, str] = {"raw": base64.urlsafe_b64encode(raw).decode("ascii")}
        if threading.provider_thread_id:
            payload["threadId"] = threading.provider_thread_id

        res = self._request("POST", "/messages/send", "send", access_token, json=payload)
        return SendResult(success=True, provider_message_id=res.json().get("id"))

    def mark_handled(
        self,
        connection: ChannelConnection,
        provider_message_id: str,
        options: HandleOptions,
    ) -> ProviderActions:
        try:
            access_token = self._tokens.access_token(connection)
        except ProviderError as e:
            return ProviderActions(errors=(describe_error(e),))

        errors: list[str] = []
        marked_read = archived = labeled = False

        if options.mark_read:
            marked_read = self._modify(access_token, provider_message_id, remove=["UNREAD"], errors=errors)
        if options.archive:
            archived = self._modify(access_token, provider_message_id, remove=["INBOX"], errors=errors)
        if options.apply_label:
            try:
                label_id = self._ensure_label(connection, access_token)
            except ProviderError as e:
                errors.append(describe_error(e))
            else:
                labeled = self._modify(access_token, provider_message_id, add=[label_id], errors=errors)

        return ProviderActions(marked_read=marked_read, archived=archived, labeled=labeled, errors=tuple(errors))

    def restore(self, connection: ChannelConnection, provider_message_id: str) -> RestoreResult:
        try:
            access_token = self._tokens.access_token(connection)
            self._request(
                "POST",
                f"/messages/{provider_message_id}/modify",
                "restore",
                access_token,
                json={"addLabelIds": ["INBOX", "UNREAD"]},
            )
        except ProviderError as e:
            return RestoreResult(success=False, error=describe_error(e))
        return RestoreResult(success=True)

    def _modify(
        self,
        access_token: str,
        provider_message_id: str,
        *,
        add: list[str] | None = None,
        remove: list[str] | None = None,
        errors: list[str],
    ) -> bool:
        body: dict[str, list[str]] = {}
        if add:
            body["addLabelIds"] = add
        if remove:
            body["removeLabelIds"] = remove
        try:
            self._request("POST", f"/messages/{provider_message_id}/modify", "modify", access_token, json=body)
        except ProviderError as e:
            errors.append(describe_error(e))
            return False
        return True

    def _ensure_label(self, connection: ChannelConnection, access_token: str) -> str:
        cache_key = str(connection.id)
        cached = self._label_ids.get(cache_key)
        if cached:
            return cached

        res = self._request("GET", "/labels", "labels.list", access_token)
        label_id = None
        for label in res.json().get("labels") or []:
            if (label.get("name") or "").lower() == self._label_name.lower():
                label_id = label.get("id")
                break

        if label_id is None:
            created = self._request(
                "POST",
                "/labels",
                "labels.create",
                access_token,
                json={
                    "name": self._label_name,
                    "labelListVisibility": "labelShow",
                    "messageListVisibility": "show",
                },
            )
            label_id = created.json()["id"]

        self._label_ids[cache_key] = label_id
        return label_id

    def _request(self, method: str, path: str, operation: str, access_token: str, **kwargs) -> httpx.Response:
        return provider_request(
            self._client,
            method,
            f"{GMAIL_API_BASE}{path}",
            provider=self.provider.value,
            operation=operation,
            access_token=access_token,
            **kwargs,
        )
