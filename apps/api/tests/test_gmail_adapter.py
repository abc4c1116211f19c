from __future__ import annotations

import base64
import json
from datetime import timedelta
from email import message_from_bytes
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import pytest

from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import ChannelProvider
from app.services.errors import ProviderPermanentError, ProviderTransientError
from app.services.providers.base import HandleOptions, ThreadingInfo
from app.services.providers.credentials import TokenResolver, store_tokens
from app.services.providers.gmail import GmailAdapter, build_reply_mime

THREADING = ThreadingInfo(
    provider_message_id="gm-1",
    provider_thread_id="thread-9",
    rfc_message_id="<abc@mail.example.com>",
    references="<root@mail.example.com>",
    subject="Quick question",
    to_email="alice@example.com",
    to_name="Alice",
)


def _connection(*, expired: bool = False, refresh_token: str | None = "refresh-1") -> ChannelConnection:
    conn = ChannelConnection(
        id=uuid4(),
        workspace_id=uuid4(),
        provider=ChannelProvider.gmail,
        account_email="me@example.com",
        is_enabled=True,
        needs_reconnect=False,
    )
    expires_at = utcnow() - timedelta(minutes=5) if expired else utcnow() + timedelta(hours=1)
    store_tokens(conn, access_token="access-1", refresh_token=refresh_token, expires_at=expires_at)
    return conn


def _adapter(handler) -> tuple[GmailAdapter, httpx.Client]:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    adapter = GmailAdapter(http_client=client, tokens=TokenResolver(http_client=client), label_name="Handled")
    return adapter, client


def test_reply_mime_threads_into_original() -> None:
    raw = build_reply_mime(from_email="me@example.com", threading=THREADING, body="Sounds good.")
    parsed = message_from_bytes(raw)
    assert parsed["Subject"] == "Re: Quick question"
    assert parsed["In-Reply-To"] == "<abc@mail.example.com>"
    assert parsed["References"] == "<root@mail.example.com> <abc@mail.example.com>"
    assert "alice@example.com" in parsed["To"]
    assert parsed.get_payload().strip() == "Sounds good."


def test_reply_subject_is_not_doubled() -> None:
    threading = ThreadingInfo(
        provider_message_id=None,
        provider_thread_id=None,
        rfc_message_id=None,
        references=None,
        subject="RE: Quick question",
        to_email="alice@example.com",
    )
    parsed = message_from_bytes(build_reply_mime(from_email="me@example.com", threading=threading, body="x"))
    assert parsed["Subject"] == "RE: Quick question"
    assert parsed["In-Reply-To"] is None
    assert parsed["References"] is None


def test_send_posts_raw_message_in_thread() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "sent-42", "threadId": "thread-9"})

    adapter, client = _adapter(handler)
    with client:
        result = adapter.send_reply(_connection(), THREADING, "Sounds good.")

    assert result.success is True
    assert result.provider_message_id == "sent-42"
    request = seen[0]
    assert request.url.path == "/gmail/v1/users/me/messages/send"
    assert request.headers["Authorization"] == "Bearer access-1"
    payload = json.loads(request.content)
    assert payload["threadId"] == "thread-9"
    mime = message_from_bytes(base64.urlsafe_b64decode(payload["raw"]))
    assert mime["In-Reply-To"] == "<abc@mail.example.com>"


def test_expired_token_is_refreshed_before_send() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "oauth2.googleapis.com":
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            assert form["refresh_token"] == ["refresh-1"]
            return httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer access-2"
        return httpx.Response(200, json={"id": "sent-1"})

    conn = _connection(expired=True)
    adapter, client = _adapter(handler)
    with client:
        adapter.send_reply(conn, THREADING, "hi")

    assert seen == ["oauth2.googleapis.com", "gmail.googleapis.com"]
    assert conn.token_expires_at > utcnow()


def test_revoked_refresh_grant_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    adapter, client = _adapter(handler)
    with client, pytest.raises(ProviderPermanentError):
        adapter.send_reply(_connection(expired=True), THREADING, "hi")


def test_expired_without_refresh_token_is_permanent() -> None:
    adapter, client = _adapter(lambda request: httpx.Response(200, json={}))
    with client, pytest.raises(ProviderPermanentError) as exc:
        adapter.send_reply(_connection(expired=True, refresh_token=None), THREADING, "hi")
    assert exc.value.status_code is None


@pytest.mark.parametrize(
    ("status_code", "error_cls"),
    [(401, ProviderPermanentError), (403, ProviderPermanentError), (429, ProviderTransientError), (503, ProviderTransientError)],
)
def test_send_errors_are_classified(status_code: int, error_cls: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"error": {"message": "nope"}})

    adapter, client = _adapter(handler)
    with client, pytest.raises(error_cls) as exc:
        adapter.send_reply(_connection(), THREADING, "hi")
    assert exc.value.status_code == status_code
    assert str(exc.value) == "nope"


def test_network_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter, client = _adapter(handler)
    with client, pytest.raises(ProviderTransientError):
        adapter.send_reply(_connection(), THREADING, "hi")


def test_mark_handled_applies_each_action_and_caches_label() -> None:
    modify_bodies: list[dict] = []
    label_calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/labels") and request.method == "GET":
            label_calls.append("list")
            return httpx.Response(200, json={"labels": [{"id": "Label_1", "name": "Inbox Stuff"}]})
        if path.endswith("/labels") and request.method == "POST":
            label_calls.append("create")
            return httpx.Response(200, json={"id": "Label_7", "name": "Handled"})
        modify_bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "gm-1"})

    conn = _connection()
    adapter, client = _adapter(handler)
    with client:
        first = adapter.mark_handled(conn, "gm-1", HandleOptions())
        adapter.mark_handled(conn, "gm-2", HandleOptions(mark_read=False, archive=False))

    assert (first.marked_read, first.archived, first.labeled) == (True, True, True)
    assert first.errors == ()
    assert modify_bodies[:3] == [
        {"removeLabelIds": ["UNREAD"]},
        {"removeLabelIds": ["INBOX"]},
        {"addLabelIds": ["Label_7"]},
    ]
    assert modify_bodies[3] == {"addLabelIds": ["Label_7"]}
    assert label_calls == ["list", "create"]


def test_mark_handled_reports_partial_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if body.get("removeLabelIds") == ["INBOX"]:
            return httpx.Response(500, json={"error": {"message": "backend error"}})
        if request.url.path.endswith("/labels"):
            return httpx.Response(200, json={"labels": [{"id": "Label_3", "name": "handled"}]})
        return httpx.Response(200, json={})

    adapter, client = _adapter(handler)
    with client:
        actions = adapter.mark_handled(_connection(), "gm-1", HandleOptions())

    assert actions.marked_read is True
    assert actions.archived is False
    assert actions.labeled is True
    assert actions.errors == ("backend error (HTTP 500)",)


def test_restore_puts_message_back_in_inbox_unread() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    adapter, client = _adapter(handler)
    with client:
        result = adapter.restore(_connection(), "gm-1")

    assert result.success is True
    assert bodies == [{"addLabelIds": ["INBOX", "UNREAD"]}]


def test_disabled_connection_cannot_act() -> None:
    conn = _connection()
    conn.is_enabled = False
    adapter, client = _adapter(lambda request: httpx.Response(200, json={}))
    with client:
        actions = adapter.mark_handled(conn, "gm-1", HandleOptions())
        restored = adapter.restore(conn, "gm-1")
    assert actions.errors == ("channel connection is disabled",)
    assert restored.success is False
