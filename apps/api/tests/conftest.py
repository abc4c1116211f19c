from __future__ import annotations

import base64
import os
from collections.abc import Generator
from contextlib import suppress
from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

os.environ["APP_ENV"] = "test"
os.environ["ENCRYPTION_KEY_BASE64"] = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-google-client-secret"
os.environ["MICROSOFT_CLIENT_ID"] = "test-ms-client-id"
os.environ["MICROSOFT_CLIENT_SECRET"] = "test-ms-client-secret"

from app.models import Base  # noqa: E402
from app.models.channels import ChannelConnection  # noqa: E402
from app.models.enums import ChannelProvider, MessagePriority  # noqa: E402
from app.models.messages import Draft, Message  # noqa: E402
from app.models.workspace import WorkspaceSettings  # noqa: E402
from app.services.errors import ProviderError  # noqa: E402
from app.services.providers.base import (  # noqa: E402
    HandleOptions,
    ProviderActions,
    ProviderAdapter,
    RestoreResult,
    SendResult,
    ThreadingInfo,
)
from app.services.providers.registry import ProviderRegistry  # noqa: E402


def _clear_caches() -> None:
    from app.core.config import get_settings
    from app.db.session import get_engine, get_sessionmaker

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()


@pytest.fixture(autouse=True)
def _test_database(tmp_path, monkeypatch) -> Generator[None, None, None]:
    # Each test gets its own SQLite file built from the ORM metadata.
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    _clear_caches()

    from app.db.session import get_engine

    Base.metadata.create_all(get_engine())
    yield

    with suppress(Exception):
        get_engine().dispose()
    _clear_caches()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    from app.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeAdapter(ProviderAdapter):
    def __init__(
        self,
        provider: ChannelProvider = ChannelProvider.gmail,
        *,
        send_error: ProviderError | None = None,
        archive_ok: bool = True,
        restore_ok: bool = True,
    ) -> None:
        self.provider = provider
        self.send_error = send_error
        self.archive_ok = archive_ok
        self.restore_ok = restore_ok
        self.sent: list[tuple[ThreadingInfo, str]] = []
        self.handled: list[tuple[str, HandleOptions]] = []
        self.restored: list[str] = []

    def send_reply(self, connection: ChannelConnection, threading: ThreadingInfo, body: str) -> SendResult:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((threading, body))
        return SendResult(success=True, provider_message_id=f"sent-{len(self.sent)}")

    def mark_handled(
        self,
        connection: ChannelConnection,
        provider_message_id: str,
        options: HandleOptions,
    ) -> ProviderActions:
        self.handled.append((provider_message_id, options))
        return ProviderActions(
            marked_read=options.mark_read,
            archived=options.archive and self.archive_ok,
            labeled=options.apply_label,
            errors=() if self.archive_ok or not options.archive else ("archive failed",),
        )

    def restore(self, connection: ChannelConnection, provider_message_id: str) -> RestoreResult:
        self.restored.append(provider_message_id)
        if self.restore_ok:
            return RestoreResult(success=True)
        return RestoreResult(success=False, error="restore failed")


@pytest.fixture()
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def fake_registry(fake_adapter: FakeAdapter) -> ProviderRegistry:
    return ProviderRegistry({ChannelProvider.gmail: fake_adapter})


class Seed:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.workspace_id: UUID = uuid4()

    def settings(self, **overrides) -> WorkspaceSettings:
        values = {
            "workspace_id": self.workspace_id,
            "auto_send_enabled": True,
            "auto_send_delay_type": "exact",
            "auto_send_delay_min": 10,
            "auto_send_delay_max": 10,
            "auto_send_time_start": "09:00",
            "auto_send_time_end": "21:00",
            "sender_cooldown_minutes": 0,
        }
        values.update(overrides)
        row = WorkspaceSettings(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def connection(self, **overrides) -> ChannelConnection:
        values = {
            "workspace_id": self.workspace_id,
            "provider": ChannelProvider.gmail,
            "account_email": "me@example.com",
        }
        values.update(overrides)
        row = ChannelConnection(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def message(self, *, connection: ChannelConnection | None = None, **overrides) -> Message:
        values = {
            "workspace_id": self.workspace_id,
            "channel_connection_id": connection.id if connection is not None else None,
            "provider_message_id": f"pm-{uuid4().hex[:8]}",
            "provider_thread_id": f"th-{uuid4().hex[:8]}",
            "rfc_message_id": f"<{uuid4().hex}@mail.example.com>",
            "subject": "Quick question",
            "sender_email": "alice@example.com",
            "sender_name": "Alice",
            "timestamp": datetime(2026, 10, 19, 9, 30, tzinfo=UTC),
            "priority": MessagePriority.low,
            "category": "notification",
        }
        values.update(overrides)
        row = Message(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def draft(self, message: Message, **overrides) -> Draft:
        values = {
            "workspace_id": message.workspace_id,
            "message_id": message.id,
            "body": "Thanks, will do.",
            "confidence_score": 0.92,
        }
        values.update(overrides)
        row = Draft(**values)
        self.session.add(row)
        self.session.flush()
        return row


@pytest.fixture()
def seed(db_session: Session) -> Seed:
    return Seed(db_session)
