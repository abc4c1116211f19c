from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from cryptography.exceptions import InvalidTag

from app.core.config import Settings, get_settings
from app.core.crypto import EncryptionKeyError, channel_token_aad, decrypt_bytes, encrypt_bytes
from app.models.base import utcnow
from app.models.channels import ChannelConnection
from app.models.enums import ChannelProvider
from app.services.errors import ProviderPermanentError, ProviderTransientError

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_GRAPH_SCOPE = "https://graph.microsoft.com/.default offline_access"

# Refresh slightly early so a token never expires mid-request.
EXPIRY_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    refresh_token: str | None


def store_tokens(
    connection: ChannelConnection,
    *,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
) -> None:
    connection.encrypted_access_token = encrypt_bytes(
        plaintext=access_token.encode("utf-8"),
        aad=channel_token_aad(
            workspace_id=connection.workspace_id, connection_id=connection.id, kind="access"
        ),
    )
    if refresh_token is not None:
        connection.encrypted_refresh_token = encrypt_bytes(
            plaintext=refresh_token.encode("utf-8"),
            aad=channel_token_aad(
                workspace_id=connection.workspace_id, connection_id=connection.id, kind="refresh"
            ),
        )
    connection.token_expires_at = expires_at


class TokenResolver:
    """Hands out a usable access token for a connection, refreshing when expired."""

    def __init__(self, *, http_client: httpx.Client, settings: Settings | None = None) -> None:
        self._client = http_client
        self._settings = settings or get_settings()

    def access_token(self, connection: ChannelConnection) -> str:
        if not connection.is_enabled:
            raise ProviderPermanentError("channel connection is disabled", provider=connection.provider.value)
        if connection.encrypted_access_token is None:
            raise ProviderPermanentError("channel has no access token", provider=connection.provider.value)

        expires_at = connection.token_expires_at
        if expires_at is None or expires_at - EXPIRY_SKEW > utcnow():
            return self._decrypt(connection, connection.encrypted_access_token, kind="access")

        if connection.encrypted_refresh_token is None:
            raise ProviderPermanentError(
                "access token expired and no refresh token is stored",
                provider=connection.provider.value,
            )
        refresh_token = self._decrypt(connection, connection.encrypted_refresh_token, kind="refresh")
        token = self._refresh(connection.provider, refresh_token)
        store_tokens(
            connection,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None,
        )
        return token.access_token

    def _decrypt(self, connection: ChannelConnection, blob: bytes, *, kind: str) -> str:
        aad = channel_token_aad(workspace_id=connection.workspace_id, connection_id=connection.id, kind=kind)
        try:
            return decrypt_bytes(blob=blob, aad=aad).decode("utf-8")
        except (InvalidTag, ValueError, EncryptionKeyError) as e:
            raise ProviderPermanentError(
                f"stored {kind} token could not be decrypted",
                provider=connection.provider.value,
            ) from e

    def _refresh(self, provider: ChannelProvider, refresh_token: str) -> TokenResponse:
        if provider == ChannelProvider.gmail:
            url = GOOGLE_OAUTH_TOKEN_URL
            data = {
                "refresh_token": refresh_token,
                "client_id": self._settings.GOOGLE_CLIENT_ID,
                "client_secret": self._settings.GOOGLE_CLIENT_SECRET,
                "grant_type": "refresh_token",
            }
        else:
            url = MICROSOFT_TOKEN_URL_TEMPLATE.format(tenant=self._settings.MICROSOFT_TENANT)
            data = {
                "refresh_token": refresh_token,
                "client_id": self._settings.MICROSOFT_CLIENT_ID,
                "client_secret": self._settings.MICROSOFT_CLIENT_SECRET,
                "grant_type": "refresh_token",
                "scope": MICROSOFT_GRAPH_SCOPE,
            }

        try:
            res = self._client.post(
                url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"{provider.value} token refresh failed: {e}", provider=provider.value
            ) from e

        if res.status_code in (400, 401, 403):
            # invalid_grant and friends: the user revoked access or the grant expired.
            raise ProviderPermanentError(
                f"{provider.value} token refresh rejected",
                provider=provider.value,
                status_code=res.status_code,
            )
        if res.status_code >= 400:
            raise ProviderTransientError(
                f"{provider.value} token refresh failed",
                provider=provider.value,
                status_code=res.status_code,
            )

        payload = res.json()
        return TokenResponse(
            access_token=payload["access_token"],
            expires_in=int(payload.get("expires_in") or 0),
            refresh_token=payload.get("refresh_token"),
        )
