from __future__ import annotations

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
)
from app.services.providers.credentials import TokenResolver

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0/me"


class OutlookAdapter(ProviderAdapter):
    """Microsoft Graph mail. Replies go through `/reply`, so Graph keeps threading."""

    provider = ChannelProvider.outlook

    def __init__(self, *, http_client: httpx.Client, tokens: TokenResolver, category_name: str) -> None:
        self._client = http_client
        self._tokens = tokens
        self._category_name = category_name

    def send_reply(self, connection: ChannelConnection, threading: ThreadingInfo, body: str) -> SendResult:
        if not threading.provider_message_id:
            return SendResult(success=False, error="message has no provider id to reply to")
        access_token = self._tokens.access_token(connection)
        self._request(
            "POST",
            f"/messages/{threading.provider_message_id}/reply",
            "send",
            access_token,
            json={"comment": body},
        )
        # Graph answers 202 Accepted with no body; the sent item id is not returned.
        return SendResult(success=True, provider_message_id=None)

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
            marked_read = self._patch(access_token, provider_message_id, {"isRead": True}, errors)
        if options.apply_label:
            labeled = self._add_category(access_token, provider_message_id, errors)
        # Move last: the message id changes once it leaves the inbox.
        if options.archive:
            try:
                self._move(access_token, provider_message_id, "archive")
            except ProviderError as e:
                errors.append(describe_error(e))
            else:
                archived = True

        return ProviderActions(marked_read=marked_read, archived=archived, labeled=labeled, errors=tuple(errors))

    def restore(self, connection: ChannelConnection, provider_message_id: str) -> RestoreResult:
        try:
            access_token = self._tokens.access_token(connection)
            moved_id = self._move(access_token, provider_message_id, "inbox") or provider_message_id
            self._request("PATCH", f"/messages/{moved_id}", "update", access_token, json={"isRead": False})
        except ProviderError as e:
            return RestoreResult(success=False, error=describe_error(e))
        return RestoreResult(success=True)

    def _patch(self, access_token: str, provider_message_id: str, body: dict, errors: list[str]) -> bool:
        try:
            self._request("PATCH", f"/messages/{provider_message_id}", "update", access_token, json=body)
        except ProviderError as e:
            errors.append(describe_error(e))
            return False
        return True

    def _add_category(self, access_token: str, provider_message_id: str, errors: list[str]) -> bool:
        try:
            res = self._request(
                "GET",
                f"/messages/{provider_message_id}",
                "get",
                access_token,
                params={"$select": "categories"},
            )
        except ProviderError as e:
            errors.append(describe_error(e))
            return False

        categories = [c for c in res.json().get("categories") or [] if isinstance(c, str)]
        if self._category_name in categories:
            return True
        return self._patch(
            access_token,
            provider_message_id,
            {"categories": [*categories, self._category_name]},
            errors,
        )

    def _move(self, access_token: str, provider_message_id: str, destination: str) -> str | None:
        res = self._request(
            "POST",
            f"/messages/{provider_message_id}/move",
            "move",
            access_token,
            json={"destinationId": destination},
        )
        try:
            return res.json().get("id")
        except ValueError:
            return None

    def _request(self, method: str, path: str, operation: str, access_token: str, **kwargs) -> httpx.Response:
        return provider_request(
            self._client,
            method,
            f"{GRAPH_API_BASE}{path}",
            provider=self.provider.value,
            operation=operation,
            access_token=access_token,
            **kwargs,
        )
