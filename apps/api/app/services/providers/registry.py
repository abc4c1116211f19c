from __future__ import annotations

import httpx

from app.core.config import get_settings
from app.models.enums import ChannelProvider
from app.services.errors import ProviderPermanentError
from app.services.providers.base import ProviderAdapter
from app.services.providers.credentials import TokenResolver
from app.services.providers.gmail import GmailAdapter
from app.services.providers.outlook import OutlookAdapter


class ProviderRegistry:
    def __init__(self, adapters: dict[ChannelProvider, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[ChannelProvider, ProviderAdapter] = dict(adapters or {})

    def get(self, provider: ChannelProvider | str) -> ProviderAdapter:
        try:
            return self._adapters[ChannelProvider(provider)]
        except (KeyError, ValueError) as e:
            raise ProviderPermanentError(f"no adapter for provider {provider!r}", provider=str(provider)) from e


def build_provider_registry(http_client: httpx.Client) -> ProviderRegistry:
    settings = get_settings()
    tokens = TokenResolver(http_client=http_client, settings=settings)
    return ProviderRegistry(
        {
            ChannelProvider.gmail: GmailAdapter(
                http_client=http_client, tokens=tokens, label_name=settings.HANDLED_LABEL_NAME
            ),
            ChannelProvider.outlook: OutlookAdapter(
                http_client=http_client, tokens=tokens, category_name=settings.HANDLED_LABEL_NAME
            ),
        }
    )
