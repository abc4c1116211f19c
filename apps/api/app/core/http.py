from __future__ import annotations

from collections.abc import Generator

import httpx

from app.core.config import get_settings


def build_provider_http_client() -> httpx.Client:
    # Provider calls must never hang a worker cycle; a timeout is a transient send failure.
    settings = get_settings()
    return httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)


def get_http_client() -> Generator[httpx.Client, None, None]:
    with build_provider_http_client() as client:
        yield client
