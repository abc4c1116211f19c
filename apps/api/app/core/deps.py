from __future__ import annotations

import secrets
from dataclasses import dataclass
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, Request, status

from app.core.config import get_settings
from app.core.http import get_http_client
from app.services.providers.registry import ProviderRegistry, build_provider_registry


@dataclass(frozen=True)
class WorkspaceContext:
    workspace_id: UUID
    user_id: UUID | None


def require_workspace(request: Request) -> WorkspaceContext:
    # Identity is established by the gateway in front of this service.
    raw_workspace = (request.headers.get("x-workspace-id") or "").strip()
    if not raw_workspace:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing workspace")
    try:
        workspace_id = UUID(raw_workspace)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid workspace") from e

    raw_user = (request.headers.get("x-user-id") or "").strip()
    user_id = None
    if raw_user:
        try:
            user_id = UUID(raw_user)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user") from e

    return WorkspaceContext(workspace_id=workspace_id, user_id=user_id)


def require_cron_secret(request: Request) -> None:
    secret = get_settings().CRON_SECRET
    if not secret:
        return
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


def get_provider_registry(client: httpx.Client = Depends(get_http_client)) -> ProviderRegistry:
    return build_provider_registry(client)
