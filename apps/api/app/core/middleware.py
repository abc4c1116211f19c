from __future__ import annotations

import logging
import secrets
import time

from fastapi import FastAPI, Request
from starlette.responses import Response

from app.core.config import Settings
from app.core.log import log_json, request_id_ctx
from app.core.metrics import observe_http_request

logger = logging.getLogger("autopilot.api")

_MAX_REQUEST_ID_LEN = 128


def build_request_id(request: Request, *, header_name: str) -> str:
    supplied = (request.headers.get(header_name) or "").strip()
    return supplied[:_MAX_REQUEST_ID_LEN] if supplied else secrets.token_urlsafe(18)


def apply_security_headers(response: Response) -> None:
    for name, value in (
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "same-origin"),
    ):
        response.headers.setdefault(name, value)


def route_template(request: Request) -> str:
    # Falls back to the raw path for requests that never matched a route (404s).
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def install_request_context(app: FastAPI, settings: Settings) -> None:
    """Tag every request with an id, security headers, an access log line and HTTP metrics."""

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        ctx_token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response)
            return response
        finally:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            if request.url.path != settings.PROMETHEUS_METRICS_PATH:
                observe_http_request(
                    method=request.method,
                    path=route_template(request),
                    status_code=status_code,
                    duration_ms=elapsed_ms,
                )
            log_json(
                logger,
                "http.request.completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=elapsed_ms,
            )
            request_id_ctx.reset(ctx_token)
