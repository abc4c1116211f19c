from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.log import configure_logging
from app.core.middleware import install_request_context
from app.routers.health import metrics
from app.routers.health import router as health_router
from app.routers.messages import router as messages_router
from app.routers.ops import router as ops_router
from app.routers.review_queue import router as review_queue_router


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    app = FastAPI(title="Reply Autopilot API", version=settings.VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_request_context(app, settings)

    for router in (health_router, review_queue_router, messages_router, ops_router):
        app.include_router(router)
    if settings.ENABLE_PROMETHEUS_METRICS:
        app.add_api_route(settings.PROMETHEUS_METRICS_PATH, metrics, methods=["GET"], include_in_schema=False)
    return app


app = create_app()
