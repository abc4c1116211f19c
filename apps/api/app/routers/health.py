from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import get_session

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok", "version": get_settings().VERSION}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict[str, str]:
    # Readiness only covers the database; provider outages surface per item in the queue.
    try:
        session.scalar(text("select 1"))
    except SQLAlchemyError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable") from e
    return {"status": "ready"}


def metrics() -> Response:
    """Prometheus exposition; mounted by create_app when metrics are enabled."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
