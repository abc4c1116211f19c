from __future__ import annotations

from fastapi.testclient import TestClient

from app.main import create_app


def test_healthz_ok() -> None:
    client = TestClient(create_app())
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "version": "0.1.0"}
    assert res.headers["x-request-id"]
    assert res.headers["x-content-type-options"] == "nosniff"


def test_readyz_checks_database() -> None:
    client = TestClient(create_app())
    res = client.get("/readyz")
    assert res.status_code == 200
    assert res.json() == {"status": "ready"}


def test_request_id_is_echoed() -> None:
    client = TestClient(create_app())
    res = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert res.headers["x-request-id"] == "req-123"
