"""Liveness, readiness and metrics exposition."""
from sqlalchemy import text

from quillpass.core.database import get_engine


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_when_tables_exist(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "billing_enabled": True}


def test_readyz_reports_missing_tables(client):
    with get_engine().begin() as conn:
        conn.execute(text("DROP TABLE billing_events"))
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "billing_events" in resp.json()["detail"]


def test_metrics_exposition(client):
    client.get("/api/payment/plans")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "# TYPE webhook_events_total counter" in resp.text
    assert 'http_requests_total{method="GET",path="/api/payment/plans",status="200"} 1.0' in resp.text
