"""End-to-end payment routes through the FastAPI app with an in-memory gateway."""
from datetime import datetime, timedelta, timezone

import pytest

from quillpass.core.config import settings
from quillpass.core.errors import GatewayUnavailableError
from quillpass.tests.mocks import VALID_SIGNATURE, checkout_payload, event_body, subscription_payload

ALICE = {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"}
BOB = {"X-User-Id": "user_bob", "X-User-Email": "bob@example.com"}


def _checkout(client, plan_id="premium", headers=ALICE):
    return client.post("/api/payment/checkout", json={"plan_id": plan_id}, headers=headers)


def _complete_via_webhook(client, gateway, session_id="cs_test_1", event_id="evt_1"):
    period_end = datetime.now(timezone.utc) + timedelta(days=30)
    gateway.add_subscription(subscription_payload(period_end=period_end))
    return client.post(
        "/api/payment/webhook",
        content=event_body(event_id, "checkout.session.completed", checkout_payload(session_id)),
        headers={"stripe-signature": VALID_SIGNATURE},
    )


def test_plans_are_public(client):
    resp = client.get("/api/payment/plans")
    assert resp.status_code == 200
    plans = {p["plan_id"]: p for p in resp.json()}
    assert set(plans) == {"free", "premium", "pro"}
    assert not plans["free"]["purchasable"]
    assert plans["pro"]["purchasable"]
    assert plans["premium"]["amount"] == 10000


def test_checkout_returns_redirect_url(client):
    resp = _checkout(client)
    assert resp.status_code == 200
    assert resp.json() == {
        "checkout_url": "https://checkout.test/cs_test_1",
        "transaction_id": "cs_test_1",
    }


def test_checkout_requires_identity(client):
    resp = client.post("/api/payment/checkout", json={"plan_id": "premium"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"


def test_checkout_rejects_free_plan(client):
    resp = _checkout(client, plan_id="free")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_plan"


def test_checkout_body_is_validated(client):
    resp = client.post("/api/payment/checkout", json={}, headers=ALICE)
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"]["errors"][0]["loc"] == ["body", "plan_id"]


def test_checkout_gateway_outage_is_retryable(client, gateway):
    gateway.fail_on["create_checkout_session"] = GatewayUnavailableError("Payment gateway unavailable")
    resp = _checkout(client)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "gateway_unavailable"
    assert client.get("/api/payment/transactions", headers=ALICE).json()["transactions"] == []


def test_billing_disabled_without_secret_key(client, monkeypatch):
    from quillpass.main import app

    app.dependency_overrides.clear()
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    resp = _checkout(client)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_new_user_subscription_is_free(client):
    resp = client.get("/api/payment/subscription", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "free"
    assert body["status"] == "active"
    assert not body["is_active"]
    assert body["quota"] == {"used": 0, "limit": 5, "remaining": 5}
    assert body["entitlements"] == {"ai_summary_limit": 5, "ad_free": False, "can_create_content": False}


def test_ai_summary_quota_is_enforced(client):
    for i in range(5):
        resp = client.post("/api/payment/usage/ai-summary", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["used"] == i + 1

    denied = client.post("/api/payment/usage/ai-summary", headers=ALICE)
    assert denied.status_code == 403
    error = denied.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"] == {"plan": "free", "used": 5, "limit": 5, "remaining": 0}


def test_webhook_completes_checkout(client, gateway):
    _checkout(client)
    resp = _complete_via_webhook(client, gateway)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_1", "outcome": "applied"}

    sub = client.get("/api/payment/subscription", headers=ALICE).json()
    assert sub["plan"] == "premium"
    assert sub["is_active"]
    assert sub["quota"]["limit"] == "unlimited"
    assert sub["entitlements"]["ad_free"]

    for _ in range(7):
        assert client.post("/api/payment/usage/ai-summary", headers=ALICE).status_code == 200


def test_duplicate_webhook_is_acknowledged(client, gateway):
    _checkout(client)
    _complete_via_webhook(client, gateway)
    resp = _complete_via_webhook(client, gateway)
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"


def test_webhook_with_bad_signature(client):
    resp = client.post(
        "/api/payment/webhook",
        content=event_body("evt_1", "checkout.session.completed", checkout_payload("cs_1")),
        headers={"stripe-signature": "forged"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_verify_session_after_redirect(client, gateway):
    _checkout(client)
    gateway.add_session(checkout_payload("cs_test_1"))
    gateway.add_subscription(subscription_payload(period_end=datetime.now(timezone.utc) + timedelta(days=30)))

    first = client.get("/api/payment/verify-session/cs_test_1", headers=ALICE)
    second = client.get("/api/payment/verify-session/cs_test_1", headers=ALICE)

    assert first.status_code == 200
    assert not first.json()["cached"]
    assert first.json()["subscription"]["plan"] == "premium"
    assert second.json()["cached"]
    assert gateway.calls["retrieve_session"] == 1


def test_verify_session_unpaid(client):
    _checkout(client)
    resp = client.get("/api/payment/verify-session/cs_test_1", headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "payment_not_completed"


def test_verify_session_of_another_user(client, gateway):
    _checkout(client)
    gateway.add_session(checkout_payload("cs_test_1"))
    resp = client.get("/api/payment/verify-session/cs_test_1", headers=BOB)
    assert resp.status_code == 403


def test_cancel_subscription(client, gateway):
    _checkout(client)
    _complete_via_webhook(client, gateway)

    resp = client.post("/api/payment/cancel-subscription", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["period_end"] is not None
    assert body["subscription"]["plan"] == "premium"
    assert body["subscription"]["status"] == "cancelled"
    assert body["subscription"]["cancel_at_period_end"]


def test_cancel_without_subscription(client):
    resp = client.post("/api/payment/cancel-subscription", headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_active_subscription"


def test_transactions_are_owner_scoped(client, gateway):
    _checkout(client)
    _checkout(client, plan_id="pro", headers=BOB)

    listing = client.get("/api/payment/transactions", headers=ALICE).json()
    assert [t["transaction_id"] for t in listing["transactions"]] == ["cs_test_1"]
    assert listing["transactions"][0]["status"] == "pending"
    assert "metadata" not in listing["transactions"][0]
    assert listing["pagination"]["total_transactions"] == 1

    detail = client.get("/api/payment/transactions/cs_test_1", headers=ALICE)
    assert detail.status_code == 200
    assert detail.json()["plan"] == "premium"
    assert "metadata" not in detail.json()
    assert "user_email" not in detail.json()
    other = client.get("/api/payment/transactions/cs_test_2", headers=ALICE)
    assert other.status_code == 404
    assert other.json()["error"]["code"] == "not_found"


@pytest.mark.parametrize("query", ["page=0", "limit=0", "limit=101"])
def test_transaction_paging_bounds(client, query):
    resp = client.get(f"/api/payment/transactions?{query}", headers=ALICE)
    assert resp.status_code == 422
