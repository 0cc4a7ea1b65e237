"""Admin billing routes: role gate, ledger filters, revenue stats and session replay."""
from datetime import datetime, timedelta, timezone

from quillpass.core.metrics import METRICS
from quillpass.tests.mocks import checkout_payload, subscription_payload

ADMIN = {"X-User-Id": "admin_1", "X-User-Email": "ops@example.com", "X-User-Role": "admin"}
ALICE = {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"}
BOB = {"X-User-Id": "user_bob", "X-User-Email": "bob@example.com"}


def _paid(client, gateway, headers=ALICE, plan_id="premium", session_id="cs_test_1"):
    client.post("/api/payment/checkout", json={"plan_id": plan_id}, headers=headers)
    gateway.add_session(
        checkout_payload(session_id, user_id=headers["X-User-Id"], plan_id=plan_id, subscription_id=f"sub_{session_id}")
    )
    gateway.add_subscription(
        subscription_payload(
            f"sub_{session_id}",
            period_end=datetime.now(timezone.utc) + timedelta(days=30),
            price=f"price_{plan_id}_test",
        )
    )


def test_non_admin_is_forbidden(client):
    for path in ("/api/payment/admin/transactions", "/api/payment/admin/stats"):
        resp = client.get(path, headers=ALICE)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
    resp = client.post("/api/payment/admin/process-session", json={"session_id": "cs_1"}, headers=ALICE)
    assert resp.status_code == 403


def test_admin_requires_identity(client):
    assert client.get("/api/payment/admin/stats").status_code == 401


def test_process_session_replays_completion(client, gateway):
    _paid(client, gateway)

    resp = client.post("/api/payment/admin/process-session", json={"session_id": "cs_test_1"}, headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"]
    assert body["outcome"] == "applied"
    assert body["user_id"] == "user_alice"
    assert not body["fallback_used"]
    assert body["subscription"]["plan"] == "premium"

    again = client.post("/api/payment/admin/process-session", json={"session_id": "cs_test_1"}, headers=ADMIN)
    assert again.json()["outcome"] == "already_completed"
    assert again.json()["success"]


def test_process_session_unpaid(client):
    client.post("/api/payment/checkout", json={"plan_id": "premium"}, headers=ALICE)
    resp = client.post("/api/payment/admin/process-session", json={"session_id": "cs_test_1"}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "payment_not_completed"


def test_list_all_transactions_with_filters(client, gateway):
    _paid(client, gateway)
    client.post("/api/payment/admin/process-session", json={"session_id": "cs_test_1"}, headers=ADMIN)
    client.post("/api/payment/checkout", json={"plan_id": "pro"}, headers=BOB)

    resp = client.get("/api/payment/admin/transactions", headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["pagination"]["total_transactions"] == 2
    assert body["stats"]["completed"] == {"count": 1, "total_amount": 10000}
    assert body["stats"]["pending"] == {"count": 1, "total_amount": 15000}

    pending = client.get("/api/payment/admin/transactions?status=pending", headers=ADMIN).json()
    assert [t["user_id"] for t in pending["transactions"]] == ["user_bob"]

    search = client.get("/api/payment/admin/transactions?search=alice", headers=ADMIN).json()
    assert [t["transaction_id"] for t in search["transactions"]] == ["cs_test_1"]
    assert search["transactions"][0]["metadata"]["completed_via"] == "admin_replay"

    detail = client.get("/api/payment/admin/transactions/cs_test_2", headers=ADMIN)
    assert detail.status_code == 200
    assert detail.json()["user_id"] == "user_bob"


def test_invalid_filter_is_a_validation_error(client):
    resp = client.get("/api/payment/admin/transactions?status=bogus", headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_unknown_transaction(client):
    resp = client.get("/api/payment/admin/transactions/nope", headers=ADMIN)
    assert resp.status_code == 404


def test_revenue_stats(client, gateway):
    _paid(client, gateway)
    client.post("/api/payment/admin/process-session", json={"session_id": "cs_test_1"}, headers=ADMIN)

    resp = client.get("/api/payment/admin/stats", headers=ADMIN)
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["monthly_revenue"] == 10000
    assert stats["total_transactions"] == 1
    assert stats["plan_distribution"] == {"premium": {"count": 1, "revenue": 10000}}
    assert len(stats["monthly_growth"]) == 12
    assert stats["monthly_growth"][-1]["revenue"] == 10000
    assert 'completed_transactions_by_plan{plan="premium"} 1.0' in METRICS.export_prometheus()
