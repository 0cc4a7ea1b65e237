"""Transaction ledger: inserts, conditional completion, listings and revenue stats."""
from datetime import datetime, timedelta, timezone

import pytest

from quillpass.core.database import get_db_session
from quillpass.core.errors import NotFoundError, ValidationError
from quillpass.features.billing import ledger
from quillpass.models.transaction import TransactionStatus, TransactionType


def _add(transaction_id, user_id="user_alice", status=TransactionStatus.COMPLETED, amount=10000, plan="premium",
         type=TransactionType.SUBSCRIPTION, created_at=None, paid_at=None, **extra):
    created_at = created_at or datetime(2026, 3, 10, tzinfo=timezone.utc)
    with get_db_session() as session:
        return ledger.insert_transaction(
            session,
            transaction_id=transaction_id,
            user_id=user_id,
            user_email=f"{user_id}@example.com",
            user_name=user_id.split("_")[-1].title(),
            amount=amount,
            currency="usd",
            plan=plan,
            plan_name=plan.title(),
            status=status,
            type=type,
            created_at=created_at,
            updated_at=created_at,
            paid_at=paid_at if paid_at is not None else (created_at if status == TransactionStatus.COMPLETED else None),
            **extra,
        )


def test_derived_transaction_id_format():
    at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert ledger.derived_transaction_id("renewal", "sub_1", at) == f"renewal_sub_1_{int(at.timestamp() * 1000)}"


def test_insert_returns_model_with_enums():
    txn = _add("cs_1", status=TransactionStatus.PENDING, metadata={"k": "v"})
    assert txn.id is not None
    assert txn.status == TransactionStatus.PENDING
    assert txn.type == TransactionType.SUBSCRIPTION
    assert txn.metadata == {"k": "v"}
    assert txn.created_at.tzinfo is not None


def test_complete_pending_only_flips_pending_rows():
    _add("cs_1", status=TransactionStatus.PENDING)
    with get_db_session() as session:
        assert ledger.complete_pending(session, "cs_1", paid_at=datetime.now(timezone.utc))
    with get_db_session() as session:
        assert not ledger.complete_pending(session, "cs_1")
        assert ledger.get_by_transaction_id(session, "cs_1").status == TransactionStatus.COMPLETED


def test_has_completed_invoice():
    _add("renewal_1", external_invoice_id="in_1")
    _add("failed_1", status=TransactionStatus.FAILED, external_invoice_id="in_2")
    with get_db_session() as session:
        assert ledger.has_completed_invoice(session, "in_1")
        assert not ledger.has_completed_invoice(session, "in_2")
        assert not ledger.has_completed_invoice(session, None)


def test_list_for_user_is_owner_scoped_and_newest_first():
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    for i in range(3):
        _add(f"txn_{i}", created_at=base + timedelta(days=i))
    _add("txn_bob", user_id="user_bob")

    items, pagination = ledger.list_for_user("user_alice", page=1, limit=2)
    assert [t.transaction_id for t in items] == ["txn_2", "txn_1"]
    assert pagination == {
        "current_page": 1,
        "total_pages": 2,
        "total_transactions": 3,
        "has_next_page": True,
        "has_prev_page": False,
    }

    items, pagination = ledger.list_for_user("user_alice", page=2, limit=2)
    assert [t.transaction_id for t in items] == ["txn_0"]
    assert not pagination["has_next_page"]
    assert pagination["has_prev_page"]


def test_list_for_user_empty():
    items, pagination = ledger.list_for_user("nobody")
    assert items == []
    assert pagination["total_pages"] == 0


def test_page_bounds_are_validated():
    with pytest.raises(ValidationError):
        ledger.list_for_user("user_alice", page=0)
    with pytest.raises(ValidationError):
        ledger.list_for_user("user_alice", limit=ledger.MAX_PAGE_SIZE + 1)


def test_get_for_user_by_transaction_id_or_row_id():
    txn = _add("cs_1")
    assert ledger.get_for_user("user_alice", "cs_1").id == txn.id
    assert ledger.get_for_user("user_alice", str(txn.id)).transaction_id == "cs_1"
    with pytest.raises(NotFoundError):
        ledger.get_for_user("user_bob", "cs_1")
    assert ledger.get_any("cs_1").user_id == "user_alice"
    with pytest.raises(NotFoundError):
        ledger.get_any("missing")


def test_admin_list_filters_and_stats():
    _add("cs_a", user_id="user_alice")
    _add("cs_b", user_id="user_bob", status=TransactionStatus.PENDING, plan="pro", amount=15000)
    _add("failed_c", user_id="user_carol", status=TransactionStatus.FAILED, type=TransactionType.RENEWAL)

    items, pagination, stats = ledger.admin_list()
    assert pagination["total_transactions"] == 3
    assert stats["completed"] == {"count": 1, "total_amount": 10000}
    assert stats["pending"] == {"count": 1, "total_amount": 15000}

    items, _, stats = ledger.admin_list(status="failed")
    assert [t.transaction_id for t in items] == ["failed_c"]
    assert list(stats) == ["failed"]

    items, _, _ = ledger.admin_list(type="renewal")
    assert [t.transaction_id for t in items] == ["failed_c"]

    items, _, _ = ledger.admin_list(search="BOB")
    assert [t.transaction_id for t in items] == ["cs_b"]

    items, _, _ = ledger.admin_list(status="all", type="all")
    assert len(items) == 3


def test_admin_list_rejects_unknown_filter():
    with pytest.raises(ValidationError):
        ledger.admin_list(status="weird")
    with pytest.raises(ValidationError):
        ledger.admin_list(type="weird")


def test_revenue_stats_counts_completed_only():
    now = datetime(2026, 3, 20, tzinfo=timezone.utc)
    _add("cs_mar", created_at=datetime(2026, 3, 5, tzinfo=timezone.utc))
    _add("cs_jan", plan="pro", amount=15000, created_at=datetime(2026, 1, 5, tzinfo=timezone.utc))
    _add("cs_old", created_at=datetime(2025, 2, 5, tzinfo=timezone.utc))
    _add("cs_pending", status=TransactionStatus.PENDING, created_at=datetime(2026, 3, 6, tzinfo=timezone.utc))

    stats = ledger.revenue_stats(now)
    assert stats["monthly_revenue"] == 10000
    assert stats["monthly_transactions"] == 1
    assert stats["yearly_revenue"] == 25000
    assert stats["total_revenue"] == 35000
    assert stats["total_transactions"] == 3
    assert stats["plan_distribution"]["premium"] == {"count": 2, "revenue": 20000}
    assert stats["plan_distribution"]["pro"] == {"count": 1, "revenue": 15000}

    growth = stats["monthly_growth"]
    assert len(growth) == 12
    assert growth[0]["month"] == "2025-04"
    assert growth[-1] == {"month": "2026-03", "revenue": 10000, "transactions": 1}
    assert {"month": "2026-01", "revenue": 15000, "transactions": 1} in growth
