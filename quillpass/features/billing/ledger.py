"""
Transaction ledger.

Append-mostly store of monetary events. The first row of a subscription is
keyed by the checkout session id; derived rows (renewal, cancellation,
failed payment) get `<prefix>_<external id>_<epoch millis>` ids.
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import select, insert, update, func, or_, and_
from sqlalchemy.orm import Session

from quillpass.core.database import get_db_session, transactions
from quillpass.core.errors import NotFoundError, ValidationError
from quillpass.models.transaction import Transaction, TransactionStatus, TransactionType

MAX_PAGE_SIZE = 100


def derived_transaction_id(prefix: str, external_id: str, now: datetime) -> str:
    return f"{prefix}_{external_id}_{int(now.timestamp() * 1000)}"


def insert_transaction(session: Session, **values: Any) -> Transaction:
    for key in ("status", "type"):
        if hasattr(values.get(key), "value"):
            values[key] = values[key].value
    session.execute(insert(transactions).values(**values))
    return get_by_transaction_id(session, values["transaction_id"])


def get_by_transaction_id(session: Session, transaction_id: str) -> Optional[Transaction]:
    row = session.execute(
        select(transactions).where(transactions.c.transaction_id == transaction_id)
    ).first()
    return Transaction.from_row(row) if row else None


def complete_pending(session: Session, transaction_id: str, **values: Any) -> bool:
    """Conditionally flip a pending row to completed. False if it was not pending."""
    result = session.execute(
        update(transactions)
        .where(
            transactions.c.transaction_id == transaction_id,
            transactions.c.status == TransactionStatus.PENDING.value,
        )
        .values(status=TransactionStatus.COMPLETED.value, **values)
    )
    return result.rowcount == 1


def has_completed_invoice(session: Session, invoice_id: Optional[str]) -> bool:
    if not invoice_id:
        return False
    found = session.execute(
        select(transactions.c.id).where(
            transactions.c.external_invoice_id == invoice_id,
            transactions.c.status == TransactionStatus.COMPLETED.value,
        ).limit(1)
    ).first()
    return found is not None


def checkout_without_invoice(session: Session, external_subscription_id: Optional[str]) -> Optional[Transaction]:
    """Completed checkout row for the subscription whose first invoice is not yet known."""
    if not external_subscription_id:
        return None
    row = session.execute(
        select(transactions).where(
            transactions.c.external_subscription_id == external_subscription_id,
            transactions.c.type == TransactionType.SUBSCRIPTION.value,
            transactions.c.status == TransactionStatus.COMPLETED.value,
            transactions.c.external_invoice_id.is_(None),
        ).order_by(transactions.c.created_at.desc()).limit(1)
    ).first()
    return Transaction.from_row(row) if row is not None else None


def attach_invoice(session: Session, transaction_id: str, invoice_id: str) -> None:
    session.execute(
        update(transactions)
        .where(transactions.c.transaction_id == transaction_id, transactions.c.external_invoice_id.is_(None))
        .values(external_invoice_id=invoice_id)
    )


def has_cancellation(session: Session, external_subscription_id: Optional[str]) -> bool:
    if not external_subscription_id:
        return False
    found = session.execute(
        select(transactions.c.id).where(
            transactions.c.external_subscription_id == external_subscription_id,
            transactions.c.type == TransactionType.CANCELLATION.value,
        ).limit(1)
    ).first()
    return found is not None


def _page_params(page: int, limit: int) -> Tuple[int, int]:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return page, limit


def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_transactions": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def list_for_user(user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[Transaction], Dict[str, Any]]:
    """Owner's ledger, newest first."""
    page, limit = _page_params(page, limit)
    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(transactions).where(transactions.c.user_id == user_id)
        ).scalar() or 0
        rows = session.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()
    return [Transaction.from_row(r) for r in rows], _pagination(page, limit, total)


def _id_clause(transaction_ref: str):
    clause = transactions.c.transaction_id == transaction_ref
    if transaction_ref.isdigit():
        clause = or_(clause, transactions.c.id == int(transaction_ref))
    return clause


def get_for_user(user_id: str, transaction_ref: str) -> Transaction:
    """Single ledger row by transaction id (or row id) owned by the user."""
    with get_db_session() as session:
        row = session.execute(
            select(transactions).where(_id_clause(transaction_ref), transactions.c.user_id == user_id)
        ).first()
    if not row:
        raise NotFoundError("Transaction not found")
    return Transaction.from_row(row)


def get_any(transaction_ref: str) -> Transaction:
    with get_db_session() as session:
        row = session.execute(select(transactions).where(_id_clause(transaction_ref))).first()
    if not row:
        raise NotFoundError("Transaction not found")
    return Transaction.from_row(row)


def _enum_value(enum_cls, value: str, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field} filter: {value} (expected one of: {allowed})")


def admin_list(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
) -> Tuple[List[Transaction], Dict[str, Any], Dict[str, Dict[str, int]]]:
    """All users' ledgers with filters, plus per-status count/amount stats for the filter."""
    page, limit = _page_params(page, limit)
    conditions = []
    if status and status != "all":
        conditions.append(transactions.c.status == _enum_value(TransactionStatus, status, "status"))
    if type and type != "all":
        conditions.append(transactions.c.type == _enum_value(TransactionType, type, "type"))
    if search:
        pattern = f"%{search.strip()}%"
        conditions.append(
            or_(
                transactions.c.user_email.ilike(pattern),
                transactions.c.user_name.ilike(pattern),
                transactions.c.transaction_id.ilike(pattern),
            )
        )
    where = and_(*conditions) if conditions else None

    with get_db_session() as session:
        count_stmt = select(func.count()).select_from(transactions)
        list_stmt = select(transactions)
        stats_stmt = select(
            transactions.c.status,
            func.count().label("count"),
            func.coalesce(func.sum(transactions.c.amount), 0).label("total_amount"),
        )
        if where is not None:
            count_stmt = count_stmt.where(where)
            list_stmt = list_stmt.where(where)
            stats_stmt = stats_stmt.where(where)

        total = session.execute(count_stmt).scalar() or 0
        rows = session.execute(
            list_stmt.order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()
        stats_rows = session.execute(stats_stmt.group_by(transactions.c.status)).fetchall()

    stats = {
        r.status: {"count": int(r.count), "total_amount": int(r.total_amount)}
        for r in stats_rows
    }
    return [Transaction.from_row(r) for r in rows], _pagination(page, limit, total), stats


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def revenue_stats(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Completed revenue (month, year, all-time), plan distribution and 12-month growth."""
    now = now or datetime.now(timezone.utc)
    month_start = _month_start(now.year, now.month)
    year_start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
    growth_start = _month_start(*_shift_month(now.year, now.month, -11))
    completed = transactions.c.status == TransactionStatus.COMPLETED.value
    revenue_date = func.coalesce(transactions.c.paid_at, transactions.c.created_at)

    def _sum(session: Session, *extra) -> Dict[str, int]:
        row = session.execute(
            select(
                func.coalesce(func.sum(transactions.c.amount), 0),
                func.count(),
            ).where(completed, *extra)
        ).first()
        return {"amount": int(row[0]), "count": int(row[1])}

    with get_db_session() as session:
        monthly = _sum(session, revenue_date >= month_start)
        yearly = _sum(session, revenue_date >= year_start)
        total = _sum(session)
        plan_rows = session.execute(
            select(transactions.c.plan, func.count(), func.coalesce(func.sum(transactions.c.amount), 0))
            .where(completed)
            .group_by(transactions.c.plan)
        ).fetchall()
        recent = session.execute(
            select(transactions.c.amount, revenue_date.label("at"))
            .where(completed, revenue_date >= growth_start)
        ).fetchall()

    buckets: Dict[str, Dict[str, int]] = {}
    for delta in range(-11, 1):
        year, month = _shift_month(now.year, now.month, delta)
        buckets[f"{year:04d}-{month:02d}"] = {"revenue": 0, "transactions": 0}
    for amount, at in recent:
        if at is None:
            continue
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        key = f"{at.year:04d}-{at.month:02d}"
        if key in buckets:
            buckets[key]["revenue"] += int(amount)
            buckets[key]["transactions"] += 1

    return {
        "monthly_revenue": monthly["amount"],
        "monthly_transactions": monthly["count"],
        "yearly_revenue": yearly["amount"],
        "yearly_transactions": yearly["count"],
        "total_revenue": total["amount"],
        "total_transactions": total["count"],
        "plan_distribution": {
            plan: {"count": int(count), "revenue": int(amount)} for plan, count, amount in plan_rows
        },
        "monthly_growth": [{"month": key, **value} for key, value in buckets.items()],
    }
