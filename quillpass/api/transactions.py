"""Owner-scoped, read-only ledger routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from quillpass.core.auth import get_current_user
from quillpass.features.billing import ledger
from quillpass.models.transaction import Transaction
from quillpass.models.user import User


router = APIRouter(prefix="/payment", tags=["transactions"])


class TransactionItem(BaseModel):
    """Ledger row as shown to its owner (internal metadata omitted)."""
    id: int
    transaction_id: str
    amount: int
    currency: str
    plan: str
    plan_name: Optional[str]
    status: str
    type: str
    description: Optional[str]
    billing_period_start: Optional[datetime]
    billing_period_end: Optional[datetime]
    paid_at: Optional[datetime]
    failed_at: Optional[datetime]
    refunded_at: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionItem":
        return cls(
            id=txn.id,
            transaction_id=txn.transaction_id,
            amount=txn.amount,
            currency=txn.currency,
            plan=txn.plan,
            plan_name=txn.plan_name,
            status=txn.status.value,
            type=txn.type.value,
            description=txn.description,
            billing_period_start=txn.billing_period_start,
            billing_period_end=txn.billing_period_end,
            paid_at=txn.paid_at,
            failed_at=txn.failed_at,
            refunded_at=txn.refunded_at,
            created_at=txn.created_at,
        )


class TransactionListResponse(BaseModel):
    transactions: List[TransactionItem]
    pagination: Dict[str, Any]


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=ledger.MAX_PAGE_SIZE),
    user: User = Depends(get_current_user),
):
    items, pagination = ledger.list_for_user(user.user_id, page=page, limit=limit)
    return TransactionListResponse(
        transactions=[TransactionItem.from_transaction(t) for t in items],
        pagination=pagination,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionItem)
def get_transaction(transaction_id: str, user: User = Depends(get_current_user)):
    return TransactionItem.from_transaction(ledger.get_for_user(user.user_id, transaction_id))
