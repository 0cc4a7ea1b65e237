"""
quillpass/models/transaction.py

Ledger entry model. Rows are never deleted; `completed` may later become `refunded`.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    CANCELLATION = "cancellation"
    REFUND = "refund"


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    transaction_id: str
    user_id: str
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    amount: int = Field(ge=0)
    currency: str = "usd"
    plan: str
    plan_name: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    type: TransactionType = TransactionType.SUBSCRIPTION
    external_session_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_payment_intent_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    period_end_fallback: bool = False
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Transaction":
        data = dict(row._mapping)
        data["metadata"] = data.get("metadata") or {}
        return cls(**data)
