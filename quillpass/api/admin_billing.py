"""
Admin-only billing routes.
Requires a caller with the admin role on every endpoint.
- GET  /api/payment/admin/transactions: all ledgers with status/type/search filters
- GET  /api/payment/admin/transactions/{transaction_id}: any single row
- GET  /api/payment/admin/stats: revenue, plan distribution and 12-month growth
- POST /api/payment/admin/process-session: replay checkout completion for a session
"""

import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from quillpass.core.auth import require_admin
from quillpass.core.logging import log_event
from quillpass.core.metrics import completed_transactions_by_plan
from quillpass.features.billing import ledger
from quillpass.features.billing.gateway import PaymentGateway
from quillpass.features.billing.reconcile import process_session
from quillpass.features.billing.service import get_gateway
from quillpass.models.subscription import SubscriptionSnapshot
from quillpass.models.transaction import Transaction
from quillpass.models.user import User

logger = logging.getLogger("quillpass.admin_billing")

router = APIRouter(prefix="/payment/admin", tags=["admin-billing"])


# ============================================================================
# Pydantic Models
# ============================================================================

class AdminTransactionListResponse(BaseModel):
    transactions: List[Transaction]
    pagination: Dict[str, Any]
    stats: Dict[str, Dict[str, int]] = Field(default_factory=dict, description="Per-status count and amount for the filter")


class MonthlyGrowth(BaseModel):
    month: str  # YYYY-MM
    revenue: int
    transactions: int


class AdminStatsResponse(BaseModel):
    monthly_revenue: int
    monthly_transactions: int
    yearly_revenue: int
    yearly_transactions: int
    total_revenue: int
    total_transactions: int
    plan_distribution: Dict[str, Dict[str, int]]
    monthly_growth: List[MonthlyGrowth]


class ProcessSessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=200)


class ProcessSessionResponse(BaseModel):
    success: bool
    session_id: str
    outcome: str
    user_id: Optional[str]
    fallback_used: bool
    subscription: Optional[SubscriptionSnapshot]


# ============================================================================
# Admin Endpoints
# ============================================================================

@router.get("/transactions", response_model=AdminTransactionListResponse)
def list_all_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=ledger.MAX_PAGE_SIZE),
    status: Optional[str] = Query(None, description="pending|completed|failed|cancelled|refunded|all"),
    type: Optional[str] = Query(None, description="subscription|renewal|upgrade|cancellation|refund|all"),
    search: Optional[str] = Query(None, max_length=200, description="Matches email, name or transaction id"),
    admin: User = Depends(require_admin),
):
    items, pagination, stats = ledger.admin_list(page=page, limit=limit, status=status, type=type, search=search)
    return AdminTransactionListResponse(transactions=items, pagination=pagination, stats=stats)


@router.get("/transactions/{transaction_id}", response_model=Transaction)
def get_any_transaction(transaction_id: str, admin: User = Depends(require_admin)):
    return ledger.get_any(transaction_id)


@router.get("/stats", response_model=AdminStatsResponse)
def revenue_stats(admin: User = Depends(require_admin)):
    stats = ledger.revenue_stats()
    for plan_id, values in stats["plan_distribution"].items():
        completed_transactions_by_plan.set(values["count"], labels={"plan": plan_id})
    return AdminStatsResponse(**stats)


@router.post("/process-session", response_model=ProcessSessionResponse)
def replay_session(
    body: ProcessSessionRequest,
    admin: User = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Re-run checkout completion for a paid session (missed or failed webhook).

    Idempotent: an already-completed session is reported as `already_completed`.
    """
    result = process_session(gateway, body.session_id)
    log_event(
        "info",
        "admin.process_session",
        user_id=admin.user_id,
        transaction_id=body.session_id,
        extra={"outcome": result.completion.outcome, "target_user_id": result.completion.user_id},
    )
    return ProcessSessionResponse(
        success=result.completion.outcome in ("applied", "already_completed"),
        session_id=body.session_id,
        outcome=result.completion.outcome,
        user_id=result.completion.user_id,
        fallback_used=result.completion.fallback_used,
        subscription=result.snapshot,
    )
