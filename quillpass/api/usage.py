"""Metered usage routes, called by the AI summary feature before it does any work."""
from typing import Union
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from quillpass.core.auth import get_current_user
from quillpass.features.usage.service import consume_or_raise
from quillpass.models.user import User


router = APIRouter(prefix="/payment/usage", tags=["usage"])


class UsageConsumedResponse(BaseModel):
    allowed: bool
    plan: str
    used: int
    limit: Union[int, str]
    remaining: Union[int, str]


@router.post("/ai-summary", response_model=UsageConsumedResponse)
def consume_ai_summary(user: User = Depends(get_current_user)):
    """
    Consume one AI summary from this month's allowance.

    Errors:
        403 quota_exceeded: limit reached; error.details carries {plan, used, limit, remaining}
    """
    decision = consume_or_raise(user.user_id)
    return UsageConsumedResponse(allowed=decision.allowed, plan=decision.plan, **decision.to_payload())
