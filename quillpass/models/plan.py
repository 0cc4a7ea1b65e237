"""
quillpass/models/plan.py

Plan model: an immutable, process-wide subscription tier.
"""

from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class Plan(BaseModel):
    """
    Plan represents a purchasable (or default) tier.

    Examples:
    - free (default, not purchasable)
    - premium
    - pro

    `ai_summary_limit` of None means unlimited metered usage.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    amount: int = Field(ge=0, description="Monthly price in minor currency units")
    currency: str = "usd"
    duration_days: int = 30
    features: Tuple[str, ...] = ()
    price_ref: Optional[str] = Field(default=None, description="External gateway price id")
    ai_summary_limit: Optional[int] = None
    ad_free: bool = False
    can_create_content: bool = False

    @property
    def is_paid(self) -> bool:
        return self.amount > 0
