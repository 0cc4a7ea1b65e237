"""
quillpass/models/subscription.py

Value types for the subscription and metered-usage state embedded in a user.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Effective plan for admins: unlimited regardless of subscription
ADMIN_PLAN = "admin"


class Subscription(BaseModel):
    """Stored subscription state. Expiry is evaluated lazily by readers."""

    model_config = ConfigDict(frozen=True)

    plan: str = "free"
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    cancel_at_period_end: bool = False


class UsageCounter(BaseModel):
    """AI-summary usage for one calendar month (month is 1-12, UTC)."""

    model_config = ConfigDict(frozen=True)

    month: Optional[int] = None
    year: Optional[int] = None
    count: int = 0

    def is_current(self, now: datetime) -> bool:
        return self.month == now.month and self.year == now.year


class QuotaDecision(BaseModel):
    """Outcome of a metered check. `limit` of None means unlimited."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    plan: str
    used: int
    limit: Optional[int] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    def to_payload(self) -> Dict[str, Union[int, str]]:
        return {
            "used": self.used,
            "limit": "unlimited" if self.limit is None else self.limit,
            "remaining": "unlimited" if self.limit is None else self.remaining,
        }


class Entitlements(BaseModel):
    model_config = ConfigDict(frozen=True)

    ai_summary_limit: Optional[int] = None
    ad_free: bool = False
    can_create_content: bool = False


class SubscriptionSnapshot(BaseModel):
    """What feature-gating callers see: the effective plan, not the stored one."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: str
    stored_plan: str
    status: SubscriptionStatus
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    features: List[str] = Field(default_factory=list)
    entitlements: Entitlements = Field(default_factory=Entitlements)


class CancellationConfirmation(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    period_end: Optional[datetime] = None
    subscription: SubscriptionSnapshot
