"""
quillpass/features/plans/service.py

Plan catalog.

Handles:
- The fixed plan set (free, premium, pro)
- Plan resolution for checkout and quota evaluation
- Gateway price id lookups in both directions
"""

from typing import Dict, List, Optional

from quillpass.core.config import settings
from quillpass.core.errors import InvalidPlanError
from quillpass.models.plan import Plan


FREE_PLAN_ID = "free"

# Plan definitions; price references are filled from configuration
DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "amount": 0,
        "duration_days": 30,
        "features": ("5 AI Summaries per month",),
        "ai_summary_limit": "FREE_AI_SUMMARY_LIMIT",
        "ad_free": False,
        "can_create_content": False,
    },
    "premium": {
        "name": "Premium",
        "amount": 10000,
        "duration_days": 30,
        "features": (
            "Unlimited AI Summaries",
            "No Ads",
            "Priority Support",
            "Premium Badge",
        ),
        "price_setting": "STRIPE_PRICE_PREMIUM",
        "ai_summary_limit": None,  # unlimited
        "ad_free": True,
        "can_create_content": False,
    },
    "pro": {
        "name": "Pro",
        "amount": 15000,
        "duration_days": 30,
        "features": (
            "Everything in Premium",
            "Create Blog Posts",
            "Edit & Manage Blogs",
            "Pro Creator Badge",
        ),
        "price_setting": "STRIPE_PRICE_PRO",
        "ai_summary_limit": None,
        "ad_free": True,
        "can_create_content": True,
    },
}


def build_catalog(settings_obj=None) -> Dict[str, Plan]:
    """Materialize DEFAULT_PLANS against the given settings."""
    cfg = settings_obj or settings
    catalog: Dict[str, Plan] = {}
    for plan_id, entry in DEFAULT_PLANS.items():
        limit = entry["ai_summary_limit"]
        if isinstance(limit, str):
            limit = getattr(cfg, limit)
        price_setting = entry.get("price_setting")
        catalog[plan_id] = Plan(
            plan_id=plan_id,
            name=entry["name"],
            amount=entry["amount"],
            currency=cfg.CURRENCY,
            duration_days=entry["duration_days"],
            features=entry["features"],
            price_ref=getattr(cfg, price_setting, None) if price_setting else None,
            ai_summary_limit=limit,
            ad_free=entry["ad_free"],
            can_create_content=entry["can_create_content"],
        )
    return catalog


PLANS: Dict[str, Plan] = build_catalog()


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def resolve(plan_id: Optional[str]) -> Plan:
    """Look up a plan; unknown ids are a caller error."""
    plan = PLANS.get((plan_id or "").strip().lower())
    if plan is None:
        raise InvalidPlanError(f"Unknown plan: {plan_id}", details={"plan_id": plan_id, "available": list(PLANS)})
    return plan


def purchasable(plan_id: Optional[str]) -> Plan:
    """Resolve a plan that can be bought through checkout."""
    plan = resolve(plan_id)
    if not plan.is_paid:
        raise InvalidPlanError(f"Plan is not purchasable: {plan.plan_id}", details={"plan_id": plan.plan_id})
    if not plan.price_ref:
        raise InvalidPlanError(
            f"No gateway price configured for plan: {plan.plan_id}",
            code="plan_not_configured",
            details={"plan_id": plan.plan_id},
        )
    return plan


def plan_for_price(price_ref: Optional[str]) -> Optional[Plan]:
    """Map a gateway price id back to a plan (used when metadata is missing)."""
    if not price_ref:
        return None
    for plan in PLANS.values():
        if plan.price_ref == price_ref:
            return plan
    return None
