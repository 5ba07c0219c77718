"""
Plan Catalog - Static plan definitions

Maps a plan identifier to its entitlement bundle (credit grant, duration,
features, model tiers, price). Pure data, read-only at runtime, so no
locking is needed anywhere it is read.

Rules:
- External storefront ids are normalized through PLAN_ALIASES
- Unknown plans raise InvalidPlan, they never fall back to a default
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .config import PLAN_CATALOG, PLAN_ALIASES
from .errors import InvalidPlan
from .models import PlanDefinition

logger = logging.getLogger(__name__)


def resolve_plan_id(external_id: Optional[str]) -> str:
    """
    Normalize an external plan identifier to a catalog id.

    Args:
        external_id: Plan id from a webhook, admin request or storefront

    Returns:
        One of none, tier1, tier2, tier3

    Raises:
        InvalidPlan if the id is empty or unknown
    """
    if not external_id:
        raise InvalidPlan("Plan id is required")

    key = str(external_id).strip().lower()
    plan_id = PLAN_ALIASES.get(key, key)

    if plan_id not in PLAN_CATALOG:
        logger.warning(f"Unknown plan id: {external_id}")
        raise InvalidPlan(f"Unknown plan: {external_id}", plan_id=external_id)

    return plan_id


def get_plan(plan_id: str) -> PlanDefinition:
    """Look up a plan by catalog id or alias."""
    resolved = resolve_plan_id(plan_id)
    plan = PLAN_CATALOG[resolved]
    return PlanDefinition(
        plan_id=resolved,
        name=plan["name"],
        credits_granted=plan["credits"],
        duration_days=plan["duration_days"],
        features=list(plan["features"]),
        allowed_models=list(plan["allowed_models"]),
        price=plan["price"]
    )


def list_plans(include_none: bool = False) -> List[PlanDefinition]:
    """All purchasable plans, cheapest first."""
    plans = [get_plan(plan_id) for plan_id in PLAN_CATALOG]
    if not include_none:
        plans = [p for p in plans if p.plan_id != "none"]
    return sorted(plans, key=lambda p: p.price)


def plan_expiry(plan: PlanDefinition, now: datetime) -> Optional[datetime]:
    """Expiry of a plan granted at `now`. Plans without a duration never expire."""
    if plan.duration_days <= 0:
        return None
    return now + timedelta(days=plan.duration_days)
