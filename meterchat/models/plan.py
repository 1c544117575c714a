"""
meterchat/models/plan.py

Plans, subscription statuses and the plan-to-limit table.

PLAN_LIMITS is the only place monthly message limits are defined. Both the
quota check and the billing webhook handlers read it, so adding a tier means
adding one entry here.
"""

from enum import Enum
from typing import Dict, Optional, Union


class Plan(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"


PLAN_LIMITS: Dict[Plan, int] = {
    Plan.FREE: 50,
    Plan.PRO: 500,
    Plan.PREMIUM: 2000,
    Plan.ENTERPRISE: 10000,
}

DEFAULT_PLAN = Plan.FREE

# Plans that can be bought through checkout
PAID_PLANS = (Plan.PRO, Plan.PREMIUM, Plan.ENTERPRISE)


def parse_plan(value: Union[str, Plan, None]) -> Optional[Plan]:
    """Return the Plan for a stored/posted value, or None if unrecognized."""
    if isinstance(value, Plan):
        return value
    if not value:
        return None
    try:
        return Plan(str(value).strip().upper())
    except ValueError:
        return None


def limit_for_plan(value: Union[str, Plan, None]) -> int:
    """Monthly message limit for a plan; unrecognized plans get FREE's limit."""
    plan = parse_plan(value)
    if plan is None:
        return PLAN_LIMITS[DEFAULT_PLAN]
    return PLAN_LIMITS[plan]
