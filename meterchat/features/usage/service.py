"""
meterchat/features/usage/service.py

Usage metering against plan quotas.

Handles:
- Quota decision (allow / QuotaExceededError) from the plan table
- Guarded usage increment after an accepted chat exchange
- Usage snapshot queries
"""

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from meterchat.core.database import users
from meterchat.core.errors import QuotaExceededError
from meterchat.core.logging import log_event
from meterchat.features.users.service import require_user
from meterchat.models.plan import DEFAULT_PLAN, PLAN_LIMITS, limit_for_plan
from meterchat.models.user import UsageSnapshot, User


def usage_snapshot(user: User) -> UsageSnapshot:
    return UsageSnapshot(
        used=user.messages_used,
        limit=limit_for_plan(user.plan),
        plan=user.plan,
    )


def get_usage(email: str) -> UsageSnapshot:
    return usage_snapshot(require_user(email))


def enforce_quota(user: User) -> UsageSnapshot:
    """
    Decide whether the user may send another message.

    The limit is always resolved from the user's current plan, never from
    the stored messages_limit column.

    Returns:
        The current usage snapshot when the request may proceed

    Raises:
        QuotaExceededError: messages_used >= limit for the plan
    """
    snapshot = usage_snapshot(user)
    if snapshot.used >= snapshot.limit:
        log_event(
            "warning",
            "quota.exceeded",
            user_email=user.email,
            event_type="quota.exceeded",
            error_code="quota_exceeded",
            extra={"used": snapshot.used, "limit": snapshot.limit, "plan": snapshot.plan},
        )
        raise QuotaExceededError(used=snapshot.used, limit=snapshot.limit, plan=snapshot.plan)
    return snapshot


def plan_limit_expression():
    """SQL expression giving the limit for the plan stored on the row."""
    return case(
        {plan.value: limit for plan, limit in PLAN_LIMITS.items()},
        value=users.c.plan,
        else_=PLAN_LIMITS[DEFAULT_PLAN],
    )


def consume_message(session: Session, user_id: int, input_tokens: int, output_tokens: int) -> UsageSnapshot:
    """
    Count one accepted exchange inside the caller's transaction.

    The increment only applies while messages_used is below the limit of the
    plan on the row at write time, so concurrent requests cannot overshoot.

    Raises:
        QuotaExceededError: the guard did not match (quota used up meanwhile)
    """
    result = session.execute(
        update(users)
        .where(users.c.id == user_id)
        .where(users.c.messages_used < plan_limit_expression())
        .values(
            messages_used=users.c.messages_used + 1,
            tokens_used=users.c.tokens_used + input_tokens + output_tokens,
        )
    )
    row = session.execute(
        select(users.c.email, users.c.plan, users.c.messages_used).where(users.c.id == user_id)
    ).first()
    if result.rowcount != 1:
        limit = limit_for_plan(row.plan) if row else PLAN_LIMITS[DEFAULT_PLAN]
        used = row.messages_used if row else limit
        plan = row.plan if row else DEFAULT_PLAN.value
        log_event(
            "warning",
            "quota.exceeded_on_commit",
            user_email=row.email if row else None,
            event_type="quota.exceeded",
            error_code="quota_exceeded",
            extra={"used": used, "limit": limit, "plan": plan},
        )
        raise QuotaExceededError(used=used, limit=limit, plan=plan)
    return UsageSnapshot(used=row.messages_used, limit=limit_for_plan(row.plan), plan=row.plan)
