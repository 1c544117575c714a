"""
meterchat/features/entitlements/service.py

Entitlement synchronization from billing events.

Translates normalized billing webhook results into the user's plan, message
limit, usage counter and subscription status. Subscription status changes go
through one explicit transition table; an event whose source status is not
listed is acknowledged and logged but not applied.

Events are applied under a row lock and compared with the creation time of
the last applied event, so an older event delivered late cannot undo a newer
one.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import logging

from sqlalchemy import select, update

from meterchat.core.database import get_db_session, users
from meterchat.features.billing.provider import BillingEventKind, BillingWebhookResult
from meterchat.models.plan import DEFAULT_PLAN, PAID_PLANS, PLAN_LIMITS, SubscriptionStatus, parse_plan


logger = logging.getLogger("meterchat")


class SyncOutcome(str, Enum):
    """What happened to a billing event. Every outcome is acknowledged."""
    APPLIED = "APPLIED"
    IGNORED_EVENT_TYPE = "IGNORED_EVENT_TYPE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_PLAN = "INVALID_PLAN"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STALE_EVENT = "STALE_EVENT"


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[Optional[SubscriptionStatus]]
    # None means the target depends on the event (subscription updates)
    target: Optional[SubscriptionStatus]


ANY_STATUS: FrozenSet[Optional[SubscriptionStatus]] = frozenset([None, *SubscriptionStatus])

# CANCELED -> ACTIVE is reachable through a new checkout or a provider-reported
# active subscription, never through an invoice payment.
STATUS_TRANSITIONS: Dict[BillingEventKind, Transition] = {
    BillingEventKind.CHECKOUT_COMPLETED: Transition(ANY_STATUS, SubscriptionStatus.ACTIVE),
    BillingEventKind.SUBSCRIPTION_UPDATED: Transition(ANY_STATUS, None),
    BillingEventKind.SUBSCRIPTION_CANCELED: Transition(ANY_STATUS, SubscriptionStatus.CANCELED),
    BillingEventKind.PAYMENT_SUCCEEDED: Transition(
        frozenset([
            None,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.INACTIVE,
        ]),
        SubscriptionStatus.ACTIVE,
    ),
    # A failed first invoice leaves no subscription to mark past due, so unset is not a source
    BillingEventKind.PAYMENT_FAILED: Transition(
        frozenset([
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.INACTIVE,
        ]),
        SubscriptionStatus.PAST_DUE,
    ),
}


def _status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    if value is None:
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_status(kind: BillingEventKind, current: Optional[SubscriptionStatus], result: BillingWebhookResult) -> Optional[SubscriptionStatus]:
    """Target status for an event, or None if the transition is not allowed."""
    transition = STATUS_TRANSITIONS[kind]
    if current not in transition.sources:
        return None
    if transition.target is not None:
        return transition.target
    return SubscriptionStatus.ACTIVE if result.subscription_active else SubscriptionStatus.INACTIVE


def entitlement_changes(result: BillingWebhookResult, row, target: SubscriptionStatus) -> Dict[str, Any]:
    """Column values written for an allowed event; plan and limit always move together."""
    values: Dict[str, Any] = {"subscription_status": target.value}
    kind = result.kind

    if kind == BillingEventKind.CHECKOUT_COMPLETED:
        plan = parse_plan(result.plan)
        values.update(
            plan=plan.value,
            messages_limit=PLAN_LIMITS[plan],
            messages_used=0,
            stripe_subscription_id=result.subscription_id,
        )
        if result.customer_id and not row.stripe_customer_id:
            values["stripe_customer_id"] = result.customer_id
    elif kind == BillingEventKind.SUBSCRIPTION_CANCELED:
        values.update(plan=DEFAULT_PLAN.value, messages_limit=PLAN_LIMITS[DEFAULT_PLAN])
    elif kind == BillingEventKind.PAYMENT_SUCCEEDED:
        # Monthly renewal
        values["messages_used"] = 0

    return values


def _find_user_row(session, result: BillingWebhookResult):
    query = select(users).with_for_update()
    if result.kind == BillingEventKind.CHECKOUT_COMPLETED and result.user_id is not None:
        return session.execute(query.where(users.c.id == result.user_id)).first()
    if result.customer_id:
        return session.execute(query.where(users.c.stripe_customer_id == result.customer_id)).first()
    return None


def _log(outcome: SyncOutcome, result: BillingWebhookResult, **fields) -> None:
    level = logging.INFO if outcome == SyncOutcome.APPLIED else logging.WARNING
    details = " ".join(f"{k}={v}" for k, v in fields.items())
    logger.log(
        level,
        f"[entitlements] {outcome.value} event={result.event_id} type={result.event_type} {details}".rstrip(),
        extra={"event_type": result.event_type},
    )


def apply_billing_event(result: BillingWebhookResult) -> SyncOutcome:
    """
    Apply a verified billing event to the user it refers to.

    Returns:
        SyncOutcome describing whether the event changed state. Events that
        cannot be applied (unknown type, unknown user, bad plan, disallowed
        transition, stale) are no-ops so the provider stops retrying them.
    """
    if result.kind is None:
        _log(SyncOutcome.IGNORED_EVENT_TYPE, result)
        return SyncOutcome.IGNORED_EVENT_TYPE

    if result.kind == BillingEventKind.CHECKOUT_COMPLETED:
        plan = parse_plan(result.plan)
        if plan is None or plan not in PAID_PLANS:
            _log(SyncOutcome.INVALID_PLAN, result, plan=result.plan)
            return SyncOutcome.INVALID_PLAN

    with get_db_session() as session:
        row = _find_user_row(session, result)
        if row is None:
            _log(SyncOutcome.USER_NOT_FOUND, result, customer=result.customer_id, user_id=result.user_id)
            return SyncOutcome.USER_NOT_FOUND

        last_applied = _as_utc(row.billing_event_at)
        event_time = _as_utc(result.created_at)
        if event_time and last_applied and event_time < last_applied:
            _log(SyncOutcome.STALE_EVENT, result, user=row.email)
            return SyncOutcome.STALE_EVENT

        current = _status(row.subscription_status)
        target = next_status(result.kind, current, result)
        if target is None:
            _log(SyncOutcome.INVALID_TRANSITION, result, user=row.email, current=row.subscription_status)
            return SyncOutcome.INVALID_TRANSITION

        values = entitlement_changes(result, row, target)
        if event_time:
            values["billing_event_at"] = event_time
        session.execute(update(users).where(users.c.id == row.id).values(**values))

    _log(
        SyncOutcome.APPLIED,
        result,
        user=row.email,
        status=target.value,
        plan=values.get("plan", row.plan),
    )
    return SyncOutcome.APPLIED
