"""
Billing service orchestrator.

Coordinates:
- Customer management
- Checkout and billing portal sessions
- Webhook processing (verify, deduplicate, apply entitlements)

All Stripe-specific code is in stripe_provider.py; entitlement state changes
are in features/entitlements/service.py.
"""
import os
import hashlib
from dataclasses import dataclass
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from meterchat.core.config import settings
from meterchat.core.database import get_db_session, billing_events, users
from meterchat.core.errors import ValidationError
from meterchat.core.logging import log_event
from meterchat.features.billing.provider import (
    BillingDisabledError,
    BillingProvider,
    BillingProviderError,
    BillingWebhookResult,
)
from meterchat.features.billing.stripe_provider import StripeProvider
from meterchat.features.entitlements.service import SyncOutcome, apply_billing_event
from meterchat.features.usage.service import usage_snapshot
from meterchat.features.users.service import require_user
from meterchat.models.plan import PAID_PLANS, Plan, parse_plan


PRICE_ENV_VARS = {
    Plan.PRO: "STRIPE_PRICE_PRO",
    Plan.PREMIUM: "STRIPE_PRICE_PREMIUM",
    Plan.ENTERPRISE: "STRIPE_PRICE_ENTERPRISE",
}


@dataclass(frozen=True)
class WebhookProcessing:
    result: BillingWebhookResult
    outcome: Optional[SyncOutcome]
    duplicate: bool = False


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError()
    return provider


def get_stripe_price_for_plan(plan: Plan) -> Optional[str]:
    """Map a paid plan to its Stripe price ID."""
    env_var = PRICE_ENV_VARS.get(plan)
    return os.getenv(env_var) if env_var else None


def ensure_customer_for_user(email: str) -> str:
    """
    Return the user's Stripe customer ID, creating the customer on first use.

    Raises:
        BillingDisabledError: Stripe not configured
        BillingProviderError: If customer creation fails
    """
    provider = _require_provider()
    user = require_user(email)
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = provider.ensure_customer(user.id, user.email)
    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.id == user.id)
            .where(users.c.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id)
        )
    log_event("info", "billing.customer_created", user_email=user.email, event_type="billing.customer_created")
    return customer_id


def start_checkout(email: str, plan_value: str) -> str:
    """
    Start checkout session for a paid plan.

    Returns:
        Checkout URL

    Raises:
        ValidationError: plan is not a paid plan
        BillingDisabledError: Stripe not configured
        BillingProviderError: price not configured or Stripe failure
    """
    provider = _require_provider()

    plan = parse_plan(plan_value)
    if plan is None or plan not in PAID_PLANS:
        raise ValidationError(f"Invalid plan: {plan_value}")

    price_id = get_stripe_price_for_plan(plan)
    if not price_id:
        raise BillingProviderError(f"No Stripe price configured for plan: {plan.value}")

    user = require_user(email)
    customer_id = ensure_customer_for_user(user.email)

    return provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=f"{settings.APP_URL}/account?success=true",
        cancel_url=f"{settings.APP_URL}/account?canceled=true",
        metadata={"user_id": str(user.id), "plan": plan.value},
    )


def start_portal(email: str) -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        ValidationError: user never went through checkout
        BillingDisabledError: Stripe not configured
        BillingProviderError: If portal creation fails
    """
    provider = _require_provider()
    user = require_user(email)
    if not user.stripe_customer_id:
        raise ValidationError("No active subscription")

    return provider.create_portal_session(
        customer_id=user.stripe_customer_id,
        return_url=f"{settings.APP_URL}/account",
    )


def _claim_event(result: BillingWebhookResult, payload_hash: str) -> bool:
    """
    Record the event before applying it.

    Returns False when the event was processed already or another delivery
    is still applying it. Only attempts that recorded an error are retried.
    """
    with get_db_session() as session:
        retried = session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .where(billing_events.c.processed.is_(False))
            .where(billing_events.c.error.is_not(None))
            .values(error=None)
        )
        if retried.rowcount == 1:
            return True

        existing = session.execute(
            select(billing_events.c.id).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).first()
        if existing is not None:
            return False

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=result.event_id,
                    event_type=result.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race condition: another delivery inserted this event first
        return False
    return True


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookProcessing:
    """
    Process billing webhook event (idempotent).

    1. Verify signature (before any database access)
    2. Skip events already processed or still being applied
    3. Apply entitlement changes
    4. Mark as processed, or store the error and re-raise

    Raises:
        BillingDisabledError: Stripe not configured
        BillingWebhookError: If signature invalid or payload malformed
    """
    provider = _require_provider()
    result = provider.handle_webhook(headers, body)

    payload_hash = hashlib.sha256(body).hexdigest()
    if not _claim_event(result, payload_hash):
        log_event(
            "info",
            "billing.webhook_duplicate",
            event_type=result.event_type,
            extra={"event_id": result.event_id},
        )
        return WebhookProcessing(result=result, outcome=None, duplicate=True)

    try:
        outcome = apply_billing_event(result)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e) or type(e).__name__)
            )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )

    return WebhookProcessing(result=result, outcome=outcome)


def get_billing_status(email: str) -> Dict[str, Any]:
    """
    Get user's entitlement view.

    Returns:
        {
            "enabled": bool,
            "plan": str,
            "subscription_status": str | None,
            "has_customer": bool,
            "usage": {"used", "limit", "plan"}
        }
    """
    user = require_user(email)
    return {
        "enabled": billing_enabled(),
        "plan": user.plan,
        "subscription_status": user.subscription_status,
        "has_customer": bool(user.stripe_customer_id),
        "usage": usage_snapshot(user).model_dump(),
    }
