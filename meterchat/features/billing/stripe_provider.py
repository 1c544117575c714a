"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import os
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from meterchat.features.billing.provider import (
    BillingEventKind,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)


STRIPE_EVENT_KINDS = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_CANCELED,
    "invoice.payment_succeeded": BillingEventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventKind.PAYMENT_FAILED,
}

# Seconds a signed timestamp stays valid
SIGNATURE_TOLERANCE = 300


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, user_id: int, email: str) -> str:
        """Create Stripe customer for user."""
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"user_id": str(user_id)},
            )
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, SIGNATURE_TOLERANCE
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise BillingWebhookError("Invalid payload: not a Stripe event")

        return parse_event(event)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_event(event: Dict[str, Any]) -> BillingWebhookResult:
    """Parse a verified Stripe event into a normalized BillingWebhookResult."""
    event_type = event["type"]
    data = (event.get("data") or {}).get("object") or {}
    metadata = data.get("metadata") or {}

    created_at = None
    if event.get("created"):
        created_at = datetime.fromtimestamp(event["created"], tz=timezone.utc)

    result = BillingWebhookResult(
        event_id=event["id"],
        event_type=event_type,
        kind=STRIPE_EVENT_KINDS.get(event_type),
        customer_id=data.get("customer"),
        created_at=created_at,
    )

    if result.kind == BillingEventKind.CHECKOUT_COMPLETED:
        result.subscription_id = data.get("subscription")
        result.user_id = _as_int(metadata.get("user_id"))
        result.plan = metadata.get("plan")
    elif result.kind in (BillingEventKind.SUBSCRIPTION_UPDATED, BillingEventKind.SUBSCRIPTION_CANCELED):
        result.subscription_id = data.get("id")
        result.subscription_active = data.get("status") == "active"
    elif result.kind in (BillingEventKind.PAYMENT_SUCCEEDED, BillingEventKind.PAYMENT_FAILED):
        result.subscription_id = data.get("subscription")

    return result
