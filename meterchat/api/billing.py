"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/status: Get user entitlement status
"""
from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from meterchat.core.auth import get_current_user_email
from meterchat.features.billing.service import (
    get_billing_status,
    process_webhook_event,
    start_checkout,
    start_portal,
)


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan: str


class RedirectResponse(BaseModel):
    """Response with a provider-hosted URL."""
    url: str


class UsageView(BaseModel):
    used: int
    limit: int
    plan: str


class BillingStatusResponse(BaseModel):
    enabled: bool
    plan: str
    subscription_status: Optional[str]
    has_customer: bool
    usage: UsageView


@router.post("/checkout", response_model=RedirectResponse)
def create_checkout(request: CheckoutRequest, email: str = Depends(get_current_user_email)):
    """
    Create Stripe checkout session.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        400: Plan is not PRO, PREMIUM or ENTERPRISE
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        502: Price not configured or Stripe API error
    """
    return {"url": start_checkout(email, request.plan)}


@router.post("/portal", response_model=RedirectResponse)
def create_portal(email: str = Depends(get_current_user_email)):
    """
    Create Stripe billing portal session.

    Errors:
        400: User never completed checkout
        503: Billing disabled
        502: Stripe API error
    """
    return {"url": start_portal(email)}


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies the signature over the raw body, processes the event
    idempotently and updates entitlements.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
        500: Processing failed (Stripe retries the delivery)
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    processing = await run_in_threadpool(process_webhook_event, headers, body)
    return {"received": True, "event_id": processing.result.event_id}


@router.get("/status", response_model=BillingStatusResponse)
def get_status(email: str = Depends(get_current_user_email)):
    return get_billing_status(email)
