"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) and the
normalized webhook result the entitlement handlers consume. This allows
swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Optional
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from meterchat.core.errors import AppError


class BillingEventKind(str, Enum):
    """Billing lifecycle events that change entitlements."""
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    kind: Optional[BillingEventKind]  # None for event types we do not act on
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[int] = None  # from checkout metadata
    plan: Optional[str] = None  # from checkout metadata
    subscription_active: Optional[bool] = None  # provider-reported status == active
    created_at: Optional[datetime] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Portal session creation
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, user_id: int, email: str) -> str:
        """
        Create a billing customer for the user.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a checkout session for a subscription.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(AppError):
    """Base exception for billing provider errors."""
    code = "billing_error"
    status_code = 502


class BillingWebhookError(BillingProviderError):
    """Webhook rejected before processing (signature or payload)."""
    code = "invalid_signature"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503

    def __init__(self, message: str = "Billing is not configured"):
        super().__init__(message)
