"""
Stripe provider: webhook signature verification, event parsing and API calls.

Signatures are computed with the real Stripe scheme (HMAC-SHA256 over
"{timestamp}.{payload}") so verification runs against the stripe library.
"""
import json
import time
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import stripe

from meterchat.features.billing.provider import BillingEventKind, BillingProviderError, BillingWebhookError
from meterchat.features.billing.stripe_provider import StripeProvider, parse_event
from meterchat.tests.mocks import sign_stripe_payload, signed_webhook, stripe_event

SECRET = "whsec_provider_test"


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_provider", webhook_secret=SECRET)


def test_requires_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_valid_signature_parses_checkout(provider):
    event = stripe_event(
        "checkout.session.completed",
        {
            "object": "checkout.session",
            "customer": "cus_123",
            "subscription": "sub_456",
            "metadata": {"user_id": "7", "plan": "PRO"},
        },
        event_id="evt_checkout",
        created=1767225600,
    )
    headers, body = signed_webhook(event, SECRET)

    result = provider.handle_webhook(headers, body)

    assert result.event_id == "evt_checkout"
    assert result.kind == BillingEventKind.CHECKOUT_COMPLETED
    assert result.customer_id == "cus_123"
    assert result.subscription_id == "sub_456"
    assert result.user_id == 7
    assert result.plan == "PRO"
    assert result.created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_capitalized_signature_header_accepted(provider):
    event = stripe_event("invoice.payment_failed", {"customer": "cus_1", "subscription": "sub_1"})
    body = json.dumps(event).encode("utf-8")
    result = provider.handle_webhook({"Stripe-Signature": sign_stripe_payload(body, SECRET)}, body)
    assert result.kind == BillingEventKind.PAYMENT_FAILED


def test_signature_with_wrong_secret_rejected(provider):
    headers, body = signed_webhook(stripe_event("invoice.payment_succeeded", {"customer": "cus_1"}), "whsec_wrong")
    with pytest.raises(BillingWebhookError) as exc_info:
        provider.handle_webhook(headers, body)
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "invalid_signature"


def test_tampered_body_rejected(provider):
    headers, body = signed_webhook(stripe_event("invoice.payment_succeeded", {"customer": "cus_1"}), SECRET)
    tampered = body.replace(b"cus_1", b"cus_2")
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook(headers, tampered)


def test_expired_timestamp_rejected(provider):
    body = json.dumps(stripe_event("invoice.payment_succeeded", {"customer": "cus_1"})).encode("utf-8")
    old_header = sign_stripe_payload(body, SECRET, timestamp=int(time.time()) - 3600)
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({"stripe-signature": old_header}, body)


def test_missing_signature_header_rejected(provider):
    body = json.dumps(stripe_event("invoice.payment_succeeded", {"customer": "cus_1"})).encode("utf-8")
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, body)


def test_missing_webhook_secret_rejected(monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    provider = StripeProvider(secret_key="sk_test_provider")
    headers, body = signed_webhook(stripe_event("invoice.payment_succeeded", {}), SECRET)
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook(headers, body)


def test_signed_non_event_payload_rejected(provider):
    body = b'{"hello": "world"}'
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({"stripe-signature": sign_stripe_payload(body, SECRET)}, body)


def test_parse_subscription_events():
    updated = parse_event(stripe_event(
        "customer.subscription.updated",
        {"id": "sub_9", "customer": "cus_9", "status": "active"},
    ))
    assert updated.kind == BillingEventKind.SUBSCRIPTION_UPDATED
    assert updated.subscription_id == "sub_9"
    assert updated.subscription_active is True

    deleted = parse_event(stripe_event(
        "customer.subscription.deleted",
        {"id": "sub_9", "customer": "cus_9", "status": "canceled"},
    ))
    assert deleted.kind == BillingEventKind.SUBSCRIPTION_CANCELED
    assert deleted.subscription_active is False


def test_parse_invoice_events():
    result = parse_event(stripe_event("invoice.payment_succeeded", {"customer": "cus_3", "subscription": "sub_3"}))
    assert result.kind == BillingEventKind.PAYMENT_SUCCEEDED
    assert result.customer_id == "cus_3"
    assert result.subscription_id == "sub_3"


def test_parse_unhandled_event_type():
    result = parse_event(stripe_event("customer.created", {"id": "cus_3"}))
    assert result.kind is None
    assert result.event_type == "customer.created"


def test_parse_checkout_with_bad_user_id():
    result = parse_event(stripe_event(
        "checkout.session.completed",
        {"customer": "cus_1", "metadata": {"user_id": "not-a-number", "plan": "PRO"}},
    ))
    assert result.user_id is None


def test_ensure_customer_calls_stripe(provider):
    with patch("stripe.Customer.create", return_value=Mock(id="cus_new")) as create:
        assert provider.ensure_customer(5, "alice@example.com") == "cus_new"
    create.assert_called_once_with(email="alice@example.com", metadata={"user_id": "5"})


def test_checkout_session_uses_subscription_mode(provider):
    with patch("stripe.checkout.Session.create", return_value=Mock(url="https://checkout.stripe.com/s")) as create:
        url = provider.create_checkout_session(
            customer_id="cus_1",
            price_id="price_pro",
            success_url="http://app/account?success=true",
            cancel_url="http://app/account?canceled=true",
            metadata={"user_id": "1", "plan": "PRO"},
        )
    assert url == "https://checkout.stripe.com/s"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert kwargs["metadata"] == {"user_id": "1", "plan": "PRO"}


def test_portal_session(provider):
    with patch("stripe.billing_portal.Session.create", return_value=Mock(url="https://billing.stripe.com/p")) as create:
        assert provider.create_portal_session("cus_1", "http://app/account") == "https://billing.stripe.com/p"
    create.assert_called_once_with(customer="cus_1", return_url="http://app/account")


def test_stripe_api_errors_become_provider_errors(provider):
    with patch("stripe.checkout.Session.create", side_effect=stripe.StripeError("card network down")):
        with pytest.raises(BillingProviderError) as exc_info:
            provider.create_checkout_session("cus_1", "price_pro", "s", "c")
    assert exc_info.value.status_code == 502
