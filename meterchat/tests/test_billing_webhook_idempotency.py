"""
Test billing webhook idempotency.

Verifies duplicate webhook events are not reprocessed, failed events are
retried, and unsigned deliveries never reach the database.
"""
import pytest
from unittest.mock import patch
from sqlalchemy import select, update

from meterchat.core.database import get_db_session, billing_events, users
from meterchat.features.billing.provider import BillingWebhookError
from meterchat.features.billing.service import process_webhook_event
from meterchat.features.entitlements.service import SyncOutcome, apply_billing_event
from meterchat.features.users.service import require_user
from meterchat.tests.mocks import signed_webhook, stripe_event


def _billing_event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).first()


def _set_usage(email, used):
    with get_db_session() as session:
        session.execute(update(users).where(users.c.email == email).values(messages_used=used))


def test_webhook_idempotency_skips_duplicate_events(stripe_env, make_user):
    user = make_user(plan="PRO", stripe_customer_id="cus_123", subscription_status="ACTIVE", messages_used=47)
    event = stripe_event("invoice.payment_succeeded", {"customer": "cus_123", "subscription": "sub_1"}, event_id="evt_renew")

    headers, body = signed_webhook(event, stripe_env)
    first = process_webhook_event(headers, body)
    assert first.outcome == SyncOutcome.APPLIED
    assert first.duplicate is False
    assert require_user(user.email).messages_used == 0

    # Usage accrues, then the same event is delivered again
    _set_usage(user.email, 5)
    headers, body = signed_webhook(event, stripe_env)
    second = process_webhook_event(headers, body)

    assert second.duplicate is True
    assert second.outcome is None
    assert require_user(user.email).messages_used == 5

    row = _billing_event_row("evt_renew")
    assert row.processed is True
    assert row.processed_at is not None
    assert row.error is None


def test_redelivery_while_first_attempt_in_flight_is_skipped(stripe_env, make_user):
    user = make_user(plan="PRO", stripe_customer_id="cus_123", subscription_status="ACTIVE", messages_used=47)
    event = stripe_event("invoice.payment_succeeded", {"customer": "cus_123"}, event_id="evt_dup")
    redeliveries = []

    def apply_then_redeliver(result):
        outcome = apply_billing_event(result)
        # Usage accrues and Stripe redelivers before the first attempt finishes
        _set_usage(user.email, 5)
        headers, body = signed_webhook(event, stripe_env)
        redeliveries.append(process_webhook_event(headers, body))
        return outcome

    headers, body = signed_webhook(event, stripe_env)
    with patch(
        "meterchat.features.billing.service.apply_billing_event",
        side_effect=apply_then_redeliver,
    ) as apply:
        first = process_webhook_event(headers, body)

    assert apply.call_count == 1
    assert first.outcome == SyncOutcome.APPLIED
    [second] = redeliveries
    assert second.duplicate is True
    assert require_user(user.email).messages_used == 5
    assert _billing_event_row("evt_dup").processed is True


def test_failed_event_records_error_and_is_retried(stripe_env, make_user):
    user = make_user(plan="PRO", stripe_customer_id="cus_123", subscription_status="ACTIVE", messages_used=47)
    event = stripe_event("invoice.payment_succeeded", {"customer": "cus_123"}, event_id="evt_flaky")

    headers, body = signed_webhook(event, stripe_env)
    with patch(
        "meterchat.features.billing.service.apply_billing_event",
        side_effect=RuntimeError("database hiccup"),
    ):
        with pytest.raises(RuntimeError):
            process_webhook_event(headers, body)

    row = _billing_event_row("evt_flaky")
    assert row.processed is False
    assert "database hiccup" in row.error
    assert require_user(user.email).messages_used == 47

    # Provider redelivers the same event
    headers, body = signed_webhook(event, stripe_env)
    retry = process_webhook_event(headers, body)

    assert retry.duplicate is False
    assert retry.outcome == SyncOutcome.APPLIED
    assert require_user(user.email).messages_used == 0
    row = _billing_event_row("evt_flaky")
    assert row.processed is True
    assert row.error is None


def test_no_op_outcomes_are_still_marked_processed(stripe_env):
    event = stripe_event("invoice.payment_succeeded", {"customer": "cus_nobody"}, event_id="evt_orphan")
    headers, body = signed_webhook(event, stripe_env)

    processing = process_webhook_event(headers, body)

    assert processing.outcome == SyncOutcome.USER_NOT_FOUND
    assert _billing_event_row("evt_orphan").processed is True


def test_invalid_signature_rejected_before_any_database_access(stripe_env, make_user):
    make_user(stripe_customer_id="cus_123", messages_used=3)
    event = stripe_event("invoice.payment_succeeded", {"customer": "cus_123"}, event_id="evt_forged")
    headers, body = signed_webhook(event, "whsec_attacker")

    with patch("meterchat.features.billing.service.get_db_session") as db, \
            patch("meterchat.features.billing.service.apply_billing_event") as apply:
        with pytest.raises(BillingWebhookError):
            process_webhook_event(headers, body)

    db.assert_not_called()
    apply.assert_not_called()
    assert _billing_event_row("evt_forged") is None
    assert require_user("alice@example.com").messages_used == 3
