"""
Tests for the Stripe payment provider and Stripe event parsing.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from types import SimpleNamespace
from uuid import uuid4

import pytest
import stripe

from app.config import get_settings
from app.exceptions import (
    MisconfiguredIntegrationError,
    PaymentProviderError,
    WebhookVerificationError,
)
from app.models.api import Plan
from app.services.payment_provider import CheckoutRequest
from app.services.stripe_provider import StripeProvider, parse_stripe_event

WEBHOOK_SECRET = "whsec_test_fake_secret"
PRICE_PLANS = {"price_pro_test": Plan.PRO, "price_enterprise_test": Plan.ENTERPRISE}
PERIOD_END = 1775001600  # 2026-04-01T00:00:00Z


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def provider(**overrides) -> StripeProvider:
    return StripeProvider(get_settings().model_copy(update=overrides))


# ============================================================================
# Event parsing
# ============================================================================


class TestParseStripeEvent:
    """parse_stripe_event lifts only the reconciler's fields."""

    def test_checkout_completed(self):
        account_id = uuid4()
        event = parse_stripe_event(
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "customer": "cus_123",
                        "subscription": "sub_123",
                        "status": "complete",
                        "metadata": {"account_id": str(account_id), "plan": "pro"},
                    }
                },
            },
            PRICE_PLANS,
        )

        assert event.event_id == "evt_1"
        assert event.account_id == account_id
        assert event.customer_id == "cus_123"
        assert event.subscription_id == "sub_123"
        assert event.plan == Plan.PRO

    def test_subscription_updated_plan_comes_from_price(self):
        event = parse_stripe_event(
            {
                "id": "evt_2",
                "type": "customer.subscription.updated",
                "data": {
                    "object": {
                        "id": "sub_123",
                        "customer": "cus_123",
                        "status": "active",
                        "items": {
                            "data": [
                                {
                                    "price": {"id": "price_enterprise_test"},
                                    "current_period_end": PERIOD_END,
                                }
                            ]
                        },
                    }
                },
            },
            PRICE_PLANS,
        )

        assert event.subscription_id == "sub_123"
        assert event.status == "active"
        assert event.plan == Plan.ENTERPRISE
        assert event.current_period_end == datetime(2026, 4, 1, tzinfo=UTC)

    def test_subscription_deleted_with_unknown_price_has_no_plan(self):
        event = parse_stripe_event(
            {
                "id": "evt_3",
                "type": "customer.subscription.deleted",
                "data": {
                    "object": {
                        "id": "sub_123",
                        "status": "canceled",
                        "items": {"data": [{"price": {"id": "price_legacy"}}]},
                    }
                },
            },
            PRICE_PLANS,
        )

        assert event.plan is None
        assert event.price_id == "price_legacy"

    def test_subscription_metadata_plan_is_not_trusted(self):
        """Checkout metadata copied onto the subscription goes stale after a price change."""
        event = parse_stripe_event(
            {
                "id": "evt_3b",
                "type": "customer.subscription.updated",
                "data": {
                    "object": {
                        "id": "sub_123",
                        "status": "active",
                        "metadata": {"plan": "pro"},
                        "items": {"data": [{"price": {"id": "price_legacy"}}]},
                    }
                },
            },
            PRICE_PLANS,
        )

        assert event.plan is None
        assert event.price_id == "price_legacy"

    def test_invoice_paid_reads_parent_subscription_and_line_period(self):
        event = parse_stripe_event(
            {
                "id": "evt_4",
                "type": "invoice.paid",
                "data": {
                    "object": {
                        "customer": "cus_123",
                        "billing_reason": "subscription_cycle",
                        "parent": {"subscription_details": {"subscription": "sub_123"}},
                        "lines": {
                            "data": [
                                {
                                    "price": {"id": "price_pro_test"},
                                    "period": {"end": PERIOD_END},
                                }
                            ]
                        },
                    }
                },
            },
            PRICE_PLANS,
        )

        assert event.subscription_id == "sub_123"
        assert event.billing_reason == "subscription_cycle"
        assert event.current_period_end == datetime(2026, 4, 1, tzinfo=UTC)
        assert event.plan == Plan.PRO

    def test_malformed_account_metadata_is_dropped(self):
        event = parse_stripe_event(
            {
                "id": "evt_5",
                "type": "checkout.session.completed",
                "data": {"object": {"metadata": {"account_id": "not-a-uuid", "plan": "gold"}}},
            },
            PRICE_PLANS,
        )

        assert event.account_id is None
        assert event.plan is None

    def test_unknown_type_keeps_id_and_type(self):
        event = parse_stripe_event({"id": "evt_6", "type": "customer.created"}, PRICE_PLANS)
        assert event.known_type is None

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError):
            parse_stripe_event({"type": "invoice.paid"}, PRICE_PLANS)


# ============================================================================
# Webhook verification
# ============================================================================


class TestVerifyWebhook:
    """Signature verification through the stripe library."""

    async def test_valid_signature(self):
        payload = json.dumps(
            {"id": "evt_sig", "type": "invoice.paid", "data": {"object": {}}}
        ).encode()

        event = await provider().verify_webhook(payload, sign(payload))

        assert event.event_id == "evt_sig"

    async def test_bad_signature(self):
        payload = json.dumps({"id": "evt_sig", "type": "invoice.paid"}).encode()

        with pytest.raises(WebhookVerificationError):
            await provider().verify_webhook(payload, sign(payload, secret="whsec_wrong"))

    async def test_garbage_header(self):
        with pytest.raises(WebhookVerificationError):
            await provider().verify_webhook(b"{}", "not-a-signature")

    async def test_missing_secret(self):
        with pytest.raises(MisconfiguredIntegrationError):
            await provider(stripe_webhook_secret="").verify_webhook(b"{}", "t=1,v1=abc")


# ============================================================================
# Hosted sessions
# ============================================================================


class TestHostedSessions:
    """Checkout and portal sessions with the Stripe API patched out."""

    async def test_checkout_uses_configured_price(self, monkeypatch):
        captured = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        account_id = uuid4()

        session = await provider().create_checkout_session(
            CheckoutRequest(account_id=account_id, customer_id="cus_1", plan=Plan.PRO)
        )

        assert session.url == "https://checkout.stripe.test/cs_1"
        assert captured["line_items"] == [{"price": "price_pro_test", "quantity": 1}]
        assert captured["metadata"] == {"account_id": str(account_id), "plan": "pro"}

    async def test_checkout_without_price_is_misconfigured(self):
        with pytest.raises(MisconfiguredIntegrationError):
            await provider(stripe_price_enterprise="").create_checkout_session(
                CheckoutRequest(account_id=uuid4(), customer_id="cus_1", plan=Plan.ENTERPRISE)
            )

    async def test_stripe_error_is_wrapped(self, monkeypatch):
        def failing_create(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.billing_portal.Session, "create", failing_create)

        with pytest.raises(PaymentProviderError):
            await provider().create_portal_session("cus_1")

    async def test_missing_api_key(self):
        with pytest.raises(MisconfiguredIntegrationError):
            await provider(stripe_api_key="").create_customer(uuid4(), "a@example.com")

    def test_checkout_request_rejects_free_plan(self):
        with pytest.raises(ValueError):
            CheckoutRequest(account_id=uuid4(), customer_id="cus_1", plan=Plan.FREE)
