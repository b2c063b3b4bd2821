"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe payloads are lifted into typed BillingEvents at the
boundary; nothing past this module reads raw Stripe objects.
"""

import json
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import stripe
from structlog import get_logger

from app.config import Settings
from app.exceptions import (
    MisconfiguredIntegrationError,
    PaymentProviderError,
    WebhookVerificationError,
)
from app.models.api import BillingEventType, Plan
from app.models.domain import BillingEvent
from app.services.payment_provider import CheckoutRequest, RedirectSession

logger = get_logger(__name__)


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _plan(value: Any) -> Plan | None:
    if not value:
        return None
    try:
        return Plan(str(value).lower())
    except ValueError:
        return None


def _account_id(metadata: dict[str, Any]) -> UUID | None:
    raw = metadata.get("account_id") or metadata.get("userId")
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        return None


def _first_item(container: dict[str, Any] | None) -> dict[str, Any]:
    data = (container or {}).get("data") or []
    return data[0] if data else {}


def parse_stripe_event(data: dict[str, Any], price_plans: dict[str, Plan]) -> BillingEvent:
    """
    Lift the fields the reconciler needs out of a Stripe event body.

    price_plans maps configured price ids to plans so subscription updates
    carry the plan implied by the current price.
    """
    event_id = data.get("id") or ""
    event_type = data.get("type") or ""
    obj: dict[str, Any] = (data.get("data") or {}).get("object") or {}
    metadata: dict[str, Any] = obj.get("metadata") or {}

    fields: dict[str, Any] = {
        "customer_id": obj.get("customer"),
        "account_id": _account_id(metadata),
    }

    if event_type == BillingEventType.CHECKOUT_COMPLETED.value:
        # Later events carry the plan through their price, not the checkout metadata
        fields["plan"] = _plan(metadata.get("plan"))
        fields["subscription_id"] = obj.get("subscription")
        fields["status"] = obj.get("status")

    elif event_type in (
        BillingEventType.SUBSCRIPTION_UPDATED.value,
        BillingEventType.SUBSCRIPTION_DELETED.value,
    ):
        item = _first_item(obj.get("items"))
        price_id = (item.get("price") or {}).get("id")
        fields["subscription_id"] = obj.get("id")
        fields["status"] = obj.get("status")
        fields["price_id"] = price_id
        fields["current_period_end"] = _timestamp(
            obj.get("current_period_end") or item.get("current_period_end")
        )
        if price_id and price_id in price_plans:
            fields["plan"] = price_plans[price_id]

    elif event_type == BillingEventType.INVOICE_PAID.value:
        line = _first_item(obj.get("lines"))
        price_id = (line.get("price") or {}).get("id")
        subscription_id = obj.get("subscription") or (
            ((obj.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        fields["subscription_id"] = subscription_id
        fields["status"] = obj.get("status")
        fields["price_id"] = price_id
        fields["billing_reason"] = obj.get("billing_reason")
        fields["current_period_end"] = _timestamp(
            (line.get("period") or {}).get("end") or obj.get("period_end")
        )
        if price_id and price_id in price_plans:
            fields["plan"] = price_plans[price_id]

    return BillingEvent(event_id=event_id, event_type=event_type, payload=data, **fields)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.stripe_api_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.app_url = settings.app_url.rstrip("/")
        self.plan_prices: dict[Plan, str] = {}
        if settings.stripe_price_pro:
            self.plan_prices[Plan.PRO] = settings.stripe_price_pro
        if settings.stripe_price_enterprise:
            self.plan_prices[Plan.ENTERPRISE] = settings.stripe_price_enterprise
        stripe.api_key = self.api_key

    @property
    def price_plans(self) -> dict[str, Plan]:
        return {price: plan for plan, price in self.plan_prices.items()}

    async def create_customer(self, account_id: UUID, email: str | None) -> str:
        """
        Create a Stripe customer tagged with the account id.

        Raises:
            MisconfiguredIntegrationError: If no API key is configured
            PaymentProviderError: If Stripe API call fails
        """
        self._require_api_key()
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"account_id": str(account_id)},
            )
            logger.info(
                "stripe_customer_created",
                account_id=str(account_id),
                customer_id=customer.id,
            )
            customer_id: str = customer.id
            return customer_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_creation_failed",
                account_id=str(account_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe customer creation failed: {exc}") from exc

    async def create_checkout_session(self, request: CheckoutRequest) -> RedirectSession:
        """
        Create a subscription Checkout Session for a paid plan.

        Raises:
            MisconfiguredIntegrationError: If no price is configured for the plan
            PaymentProviderError: If Stripe API call fails
        """
        self._require_api_key()
        price_id = self.plan_prices.get(request.plan)
        if not price_id:
            raise MisconfiguredIntegrationError(
                "stripe", f"STRIPE_PRICE_{request.plan.value.upper()}"
            )

        metadata = {"account_id": str(request.account_id), "plan": request.plan.value}
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=request.customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=f"{self.app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.app_url}/pricing",
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
            logger.info(
                "stripe_checkout_session_created",
                account_id=str(request.account_id),
                plan=request.plan.value,
                session_id=session.id,
            )
            return RedirectSession(session_id=session.id, url=session.url or "")

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                account_id=str(request.account_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

    async def create_portal_session(self, customer_id: str) -> RedirectSession:
        """
        Create a Billing Portal session for an existing customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        self._require_api_key()
        try:
            portal = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=f"{self.app_url}/billing",
            )
            logger.info("stripe_portal_session_created", customer_id=customer_id)
            return RedirectSession(session_id=portal.id, url=portal.url)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_portal_session_failed",
                customer_id=customer_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Stripe portal session failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed billing event

        Raises:
            MisconfiguredIntegrationError: If no webhook secret is configured
            WebhookVerificationError: If signature verification fails
        """
        if not self.webhook_secret:
            raise MisconfiguredIntegrationError("stripe", "STRIPE_WEBHOOK_SECRET")

        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
            event = parse_stripe_event(json.loads(payload), self.price_plans)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return event

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _require_api_key(self) -> None:
        if not self.api_key:
            raise MisconfiguredIntegrationError("stripe", "STRIPE_API_KEY")
