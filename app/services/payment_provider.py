"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from app.models.api import Plan
from app.models.domain import BillingEvent


@dataclass(frozen=True)
class CheckoutRequest:
    """Provider-agnostic subscription checkout request."""

    account_id: UUID
    customer_id: str
    plan: Plan

    def __post_init__(self) -> None:
        if self.plan == Plan.FREE:
            raise ValueError("Checkout requires a paid plan")
        if not self.customer_id:
            raise ValueError("customer_id cannot be empty")


@dataclass(frozen=True)
class RedirectSession:
    """Hosted provider session the client is redirected to."""

    session_id: str
    url: str


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The reconciler only consumes verified BillingEvents, so any provider that
    can verify its webhooks and open hosted sessions can back the engine.
    """

    async def create_customer(self, account_id: UUID, email: str | None) -> str:
        """Create a billing customer and return its id."""
        ...

    async def create_checkout_session(self, request: CheckoutRequest) -> RedirectSession:
        """
        Open a hosted subscription checkout.

        Raises:
            MisconfiguredIntegrationError: If the plan has no price configured
            PaymentProviderError: If the provider call fails
        """
        ...

    async def create_portal_session(self, customer_id: str) -> RedirectSession:
        """Open the hosted billing portal for an existing customer."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
