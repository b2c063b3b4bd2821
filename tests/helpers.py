"""Shared test doubles and builders."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import Account
from app.exceptions import WebhookVerificationError
from app.models.api import Plan
from app.models.domain import BillingEvent, PlatformMetrics
from app.services.payment_provider import CheckoutRequest, RedirectSession

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def reload(
    session_factory: async_sessionmaker[AsyncSession], model: type[Any], pk: Any
) -> Any:
    """Read a row back in a fresh session."""
    async with session_factory() as session:
        return await session.get(model, pk)


class FakePaymentProvider:
    """In-memory PaymentProvider. verify_webhook returns the queued event."""

    def __init__(self) -> None:
        self.customers: list[tuple[UUID, str | None]] = []
        self.checkouts: list[CheckoutRequest] = []
        self.portals: list[str] = []
        self.next_event: BillingEvent | None = None

    async def create_customer(self, account_id: UUID, email: str | None) -> str:
        self.customers.append((account_id, email))
        return f"cus_{len(self.customers)}"

    async def create_checkout_session(self, request: CheckoutRequest) -> RedirectSession:
        self.checkouts.append(request)
        return RedirectSession(session_id="cs_test_1", url="https://checkout.test/cs_test_1")

    async def create_portal_session(self, customer_id: str) -> RedirectSession:
        self.portals.append(customer_id)
        return RedirectSession(session_id="bps_test_1", url="https://portal.test/bps_test_1")

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        if signature != "valid" or self.next_event is None:
            raise WebhookVerificationError("Invalid Stripe webhook signature")
        return self.next_event


class FakeFetcher:
    """Metrics fetcher returning canned results per username."""

    def __init__(self, results: dict[str, PlatformMetrics | Exception] | None = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, str]] = []

    async def fetch_metrics(self, platform: str, username: str) -> PlatformMetrics:
        self.calls.append((platform, username))
        result = self.results.get(username, PlatformMetrics(follower_count=100, post_count=10))
        if isinstance(result, Exception):
            raise result
        return result


def checkout_event(
    account: Account,
    event_id: str = "evt_1",
    plan: Plan | None = Plan.PRO,
    customer_id: str = "cus_123",
    subscription_id: str = "sub_123",
    current_period_end: datetime | None = None,
) -> BillingEvent:
    return BillingEvent(
        event_id=event_id,
        event_type="checkout.session.completed",
        customer_id=customer_id,
        subscription_id=subscription_id,
        account_id=account.id,
        plan=plan,
        status="complete",
        current_period_end=current_period_end,
    )
