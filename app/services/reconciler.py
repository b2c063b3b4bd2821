"""
Webhook Reconciler - Applies billing provider events to entitlement state.

NO DICTIONARIES - Events arrive as typed BillingEvents.

Each event is handled as one database transaction:
1. Idempotency gate: record the external event id (unique constraint)
2. Apply the event to the account's subscription snapshot and the ledger
3. Recompute the cached effective plan
4. Append one audit entry
Any failure rolls the whole unit back, including the event record, so the
provider's retry reprocesses it.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.models import Account, ExternalEventRecord, SubscriptionAuditLog
from app.exceptions import DuplicateEventError
from app.models.api import (
    AuditEventType,
    BillingEventType,
    Plan,
    ReconcileOutcome,
    SubscriptionStatus,
)
from app.models.domain import BillingEvent, ReconcileResult
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.audit import BILLING_PROVIDER_ACTOR, AuditLogService
from app.services.credit_ledger import CreditLedger
from app.services.entitlements import ENTITLED_STATUSES, sync_effective_plan

logger = get_logger(__name__)

SUBSCRIPTION_CREATE_REASON = "subscription_create"

# Stripe reports more statuses than the entitlement model distinguishes.
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def map_subscription_status(status: str | None) -> SubscriptionStatus | None:
    if status is None:
        return None
    return PROVIDER_STATUS_MAP.get(status)


@dataclass
class _Applied:
    """What one handler did to the account."""

    audit_type: AuditEventType
    credits_granted: int = 0
    note: str | None = None


class WebhookReconciler:
    """
    Idempotent billing event handler.

    The unique constraint on external_event_records.external_event_id is the
    authoritative duplicate guard; the pre-insert lookup only short-circuits
    the common replay case.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.ledger = CreditLedger(session)
        self.audit = AuditLogService(session)

    async def handle(self, event: BillingEvent) -> ReconcileResult:
        """Apply an event at most once. Replays return a DUPLICATE no-op result."""
        with trace_operation(
            "webhook_reconcile", event_id=event.event_id, event_type=event.event_type
        ) as span:
            try:
                result = await self._handle(event)
                await self.session.commit()
            except DuplicateEventError:
                await self.session.rollback()
                metrics.record_webhook_event(event.event_type, ReconcileOutcome.DUPLICATE.value)
                logger.info(
                    "webhook_event_duplicate",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                span.set_attribute("outcome", ReconcileOutcome.DUPLICATE.value)
                return ReconcileResult(event_id=event.event_id, outcome=ReconcileOutcome.DUPLICATE)
            except Exception as e:
                await self.session.rollback()
                metrics.record_webhook_event(event.event_type, "failed")
                metrics.record_error(type(e).__name__, "webhook_reconcile")
                logger.error(
                    "webhook_event_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                    exc_info=True,
                )
                raise

            span.set_attribute("outcome", result.outcome.value)

        metrics.record_webhook_event(event.event_type, result.outcome.value)
        logger.info(
            "webhook_event_handled",
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=result.outcome.value,
            account_id=str(result.account_id) if result.account_id else None,
            credits_granted=result.credits_granted,
            effective_plan=result.effective_plan.value if result.effective_plan else None,
        )
        return result

    async def _handle(self, event: BillingEvent) -> ReconcileResult:
        await self._record_event(event)

        event_type = event.known_type
        if event_type is None:
            return self._ignored(event, "unhandled_event_type")

        account = await self._find_account(event)
        if account is None:
            return self._ignored(event, "account_not_found")

        if await self._is_stale_subscription_event(account, event_type, event):
            return self._ignored(event, "stale_subscription", account)

        now = self.clock()
        previous_plan = account.effective_plan
        previous_status = account.subscription_status
        previous_subscription_id = account.subscription_id

        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            applied = await self._apply_checkout(account, event, now)
        elif event_type == BillingEventType.SUBSCRIPTION_UPDATED:
            applied = self._apply_subscription_updated(account, event)
        elif event_type == BillingEventType.SUBSCRIPTION_DELETED:
            applied = self._apply_subscription_deleted(account)
        else:
            applied = await self._apply_invoice_paid(account, event)

        new_plan = sync_effective_plan(account, now)

        await self.audit.record(
            account_id=account.id,
            event_type=applied.audit_type,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_status=previous_status,
            new_status=account.subscription_status,
            external_event_id=event.event_id,
            external_subscription_id=event.subscription_id or previous_subscription_id,
            actor=BILLING_PROVIDER_ACTOR,
            metadata={
                "provider_event_type": event.event_type,
                "subscription_plan": (
                    account.subscription_plan.value if account.subscription_plan else None
                ),
                "current_period_end": (
                    account.current_period_end.isoformat() if account.current_period_end else None
                ),
                "credits_granted": applied.credits_granted,
                "note": applied.note,
            },
        )
        await self.session.flush()

        return ReconcileResult(
            event_id=event.event_id,
            outcome=ReconcileOutcome.APPLIED,
            account_id=account.id,
            credits_granted=applied.credits_granted,
            effective_plan=new_plan,
        )

    # ========================================================================
    # Event Handlers
    # ========================================================================

    async def _apply_checkout(
        self, account: Account, event: BillingEvent, now: datetime
    ) -> _Applied:
        if event.customer_id:
            account.billing_customer_id = event.customer_id
        if event.subscription_id:
            account.subscription_id = event.subscription_id
        account.subscription_status = SubscriptionStatus.ACTIVE
        period_end = event.current_period_end or now + timedelta(
            days=self.settings.default_period_days
        )
        account.current_period_end = period_end

        plan = event.plan
        if plan is None or plan == Plan.FREE:
            logger.warning(
                "checkout_plan_missing",
                event_id=event.event_id,
                account_id=str(account.id),
            )
            return _Applied(AuditEventType.CHECKOUT_COMPLETED, note="plan_missing")

        account.subscription_plan = plan
        amount = self._plan_credits(plan)
        await self.ledger.grant(
            account.id, amount, f"{plan.value} plan activation", related_id=event.event_id
        )
        account.last_credit_grant_period_end = period_end
        return _Applied(AuditEventType.CHECKOUT_COMPLETED, credits_granted=amount)

    def _apply_subscription_updated(self, account: Account, event: BillingEvent) -> _Applied:
        status = map_subscription_status(event.status)
        if status is not None:
            account.subscription_status = status
        else:
            logger.warning(
                "subscription_status_unmapped",
                event_id=event.event_id,
                status=event.status,
            )
        if event.subscription_id:
            account.subscription_id = event.subscription_id
        if event.current_period_end is not None:
            account.current_period_end = event.current_period_end
        if event.plan is not None:
            account.subscription_plan = event.plan
        elif event.price_id:
            logger.warning(
                "subscription_price_unrecognised",
                event_id=event.event_id,
                price_id=event.price_id,
            )
        return _Applied(AuditEventType.SUBSCRIPTION_UPDATED)

    def _apply_subscription_deleted(self, account: Account) -> _Applied:
        # The override is left alone; precedence decides what the user keeps.
        account.subscription_status = SubscriptionStatus.CANCELED
        account.subscription_id = None
        account.subscription_plan = Plan.FREE
        return _Applied(AuditEventType.SUBSCRIPTION_DELETED)

    async def _apply_invoice_paid(self, account: Account, event: BillingEvent) -> _Applied:
        # One-off invoices and invoices of a canceled or replaced subscription grant nothing
        if not event.subscription_id or event.subscription_id != account.subscription_id:
            return _Applied(AuditEventType.INVOICE_PAID, note="subscription_mismatch")
        if account.subscription_status not in ENTITLED_STATUSES:
            return _Applied(AuditEventType.INVOICE_PAID, note="subscription_not_entitled")

        period_end = event.current_period_end
        if event.plan is not None and event.plan != Plan.FREE:
            account.subscription_plan = event.plan
        if period_end is not None and (
            account.current_period_end is None or period_end > account.current_period_end
        ):
            account.current_period_end = period_end

        plan = account.subscription_plan
        if period_end is None:
            return _Applied(AuditEventType.INVOICE_PAID, note="period_end_missing")

        if event.billing_reason == SUBSCRIPTION_CREATE_REASON:
            # First invoice of a subscription; checkout grants the activation credits.
            account.last_credit_grant_period_end = period_end
            return _Applied(AuditEventType.INVOICE_PAID, note="initial_invoice")

        if plan is None or plan == Plan.FREE:
            return _Applied(AuditEventType.INVOICE_PAID, note="no_paid_plan")

        if account.last_credit_grant_period_end == period_end:
            logger.info(
                "renewal_already_granted",
                event_id=event.event_id,
                account_id=str(account.id),
                period_end=period_end.isoformat(),
            )
            return _Applied(AuditEventType.INVOICE_PAID, note="period_already_granted")

        amount = self._plan_credits(plan)
        await self.ledger.grant(
            account.id, amount, f"{plan.value} plan monthly renewal", related_id=event.event_id
        )
        account.last_credit_grant_period_end = period_end
        return _Applied(AuditEventType.INVOICE_PAID, credits_granted=amount)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _record_event(self, event: BillingEvent) -> None:
        """Insert the dedup record, raising DuplicateEventError if it already exists."""
        if await self._event_seen(event.event_id):
            raise DuplicateEventError(event.event_id)

        self.session.add(
            ExternalEventRecord(
                external_event_id=event.event_id,
                event_type=event.event_type,
                payload=event.payload,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Concurrent delivery of the same event won the insert
            raise DuplicateEventError(event.event_id) from e

    async def _event_seen(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(ExternalEventRecord.id).where(ExternalEventRecord.external_event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def _find_account(self, event: BillingEvent) -> Account | None:
        """Locate and lock the account by metadata id, then customer, then subscription."""
        lookups = []
        if event.account_id is not None:
            lookups.append(Account.id == event.account_id)
        if event.customer_id:
            lookups.append(Account.billing_customer_id == event.customer_id)
        if event.subscription_id:
            lookups.append(Account.subscription_id == event.subscription_id)

        for condition in lookups:
            result = await self.session.execute(
                select(Account)
                .where(condition)
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()
            if account is not None:
                return account
        return None

    async def _is_stale_subscription_event(
        self, account: Account, event_type: BillingEventType, event: BillingEvent
    ) -> bool:
        """
        Subscription events for a subscription the account no longer holds.

        Deletion clears account.subscription_id, so a late update for a
        canceled subscription is recognised through the audit log instead.
        """
        if event_type not in (
            BillingEventType.SUBSCRIPTION_UPDATED,
            BillingEventType.SUBSCRIPTION_DELETED,
        ):
            return False
        if not event.subscription_id or account.subscription_id == event.subscription_id:
            return False
        if account.subscription_id:
            return True
        return await self._subscription_canceled(account, event.subscription_id)

    async def _subscription_canceled(self, account: Account, subscription_id: str) -> bool:
        result = await self.session.execute(
            select(SubscriptionAuditLog.id)
            .where(
                SubscriptionAuditLog.account_id == account.id,
                SubscriptionAuditLog.event_type == AuditEventType.SUBSCRIPTION_DELETED,
                SubscriptionAuditLog.external_subscription_id == subscription_id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    def _plan_credits(self, plan: Plan) -> int:
        if plan == Plan.ENTERPRISE:
            return self.settings.enterprise_plan_credits
        return self.settings.pro_plan_credits

    def _ignored(
        self, event: BillingEvent, reason: str, account: Account | None = None
    ) -> ReconcileResult:
        logger.info(
            "webhook_event_ignored",
            event_id=event.event_id,
            event_type=event.event_type,
            reason=reason,
            customer_id=event.customer_id,
        )
        return ReconcileResult(
            event_id=event.event_id,
            outcome=ReconcileOutcome.IGNORED,
            account_id=account.id if account else None,
        )
