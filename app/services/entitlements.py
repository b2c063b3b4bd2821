"""
Entitlement Service - Effective-plan precedence and account entitlement state.

NO DICTIONARIES - All operations use strongly typed domain models.

Precedence (highest first):
1. Active manual override (no expiry, or expiry in the future)
2. Active or trialing external subscription
3. free
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account
from app.exceptions import AccountNotFoundError
from app.models.api import AuditEventType, Plan, Role, SubscriptionStatus
from app.models.domain import AccountData, ConsumeResult, EntitlementSnapshot, Principal
from app.observability.metrics import metrics
from app.services.audit import AuditLogService
from app.services.credit_ledger import CreditLedger

logger = get_logger(__name__)

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def effective_plan(snapshot: EntitlementSnapshot, now: datetime) -> Plan:
    """Pure precedence rule over override and subscription state."""
    if snapshot.plan_override is not None and (
        snapshot.plan_override_expires_at is None or snapshot.plan_override_expires_at > now
    ):
        return snapshot.plan_override

    if snapshot.subscription_status in ENTITLED_STATUSES:
        return snapshot.subscription_plan or Plan.FREE

    return Plan.FREE


def snapshot_of(account: Account) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        plan_override=account.plan_override,
        plan_override_expires_at=account.plan_override_expires_at,
        subscription_plan=account.subscription_plan,
        subscription_status=account.subscription_status,
    )


def sync_effective_plan(account: Account, now: datetime | None = None) -> Plan:
    """Recompute and write the cached effective plan. Returns the new value."""
    plan = effective_plan(snapshot_of(account), now or _utc_now())
    if account.effective_plan != plan:
        account.effective_plan = plan
    return plan


def account_data(account: Account) -> AccountData:
    return AccountData(
        account_id=account.id,
        external_id=account.external_id,
        email=account.email,
        role=account.role,
        effective_plan=account.effective_plan,
        plan_override=account.plan_override,
        plan_override_expires_at=account.plan_override_expires_at,
        plan_override_reason=account.plan_override_reason,
        billing_customer_id=account.billing_customer_id,
        subscription_id=account.subscription_id,
        subscription_plan=account.subscription_plan,
        subscription_status=account.subscription_status,
        current_period_end=account.current_period_end,
        created_at=account.created_at,
    )


class EntitlementService:
    """
    Account entitlement operations.

    Each public mutation is its own transaction and commits before returning.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = CreditLedger(session)
        self.audit = AuditLogService(session)

    async def upsert_account(self, principal: Principal) -> AccountData:
        """Find the account for a verified principal, creating it on first contact."""
        account = await self._find_by_external_id(principal.external_id)

        if account is None:
            account = Account(
                external_id=principal.external_id,
                email=principal.email,
                role=Role.USER,
                effective_plan=Plan.FREE,
            )
            self.session.add(account)
            try:
                await self.session.flush()
                await self.session.commit()
                logger.info("account_created", account_id=str(account.id))
            except IntegrityError as e:
                # Race condition - account created by a concurrent request
                logger.warning(
                    "account_creation_integrity_error",
                    external_id=principal.external_id,
                    error=str(e),
                )
                await self.session.rollback()
                account = await self._find_by_external_id(principal.external_id)
                if account is None:
                    raise
        elif principal.email and account.email != principal.email:
            account.email = principal.email
            await self.session.commit()

        return account_data(account)

    async def get_account(self, account_id: UUID) -> AccountData:
        account = await self._get_account(account_id)
        await self._refresh_cached_plan(account)
        return account_data(account)

    async def get_effective_plan(self, account_id: UUID) -> Plan:
        """
        Effective plan, re-evaluated at read time.

        The cached column is rewritten when it has drifted, e.g. after an
        override expired.
        """
        account = await self._get_account(account_id)
        return await self._refresh_cached_plan(account)

    async def get_credits_remaining(self, account_id: UUID) -> int:
        await self._get_account(account_id)
        return await self.ledger.balance(account_id)

    async def consume_credits(
        self,
        account_id: UUID,
        amount: int,
        reason: str,
        related_id: str | None = None,
    ) -> ConsumeResult:
        result = await self.ledger.consume(account_id, amount, reason, related_id)
        if result.ok:
            await self.session.commit()
        else:
            await self.session.rollback()
        return result

    async def grant_credits(self, account_id: UUID, amount: int, reason: str) -> int:
        """Admin grant. Returns the new balance."""
        await self._get_account(account_id)
        await self.ledger.grant(account_id, amount, reason)
        balance = await self.ledger.balance(account_id)
        await self.session.commit()
        return balance

    async def set_plan_override(
        self,
        account_id: UUID,
        plan: Plan,
        expires_at: datetime | None = None,
        reason: str | None = None,
        actor: str | None = None,
    ) -> AccountData:
        """Set a manual plan override, optionally time-limited."""
        now = _utc_now()
        if expires_at is not None:
            if expires_at.tzinfo is None:
                raise ValueError("expires_at must be timezone-aware")
            if expires_at <= now:
                raise ValueError("expires_at must be in the future")

        account = await self._get_account(account_id, for_update=True)
        previous_plan = account.effective_plan

        account.plan_override = plan
        account.plan_override_expires_at = expires_at
        account.plan_override_reason = reason
        new_plan = sync_effective_plan(account, now)

        await self.audit.record(
            account_id=account.id,
            event_type=AuditEventType.PLAN_OVERRIDE_SET,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_status=account.subscription_status,
            new_status=account.subscription_status,
            actor=actor,
            metadata={
                "override_plan": plan.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "reason": reason,
            },
        )
        await self.session.commit()

        metrics.record_plan_override("set")
        logger.info(
            "plan_override_set",
            account_id=str(account_id),
            plan=plan.value,
            expires_at=expires_at.isoformat() if expires_at else None,
            actor=actor,
        )
        return account_data(account)

    async def clear_plan_override(self, account_id: UUID, actor: str | None = None) -> AccountData:
        account = await self._get_account(account_id, for_update=True)
        previous_plan = account.effective_plan
        previous_override = account.plan_override

        account.plan_override = None
        account.plan_override_expires_at = None
        account.plan_override_reason = None
        new_plan = sync_effective_plan(account)

        await self.audit.record(
            account_id=account.id,
            event_type=AuditEventType.PLAN_OVERRIDE_CLEARED,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_status=account.subscription_status,
            new_status=account.subscription_status,
            actor=actor,
            metadata={"cleared_override": previous_override.value if previous_override else None},
        )
        await self.session.commit()

        metrics.record_plan_override("clear")
        logger.info("plan_override_cleared", account_id=str(account_id), actor=actor)
        return account_data(account)

    async def attach_billing_customer(self, account_id: UUID, customer_id: str) -> AccountData:
        """Store the billing provider customer id created for this account."""
        account = await self._get_account(account_id, for_update=True)
        account.billing_customer_id = customer_id
        await self.session.commit()
        logger.info(
            "billing_customer_attached",
            account_id=str(account_id),
            customer_id=customer_id,
        )
        return account_data(account)

    async def update_role(self, account_id: UUID, role: Role) -> AccountData:
        account = await self._get_account(account_id, for_update=True)
        previous_role = account.role
        account.role = role
        await self.session.commit()

        logger.info(
            "account_role_updated",
            account_id=str(account_id),
            previous_role=previous_role.value,
            role=role.value,
        )
        return account_data(account)

    async def list_accounts(
        self, limit: int = 50, offset: int = 0
    ) -> tuple[list[AccountData], int]:
        total = (await self.session.execute(select(func.count()).select_from(Account))).scalar_one()
        result = await self.session.execute(
            select(Account).order_by(Account.created_at.desc()).limit(limit).offset(offset)
        )
        return [account_data(a) for a in result.scalars().all()], int(total)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_by_external_id(self, external_id: str) -> Account | None:
        result = await self.session.execute(
            select(Account).where(Account.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def _get_account(self, account_id: UUID, for_update: bool = False) -> Account:
        query = select(Account).where(Account.id == account_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def _refresh_cached_plan(self, account: Account) -> Plan:
        cached = account.effective_plan
        plan = sync_effective_plan(account)
        if plan != cached:
            await self.session.commit()
            logger.info(
                "effective_plan_drift_corrected",
                account_id=str(account.id),
                cached_plan=cached.value,
                effective_plan=plan.value,
            )
        return plan
