"""
Credit Ledger - Append-only signed-delta credit store.

NO DICTIONARIES - All operations use strongly typed domain models.
NO UPDATES - Balance is always SUM(delta) and rows are never rewritten.

Ledger methods flush but never commit; the caller owns the transaction so a
grant can be part of a larger unit (e.g. webhook reconciliation).
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account, CreditLedgerEntry
from app.exceptions import AccountNotFoundError, InsufficientCreditsError
from app.models.domain import ConsumeResult
from app.observability.metrics import metrics

logger = get_logger(__name__)


class CreditLedger:
    """Credit ledger bound to a database session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def balance(self, account_id: UUID) -> int:
        """Current balance, recomputed from the ledger on every call."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(
                CreditLedgerEntry.account_id == account_id
            )
        )
        return int(result.scalar_one())

    async def grant(
        self,
        account_id: UUID,
        delta: int,
        reason: str,
        related_id: str | None = None,
    ) -> CreditLedgerEntry:
        """Append a positive entry. The caller has already decided the grant is warranted."""
        if delta <= 0:
            raise ValueError(f"Grant amount must be positive: {delta}")
        if not reason:
            raise ValueError("Reason cannot be empty")

        entry = await self._append(account_id, delta, reason, related_id)
        metrics.record_credit_grant(reason, delta)
        logger.info(
            "credits_granted",
            account_id=str(account_id),
            delta=delta,
            reason=reason,
            related_id=related_id,
        )
        return entry

    async def consume(
        self,
        account_id: UUID,
        delta: int,
        reason: str,
        related_id: str | None = None,
    ) -> ConsumeResult:
        """
        Append a negative entry if the balance covers it.

        The owning account row is locked (SELECT ... FOR UPDATE) before the
        balance is read, so concurrent consumers for one account serialize
        and the balance cannot be driven negative. Insufficient balance is
        returned in the result, not raised.
        """
        if delta <= 0:
            raise ValueError(f"Consume amount must be positive: {delta}")
        if not reason:
            raise ValueError("Reason cannot be empty")

        await self._lock_account(account_id)

        current = await self.balance(account_id)
        if current < delta:
            metrics.record_credit_consume(False, delta)
            logger.info(
                "credits_insufficient",
                account_id=str(account_id),
                balance=current,
                required=delta,
            )
            return ConsumeResult(
                balance=current,
                error=InsufficientCreditsError(balance=current, required=delta),
            )

        await self._append(account_id, -delta, reason, related_id)
        metrics.record_credit_consume(True, delta)
        logger.info(
            "credits_consumed",
            account_id=str(account_id),
            delta=delta,
            reason=reason,
            related_id=related_id,
            balance_after=current - delta,
        )
        return ConsumeResult(balance=current - delta, consumed=delta)

    async def history(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[CreditLedgerEntry]:
        """Ledger entries for an account, newest first."""
        result = await self.session.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.account_id == account_id)
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock_account(self, account_id: UUID) -> None:
        result = await self.session.execute(
            select(Account.id).where(Account.id == account_id).with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise AccountNotFoundError(account_id)

    async def _append(
        self, account_id: UUID, delta: int, reason: str, related_id: str | None
    ) -> CreditLedgerEntry:
        entry = CreditLedgerEntry(
            account_id=account_id,
            delta=delta,
            reason=reason,
            related_id=related_id,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry
