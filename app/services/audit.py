"""
Audit Log Service - Append-only record of entitlement transitions.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import SubscriptionAuditLog
from app.models.api import AuditEventType, Plan, SubscriptionStatus

BILLING_PROVIDER_ACTOR = "billing_provider"


class AuditLogService:
    """Writes and lists subscription audit entries. Flushes, never commits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        account_id: UUID,
        event_type: AuditEventType,
        previous_plan: Plan | None,
        new_plan: Plan | None,
        previous_status: SubscriptionStatus | None = None,
        new_status: SubscriptionStatus | None = None,
        external_event_id: str | None = None,
        external_subscription_id: str | None = None,
        actor: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionAuditLog:
        entry = SubscriptionAuditLog(
            account_id=account_id,
            event_type=event_type,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_status=previous_status,
            new_status=new_status,
            external_event_id=external_event_id,
            external_subscription_id=external_subscription_id,
            actor=actor,
            event_metadata=metadata or {},
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_entries(
        self,
        account_id: UUID | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SubscriptionAuditLog]:
        """Newest-first listing, optionally filtered by account and event type."""
        query = select(SubscriptionAuditLog)
        if account_id is not None:
            query = query.where(SubscriptionAuditLog.account_id == account_id)
        if event_type is not None:
            query = query.where(SubscriptionAuditLog.event_type == event_type)
        query = query.order_by(SubscriptionAuditLog.created_at.desc()).limit(limit).offset(offset)

        result = await self.session.execute(query)
        return list(result.scalars().all())
