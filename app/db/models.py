"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import (
    AuditEventType,
    EntityStatus,
    Plan,
    RefreshMode,
    Role,
    SubscriptionStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type, name: str, length: int = 20) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Account(Base):
    """
    ORM model for accounts table.

    Identity anchor and entitlement state. effective_plan is a cache of the
    precedence rule over the override and subscription columns.
    """

    __tablename__ = "accounts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity fields
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(
        _enum(Role, "account_role"), nullable=False, default=Role.USER
    )

    # Manual override
    plan_override: Mapped[Plan | None] = mapped_column(_enum(Plan, "plan_override"), nullable=True)
    plan_override_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    plan_override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Last-known external subscription snapshot
    billing_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_plan: Mapped[Plan | None] = mapped_column(
        _enum(Plan, "subscription_plan"), nullable=True
    )
    subscription_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum(SubscriptionStatus, "subscription_status"), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_credit_grant_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    # Cached precedence result
    effective_plan: Mapped[Plan] = mapped_column(
        _enum(Plan, "effective_plan"), nullable=False, default=Plan.FREE
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("idx_accounts_subscription_id", "subscription_id"),
        Index("idx_accounts_effective_plan", "effective_plan"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, external_id={self.external_id}, "
            f"effective_plan={self.effective_plan})>"
        )


class CreditLedgerEntry(Base):
    """
    ORM model for credit_ledger table.

    Immutable signed deltas. Balance is SUM(delta); rows are never updated.
    """

    __tablename__ = "credit_ledger"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False
    )
    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    related_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_ledger_delta_non_zero"),
        Index("idx_credit_ledger_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditLedgerEntry(id={self.id}, account_id={self.account_id}, "
            f"delta={self.delta}, reason={self.reason})>"
        )


class SubscriptionAuditLog(Base):
    """
    ORM model for subscription_audit_log table.

    One row per applied entitlement transition. Never mutated.
    """

    __tablename__ = "subscription_audit_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False
    )
    event_type: Mapped[AuditEventType] = mapped_column(
        _enum(AuditEventType, "audit_event_type", length=40), nullable=False
    )
    previous_plan: Mapped[Plan | None] = mapped_column(_enum(Plan, "audit_previous_plan"))
    new_plan: Mapped[Plan | None] = mapped_column(_enum(Plan, "audit_new_plan"))
    previous_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum(SubscriptionStatus, "audit_previous_status")
    )
    new_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum(SubscriptionStatus, "audit_new_status")
    )
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_subscription_audit_account_created", "account_id", "created_at"),
        Index(
            "idx_subscription_audit_event_id",
            "external_event_id",
            postgresql_where=text("external_event_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionAuditLog(id={self.id}, account_id={self.account_id}, "
            f"event_type={self.event_type}, {self.previous_plan}->{self.new_plan})>"
        )


class ExternalEventRecord(Base):
    """
    ORM model for external_event_records table.

    The unique external_event_id is the authoritative idempotency guard.
    """

    __tablename__ = "external_event_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<ExternalEventRecord(external_event_id={self.external_event_id}, "
            f"event_type={self.event_type})>"
        )


class PlanPolicy(Base):
    """ORM model for plan_policies table - per-plan feature defaults."""

    __tablename__ = "plan_policies"

    plan_key: Mapped[Plan] = mapped_column(_enum(Plan, "plan_key"), primary_key=True)
    accounts_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    allow_scheduled_refresh: Mapped[bool] = mapped_column(Boolean, nullable=False)
    allow_oauth: Mapped[bool] = mapped_column(Boolean, nullable=False)
    default_refresh_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "accounts_limit BETWEEN 1 AND 999", name="ck_plan_policy_accounts_limit"
        ),
        CheckConstraint(
            "default_refresh_interval_hours BETWEEN 1 AND 168",
            name="ck_plan_policy_refresh_interval",
        ),
    )

    def __repr__(self) -> str:
        return f"<PlanPolicy(plan_key={self.plan_key}, accounts_limit={self.accounts_limit})>"


class WorkspacePolicyOverride(Base):
    """ORM model for workspace_policy_overrides table. NULL means inherit."""

    __tablename__ = "workspace_policy_overrides"

    workspace_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    accounts_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_scheduled_refresh: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allow_oauth: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    default_refresh_interval_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<WorkspacePolicyOverride(workspace_id={self.workspace_id})>"


class RefreshableEntity(Base):
    """
    ORM model for refreshable_entities table (monitored social accounts).

    next_refresh_at is NULL exactly when refresh_mode is manual.
    """

    __tablename__ = "refreshable_entities"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)

    # Scheduling
    refresh_mode: Mapped[RefreshMode] = mapped_column(
        _enum(RefreshMode, "refresh_mode"), nullable=False, default=RefreshMode.MANUAL
    )
    refresh_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    next_refresh_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_refresh_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refresh_fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refresh_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[EntityStatus] = mapped_column(
        _enum(EntityStatus, "entity_status"), nullable=False, default=EntityStatus.ACTIVE
    )

    # Latest metrics
    follower_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    post_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    engagement_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "refresh_interval_hours BETWEEN 1 AND 168", name="ck_entity_refresh_interval"
        ),
        CheckConstraint("refresh_fail_count >= 0", name="ck_entity_fail_count_non_negative"),
        CheckConstraint(
            "(refresh_mode = 'manual' AND next_refresh_at IS NULL) OR "
            "(refresh_mode = 'scheduled' AND next_refresh_at IS NOT NULL)",
            name="ck_entity_next_refresh_matches_mode",
        ),
        Index(
            "idx_refreshable_entities_due",
            "next_refresh_at",
            postgresql_where=text("refresh_mode = 'scheduled'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RefreshableEntity(id={self.id}, platform={self.platform}, "
            f"username={self.username}, mode={self.refresh_mode})>"
        )


class MetricsSnapshot(Base):
    """ORM model for metrics_snapshots table - append-only time series."""

    __tablename__ = "metrics_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    entity_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("refreshable_entities.id", ondelete="CASCADE"), nullable=False
    )
    follower_count: Mapped[int] = mapped_column(BigInteger, nullable=False)
    post_count: Mapped[int] = mapped_column(BigInteger, nullable=False)
    engagement_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (Index("idx_metrics_snapshots_entity_captured", "entity_id", "captured_at"),)

    def __repr__(self) -> str:
        return (
            f"<MetricsSnapshot(entity_id={self.entity_id}, "
            f"followers={self.follower_count}, captured_at={self.captured_at})>"
        )
