"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from app.exceptions import FeatureNotAllowedError, InsufficientCreditsError
from app.models.api import (
    BillingEventType,
    EntityStatus,
    Feature,
    Plan,
    ReconcileOutcome,
    RefreshMode,
    Role,
    SubscriptionStatus,
)


@dataclass(frozen=True)
class Principal:
    """Verified caller identity supplied by the authentication collaborator."""

    external_id: str
    email: str | None = None

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError("external_id cannot be empty")


@dataclass(frozen=True)
class RequestContext:
    """Typed per-request context passed explicitly through the call chain."""

    principal: Principal
    account_id: UUID
    role: Role
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPERADMIN)


@dataclass(frozen=True)
class EntitlementSnapshot:
    """The inputs of the effective-plan precedence rule."""

    plan_override: Plan | None
    plan_override_expires_at: datetime | None
    subscription_plan: Plan | None
    subscription_status: SubscriptionStatus | None


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

    account_id: UUID
    external_id: str
    email: str | None
    role: Role
    effective_plan: Plan
    plan_override: Plan | None
    plan_override_expires_at: datetime | None
    plan_override_reason: str | None
    billing_customer_id: str | None
    subscription_id: str | None
    subscription_plan: Plan | None
    subscription_status: SubscriptionStatus | None
    current_period_end: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consume attempt; insufficient balance is a value, not a raise."""

    balance: int
    consumed: int = 0
    error: InsufficientCreditsError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PlanPolicyData:
    """Plan-level feature defaults."""

    plan: Plan
    accounts_limit: int
    allow_scheduled_refresh: bool
    allow_oauth: bool
    default_refresh_interval_hours: int


@dataclass(frozen=True)
class WorkspaceOverrideData:
    """Per-workspace override; None means inherit the plan default."""

    workspace_id: str
    accounts_limit: int | None = None
    allow_scheduled_refresh: bool | None = None
    allow_oauth: bool | None = None
    default_refresh_interval_hours: int | None = None


@dataclass(frozen=True)
class ResolvedPolicy:
    """Effective feature policy for a plan and optional workspace."""

    plan: Plan
    workspace_id: str | None
    accounts_limit: int
    allow_scheduled_refresh: bool
    allow_oauth: bool
    default_refresh_interval_hours: int

    def allows(self, feature: Feature) -> bool:
        if feature == Feature.SCHEDULED_REFRESH:
            return self.allow_scheduled_refresh
        if feature == Feature.OAUTH:
            return self.allow_oauth
        return False


@dataclass(frozen=True)
class BillingEvent:
    """
    Verified billing provider event.

    Only the fields the reconciler reads are lifted out of the raw payload;
    the raw payload is kept for the dedup record.
    """

    event_id: str
    event_type: str
    customer_id: str | None = None
    subscription_id: str | None = None
    account_id: UUID | None = None
    plan: Plan | None = None
    status: str | None = None
    price_id: str | None = None
    current_period_end: datetime | None = None
    billing_reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.event_id:
            raise ValueError("event_id cannot be empty")
        if not self.event_type:
            raise ValueError("event_type cannot be empty")

    @property
    def known_type(self) -> BillingEventType | None:
        try:
            return BillingEventType(self.event_type)
        except ValueError:
            return None


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of handling one billing event."""

    event_id: str
    outcome: ReconcileOutcome
    account_id: UUID | None = None
    credits_granted: int = 0
    effective_plan: Plan | None = None


@dataclass(frozen=True)
class PlatformMetrics:
    """Metrics returned by the metrics-fetch collaborator."""

    follower_count: int
    post_count: int
    engagement_rate: float | None = None
    is_verified: bool | None = None

    def __post_init__(self) -> None:
        if self.follower_count < 0:
            raise ValueError(f"follower_count cannot be negative: {self.follower_count}")
        if self.post_count < 0:
            raise ValueError(f"post_count cannot be negative: {self.post_count}")


@dataclass(frozen=True)
class RefreshEntityData:
    """Immutable snapshot of a refreshable entity's scheduling state."""

    entity_id: UUID
    account_id: UUID
    workspace_id: str | None
    platform: str
    username: str
    refresh_mode: RefreshMode
    refresh_interval_hours: int
    next_refresh_at: datetime | None
    refresh_fail_count: int
    status: EntityStatus


@dataclass(frozen=True)
class RefreshModeResult:
    """Outcome of a refresh-mode change; a plan gate is a value, not a raise."""

    entity: RefreshEntityData | None
    error: FeatureNotAllowedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RefreshCycleReport:
    """Summary of one scheduler cycle."""

    due: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
