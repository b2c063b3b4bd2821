"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Plan(str, Enum):
    """Plan enumeration, ordered free < pro < enterprise."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Role(str, Enum):
    """Account role enumeration."""

    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class SubscriptionStatus(str, Enum):
    """Last-known external subscription status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


class AuditEventType(str, Enum):
    """Entitlement transition kinds recorded in the audit log."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    PLAN_OVERRIDE_SET = "plan_override_set"
    PLAN_OVERRIDE_CLEARED = "plan_override_cleared"


class BillingEventType(str, Enum):
    """Billing provider webhook event types handled by the reconciler."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"


class ReconcileOutcome(str, Enum):
    """Result of handling one webhook event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class Feature(str, Enum):
    """Plan-gated features."""

    SCHEDULED_REFRESH = "scheduled_refresh"
    OAUTH = "oauth"


class RefreshMode(str, Enum):
    """Whether a monitored entity is polled automatically."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


class EntityStatus(str, Enum):
    """Refreshable entity status."""

    ACTIVE = "active"
    ERROR = "error"
    PAUSED = "paused"


# Shared validation bounds
MIN_REFRESH_INTERVAL_HOURS = 1
MAX_REFRESH_INTERVAL_HOURS = 168
MIN_ACCOUNTS_LIMIT = 1
MAX_ACCOUNTS_LIMIT = 999


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body for business and internal failures."""

    error: str
    message: str | None = None
    correlation_id: str | None = None


class InsufficientCreditsResponse(BaseModel):
    """402 body - the client presents an upgrade path."""

    error: str = "insufficient_credits"
    balance: int
    required: int


class PlanUpgradeRequiredResponse(BaseModel):
    """403 body for plan-gated features."""

    error: str = "plan_upgrade_required"
    feature: Feature
    plan: Plan


# ============================================================================
# Account Models
# ============================================================================


class AccountResponse(BaseModel):
    """Account entitlement state."""

    account_id: UUID
    external_id: str
    email: str | None
    role: Role
    effective_plan: Plan
    credits_remaining: int
    plan_override: Plan | None = None
    plan_override_expires_at: datetime | None = None
    plan_override_reason: str | None = None
    subscription_plan: Plan | None = None
    subscription_status: SubscriptionStatus | None = None
    current_period_end: datetime | None = None
    created_at: datetime


class AccountListResponse(BaseModel):
    accounts: list[AccountResponse]
    total: int
    limit: int
    offset: int


# ============================================================================
# Credit Models
# ============================================================================


class ConsumeCreditsRequest(BaseModel):
    """POST /v1/credits/consume request body."""

    amount: int | None = Field(
        None, gt=0, description="Credits to consume; defaults to the generation cost"
    )
    reason: str = Field("generation", min_length=1, max_length=255)
    related_id: str | None = Field(None, max_length=255)


class ConsumeCreditsResponse(BaseModel):
    consumed: int
    credits_remaining: int


class CreditLedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    delta: int
    reason: str
    related_id: str | None
    created_at: datetime


class CreditHistoryResponse(BaseModel):
    entries: list[CreditLedgerEntryResponse]
    balance: int
    limit: int
    offset: int


class GrantCreditsRequest(BaseModel):
    """Admin credit grant."""

    amount: int = Field(..., gt=0, description="Credits to add (must be positive)")
    reason: str = Field("Admin grant", min_length=1, max_length=255)


class GrantCreditsResponse(BaseModel):
    account_id: UUID
    amount: int
    new_balance: int


class FeatureCheckResponse(BaseModel):
    feature: Feature
    plan: Plan
    workspace_id: str | None
    allowed: bool


# ============================================================================
# Billing Models
# ============================================================================


class CreateCheckoutRequest(BaseModel):
    """POST /v1/billing/checkout request body."""

    plan: Plan

    @field_validator("plan")
    @classmethod
    def validate_paid_plan(cls, v: Plan) -> Plan:
        if v == Plan.FREE:
            raise ValueError("checkout requires a paid plan (pro or enterprise)")
        return v


class RedirectResponse(BaseModel):
    """Hosted session redirect URL."""

    url: str


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: ReconcileOutcome


# ============================================================================
# Admin Models
# ============================================================================


class PlanOverrideRequest(BaseModel):
    """Admin plan override."""

    plan: Plan
    expires_at: datetime | None = None
    reason: str | None = Field(None, max_length=500)


class RoleUpdateRequest(BaseModel):
    role: Role


class AuditLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    event_type: AuditEventType
    previous_plan: Plan | None
    new_plan: Plan | None
    previous_status: SubscriptionStatus | None
    new_status: SubscriptionStatus | None
    external_event_id: str | None
    external_subscription_id: str | None
    actor: str | None
    event_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuditLogListResponse(BaseModel):
    entries: list[AuditLogEntryResponse]
    limit: int
    offset: int


# ============================================================================
# Policy Models
# ============================================================================


class PlanPolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_key: Plan
    accounts_limit: int
    allow_scheduled_refresh: bool
    allow_oauth: bool
    default_refresh_interval_hours: int


class ResolvedPolicyResponse(PlanPolicyResponse):
    workspace_id: str | None = None


class WorkspacePolicyOverrideResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    workspace_id: str
    accounts_limit: int | None
    allow_scheduled_refresh: bool | None
    allow_oauth: bool | None
    default_refresh_interval_hours: int | None
    updated_at: datetime


class PlanPolicyPatch(BaseModel):
    """
    Partial update of a plan policy.

    Fields left unset keep their current value. Plan defaults cannot be
    cleared, so explicit nulls are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    accounts_limit: int | None = Field(None, ge=MIN_ACCOUNTS_LIMIT, le=MAX_ACCOUNTS_LIMIT)
    allow_scheduled_refresh: bool | None = None
    allow_oauth: bool | None = None
    default_refresh_interval_hours: int | None = Field(
        None, ge=MIN_REFRESH_INTERVAL_HOURS, le=MAX_REFRESH_INTERVAL_HOURS
    )

    @model_validator(mode="after")
    def reject_explicit_nulls(self) -> "PlanPolicyPatch":
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null for a plan policy")
        return self

    def changes(self) -> dict[str, Any]:
        """Fields explicitly provided by the caller."""
        return self.model_dump(exclude_unset=True)


class WorkspacePolicyPatch(BaseModel):
    """
    Partial update of a workspace override.

    Unset fields keep their current value; an explicit null clears the field
    so it inherits the plan default again.
    """

    model_config = ConfigDict(extra="forbid")

    accounts_limit: int | None = Field(None, ge=MIN_ACCOUNTS_LIMIT, le=MAX_ACCOUNTS_LIMIT)
    allow_scheduled_refresh: bool | None = None
    allow_oauth: bool | None = None
    default_refresh_interval_hours: int | None = Field(
        None, ge=MIN_REFRESH_INTERVAL_HOURS, le=MAX_REFRESH_INTERVAL_HOURS
    )

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ============================================================================
# Refresh Models
# ============================================================================


class RefreshSettingsRequest(BaseModel):
    """PATCH refresh settings for a monitored entity."""

    refresh_mode: RefreshMode
    refresh_interval_hours: int | None = Field(
        None, ge=MIN_REFRESH_INTERVAL_HOURS, le=MAX_REFRESH_INTERVAL_HOURS
    )


class RefreshableEntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class RefreshCycleResponse(BaseModel):
    due: int
    succeeded: int
    failed: int
    skipped: bool


# ============================================================================
# Status Models
# ============================================================================


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: str
