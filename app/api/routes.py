"""
API Routes - FastAPI endpoints for entitlements, credits, billing and refresh settings.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_payment_provider, get_request_context
from app.config import get_settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import EntityNotFoundError, WebhookVerificationError
from app.models.api import (
    AccountResponse,
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    CreateCheckoutRequest,
    CreditHistoryResponse,
    CreditLedgerEntryResponse,
    Feature,
    FeatureCheckResponse,
    HealthResponse,
    InsufficientCreditsResponse,
    PlanUpgradeRequiredResponse,
    RedirectResponse,
    RefreshableEntityResponse,
    RefreshSettingsRequest,
    WebhookAckResponse,
)
from app.models.domain import AccountData, RefreshEntityData, RequestContext
from app.services.entitlements import EntitlementService
from app.services.payment_provider import CheckoutRequest, PaymentProvider
from app.services.policies import PolicyService
from app.services.reconciler import WebhookReconciler
from app.services.refresh_scheduler import RefreshSettingsService

logger = get_logger(__name__)

router = APIRouter()


def account_response(account: AccountData, credits_remaining: int) -> AccountResponse:
    return AccountResponse(
        account_id=account.account_id,
        external_id=account.external_id,
        email=account.email,
        role=account.role,
        effective_plan=account.effective_plan,
        credits_remaining=credits_remaining,
        plan_override=account.plan_override,
        plan_override_expires_at=account.plan_override_expires_at,
        plan_override_reason=account.plan_override_reason,
        subscription_plan=account.subscription_plan,
        subscription_status=account.subscription_status,
        current_period_end=account.current_period_end,
        created_at=account.created_at,
    )


# =============================================================================
# Account & Credits
# =============================================================================


@router.get("/v1/me", response_model=AccountResponse)
async def get_me(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """Caller's effective plan, remaining credits and role."""
    service = EntitlementService(db)
    account = await service.get_account(ctx.account_id)
    credits = await service.get_credits_remaining(ctx.account_id)
    return account_response(account, credits)


@router.post(
    "/v1/credits/consume",
    response_model=ConsumeCreditsResponse,
    responses={status.HTTP_402_PAYMENT_REQUIRED: {"model": InsufficientCreditsResponse}},
)
async def consume_credits(
    request: ConsumeCreditsRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ConsumeCreditsResponse | JSONResponse:
    """
    Consume credits for a generation.

    Returns 402 with the current balance when the balance does not cover
    the amount; nothing is written in that case.
    """
    amount = request.amount or get_settings().generation_credit_cost
    result = await EntitlementService(db).consume_credits(
        ctx.account_id, amount, request.reason, request.related_id
    )

    if result.error is not None:
        body = InsufficientCreditsResponse(
            balance=result.error.balance, required=result.error.required
        )
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump(mode="json")
        )

    return ConsumeCreditsResponse(consumed=result.consumed, credits_remaining=result.balance)


@router.get("/v1/credits/history", response_model=CreditHistoryResponse)
async def credit_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_read_db),
) -> CreditHistoryResponse:
    """Ledger entries for the caller, newest first."""
    service = EntitlementService(db)
    entries = await service.ledger.history(ctx.account_id, limit=limit, offset=offset)
    balance = await service.ledger.balance(ctx.account_id)
    return CreditHistoryResponse(
        entries=[CreditLedgerEntryResponse.model_validate(e) for e in entries],
        balance=balance,
        limit=limit,
        offset=offset,
    )


@router.get("/v1/features/{feature}", response_model=FeatureCheckResponse)
async def check_feature(
    feature: Feature,
    workspace_id: str | None = Query(None, max_length=255),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> FeatureCheckResponse:
    """Whether the caller's effective plan (and workspace) allows a feature."""
    plan = await EntitlementService(db).get_effective_plan(ctx.account_id)
    allowed = await PolicyService(db).is_feature_allowed(feature, plan, workspace_id)
    return FeatureCheckResponse(
        feature=feature, plan=plan, workspace_id=workspace_id, allowed=allowed
    )


# =============================================================================
# Billing
# =============================================================================


@router.post("/v1/billing/checkout", response_model=RedirectResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> RedirectResponse:
    """Open a hosted subscription checkout, creating the billing customer on first use."""
    service = EntitlementService(db)
    account = await service.get_account(ctx.account_id)

    customer_id = account.billing_customer_id
    if not customer_id:
        customer_id = await provider.create_customer(account.account_id, account.email)
        await service.attach_billing_customer(account.account_id, customer_id)

    session = await provider.create_checkout_session(
        CheckoutRequest(account_id=account.account_id, customer_id=customer_id, plan=request.plan)
    )
    return RedirectResponse(url=session.url)


@router.post("/v1/billing/portal", response_model=RedirectResponse)
async def create_portal(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> RedirectResponse:
    """Open the hosted billing portal for the caller's customer."""
    account = await EntitlementService(db).get_account(ctx.account_id)
    if not account.billing_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing customer for this account; start a checkout first",
        )

    session = await provider.create_portal_session(account.billing_customer_id)
    return RedirectResponse(url=session.url)


@router.post("/v1/billing/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Signature is verified before anything is read. Replays are acknowledged
    with outcome=duplicate. Processing failures return 500 so Stripe
    redelivers; nothing of a failed attempt is persisted.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    result = await WebhookReconciler(db).handle(event)
    return WebhookAckResponse(outcome=result.outcome)


# =============================================================================
# Refresh Settings
# =============================================================================


async def _owned_entity(
    service: RefreshSettingsService, entity_id: UUID, ctx: RequestContext
) -> RefreshEntityData:
    entity = await service.get_entity(entity_id)
    if entity.account_id != ctx.account_id and not ctx.is_admin:
        # Same answer as a missing entity
        raise EntityNotFoundError(entity_id)
    return entity


@router.get("/v1/refreshable-entities/{entity_id}", response_model=RefreshableEntityResponse)
async def get_refreshable_entity(
    entity_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> RefreshableEntityResponse:
    entity = await _owned_entity(RefreshSettingsService(db), entity_id, ctx)
    return RefreshableEntityResponse.model_validate(entity)


@router.patch(
    "/v1/refreshable-entities/{entity_id}/refresh-settings",
    response_model=RefreshableEntityResponse,
    responses={status.HTTP_403_FORBIDDEN: {"model": PlanUpgradeRequiredResponse}},
)
async def update_refresh_settings(
    entity_id: UUID,
    request: RefreshSettingsRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> RefreshableEntityResponse | JSONResponse:
    """
    Switch an entity between manual and scheduled refresh.

    Scheduled refresh is plan-gated; a denial returns 403 with
    error=plan_upgrade_required and leaves the entity unchanged.
    """
    service = RefreshSettingsService(db)
    await _owned_entity(service, entity_id, ctx)

    try:
        result = await service.set_refresh_mode(
            entity_id, request.refresh_mode, request.refresh_interval_hours
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if result.error is not None:
        body = PlanUpgradeRequiredResponse(
            feature=Feature(result.error.feature), plan=result.error.plan
        )
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN, content=body.model_dump(mode="json")
        )

    return RefreshableEntityResponse.model_validate(result.entity)


@router.post(
    "/v1/refreshable-entities/{entity_id}/pause", response_model=RefreshableEntityResponse
)
async def pause_refreshable_entity(
    entity_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> RefreshableEntityResponse:
    service = RefreshSettingsService(db)
    await _owned_entity(service, entity_id, ctx)
    return RefreshableEntityResponse.model_validate(await service.set_paused(entity_id, True))


@router.post(
    "/v1/refreshable-entities/{entity_id}/resume", response_model=RefreshableEntityResponse
)
async def resume_refreshable_entity(
    entity_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> RefreshableEntityResponse:
    service = RefreshSettingsService(db)
    await _owned_entity(service, entity_id, ctx)
    return RefreshableEntityResponse.model_validate(await service.set_paused(entity_id, False))


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
