"""
Admin API routes for managing entitlements, policies and the refresh worker.

Protected by bearer JWT; every route requires role admin or superadmin,
role changes require superadmin.
"""

from collections.abc import AsyncGenerator
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.admin_dependencies import require_admin, require_superadmin
from app.api.routes import account_response
from app.config import get_settings
from app.db.session import get_read_db, get_write_db, get_write_session_factory
from app.models.api import (
    AccountListResponse,
    AccountResponse,
    AuditEventType,
    AuditLogEntryResponse,
    AuditLogListResponse,
    GrantCreditsRequest,
    GrantCreditsResponse,
    Plan,
    PlanOverrideRequest,
    PlanPolicyPatch,
    PlanPolicyResponse,
    RefreshCycleResponse,
    RoleUpdateRequest,
    WorkspacePolicyOverrideResponse,
    WorkspacePolicyPatch,
)
from app.models.domain import RequestContext
from app.services.audit import AuditLogService
from app.services.entitlements import EntitlementService
from app.services.metrics_fetcher import HttpMetricsFetcher
from app.services.policies import PolicyService
from app.services.refresh_scheduler import RefreshScheduler

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])


async def get_refresh_scheduler(request: Request) -> AsyncGenerator[RefreshScheduler, None]:
    """
    The worker's scheduler when it runs in this process, else a one-off
    scheduler whose fetcher is closed after the request.
    """
    scheduler: RefreshScheduler | None = getattr(request.app.state, "refresh_scheduler", None)
    if scheduler is not None:
        yield scheduler
        return

    settings = get_settings()
    fetcher = HttpMetricsFetcher(
        settings.metrics_service_url,
        settings.metrics_service_token,
        settings.refresh_fetch_timeout_seconds,
    )
    try:
        yield RefreshScheduler(
            get_write_session_factory(),
            fetcher,
            interval_seconds=settings.refresh_interval_seconds,
            batch_size=settings.refresh_batch_size,
            fetch_timeout_seconds=settings.refresh_fetch_timeout_seconds,
        )
    finally:
        await fetcher.close()


# ============================================================================
# Accounts
# ============================================================================


@router.get("/accounts", response_model=AccountListResponse)
async def list_accounts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AccountListResponse:
    service = EntitlementService(db)
    accounts, total = await service.list_accounts(limit=limit, offset=offset)
    items = [
        account_response(a, await service.ledger.balance(a.account_id)) for a in accounts
    ]
    return AccountListResponse(accounts=items, total=total, limit=limit, offset=offset)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: UUID,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    service = EntitlementService(db)
    account = await service.get_account(account_id)
    return account_response(account, await service.get_credits_remaining(account_id))


@router.put("/accounts/{account_id}/plan-override", response_model=AccountResponse)
async def set_plan_override(
    account_id: UUID,
    request: PlanOverrideRequest,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """Grant a plan manually, optionally until expires_at. Wins over any subscription."""
    service = EntitlementService(db)
    try:
        account = await service.set_plan_override(
            account_id,
            request.plan,
            expires_at=request.expires_at,
            reason=request.reason,
            actor=str(admin.account_id),
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return account_response(account, await service.get_credits_remaining(account_id))


@router.delete("/accounts/{account_id}/plan-override", response_model=AccountResponse)
async def clear_plan_override(
    account_id: UUID,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    service = EntitlementService(db)
    account = await service.clear_plan_override(account_id, actor=str(admin.account_id))
    return account_response(account, await service.get_credits_remaining(account_id))


@router.post("/accounts/{account_id}/credits", response_model=GrantCreditsResponse)
async def grant_credits(
    account_id: UUID,
    request: GrantCreditsRequest,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> GrantCreditsResponse:
    new_balance = await EntitlementService(db).grant_credits(
        account_id, request.amount, request.reason
    )
    logger.info(
        "admin_credits_granted",
        admin_account_id=str(admin.account_id),
        account_id=str(account_id),
        amount=request.amount,
    )
    return GrantCreditsResponse(
        account_id=account_id, amount=request.amount, new_balance=new_balance
    )


@router.put("/accounts/{account_id}/role", response_model=AccountResponse)
async def update_role(
    account_id: UUID,
    request: RoleUpdateRequest,
    admin: RequestContext = Depends(require_superadmin),
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    service = EntitlementService(db)
    account = await service.update_role(account_id, request.role)
    return account_response(account, await service.get_credits_remaining(account_id))


# ============================================================================
# Audit Log
# ============================================================================


@router.get("/audit-log", response_model=AuditLogListResponse)
async def list_audit_log(
    account_id: UUID | None = None,
    event_type: AuditEventType | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AuditLogListResponse:
    entries = await AuditLogService(db).list_entries(
        account_id=account_id, event_type=event_type, limit=limit, offset=offset
    )
    return AuditLogListResponse(
        entries=[AuditLogEntryResponse.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


# ============================================================================
# Policies
# ============================================================================


@router.get("/policies", response_model=list[PlanPolicyResponse])
async def list_plan_policies(
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[PlanPolicyResponse]:
    rows = await PolicyService(db).list_plan_policies()
    return [PlanPolicyResponse.model_validate(row) for row in rows]


@router.patch("/policies/{plan}", response_model=PlanPolicyResponse)
async def update_plan_policy(
    plan: Plan,
    patch: PlanPolicyPatch,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> PlanPolicyResponse:
    row = await PolicyService(db).update_plan_policy(plan, patch)
    return PlanPolicyResponse.model_validate(row)


@router.get("/workspace-overrides", response_model=list[WorkspacePolicyOverrideResponse])
async def list_workspace_overrides(
    workspace_id: str | None = Query(None, max_length=255),
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[WorkspacePolicyOverrideResponse]:
    rows = await PolicyService(db).list_workspace_overrides(workspace_id)
    return [WorkspacePolicyOverrideResponse.model_validate(row) for row in rows]


@router.put(
    "/workspace-overrides/{workspace_id}", response_model=WorkspacePolicyOverrideResponse
)
async def upsert_workspace_override(
    workspace_id: str,
    patch: WorkspacePolicyPatch,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> WorkspacePolicyOverrideResponse:
    row = await PolicyService(db).upsert_workspace_override(workspace_id, patch)
    return WorkspacePolicyOverrideResponse.model_validate(row)


@router.delete("/workspace-overrides/{workspace_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workspace_override(
    workspace_id: str,
    admin: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    if not await PolicyService(db).delete_workspace_override(workspace_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No override for workspace {workspace_id}",
        )


# ============================================================================
# Refresh Worker
# ============================================================================


@router.post("/refresh/run", response_model=RefreshCycleResponse)
async def run_refresh_cycle(
    admin: RequestContext = Depends(require_admin),
    scheduler: RefreshScheduler = Depends(get_refresh_scheduler),
) -> RefreshCycleResponse:
    """Run one refresh cycle now. Skipped if a cycle is already in progress."""
    report = await scheduler.run_cycle()
    logger.info(
        "admin_refresh_cycle_triggered",
        admin_account_id=str(admin.account_id),
        due=report.due,
        skipped=report.skipped,
    )
    return RefreshCycleResponse(
        due=report.due,
        succeeded=report.succeeded,
        failed=report.failed,
        skipped=report.skipped,
    )
