"""
Policy Resolver - Plan defaults cascaded with workspace overrides.

Resolution is field by field: each workspace override column that is set
wins, every NULL column inherits the plan default.
"""

from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import PlanPolicy, WorkspacePolicyOverride
from app.exceptions import UnknownPlanError
from app.models.api import Feature, Plan, PlanPolicyPatch, WorkspacePolicyPatch
from app.models.domain import PlanPolicyData, ResolvedPolicy, WorkspaceOverrideData

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PLAN_POLICIES: tuple[PlanPolicyData, ...] = (
    PlanPolicyData(
        plan=Plan.FREE,
        accounts_limit=1,
        allow_scheduled_refresh=False,
        allow_oauth=False,
        default_refresh_interval_hours=24,
    ),
    PlanPolicyData(
        plan=Plan.PRO,
        accounts_limit=5,
        allow_scheduled_refresh=True,
        allow_oauth=False,
        default_refresh_interval_hours=24,
    ),
    PlanPolicyData(
        plan=Plan.ENTERPRISE,
        accounts_limit=999,
        allow_scheduled_refresh=True,
        allow_oauth=True,
        default_refresh_interval_hours=6,
    ),
)


def resolve_policy(
    plan_policy: PlanPolicyData, override: WorkspaceOverrideData | None = None
) -> ResolvedPolicy:
    """Pure per-field coalesce of a workspace override over plan defaults."""
    if override is None:
        return ResolvedPolicy(
            plan=plan_policy.plan,
            workspace_id=None,
            accounts_limit=plan_policy.accounts_limit,
            allow_scheduled_refresh=plan_policy.allow_scheduled_refresh,
            allow_oauth=plan_policy.allow_oauth,
            default_refresh_interval_hours=plan_policy.default_refresh_interval_hours,
        )

    return ResolvedPolicy(
        plan=plan_policy.plan,
        workspace_id=override.workspace_id,
        accounts_limit=_coalesce(override.accounts_limit, plan_policy.accounts_limit),
        allow_scheduled_refresh=_coalesce(
            override.allow_scheduled_refresh, plan_policy.allow_scheduled_refresh
        ),
        allow_oauth=_coalesce(override.allow_oauth, plan_policy.allow_oauth),
        default_refresh_interval_hours=_coalesce(
            override.default_refresh_interval_hours,
            plan_policy.default_refresh_interval_hours,
        ),
    )


def _coalesce(value: T | None, default: T) -> T:
    return default if value is None else value


def _plan_policy_data(row: PlanPolicy) -> PlanPolicyData:
    return PlanPolicyData(
        plan=Plan(row.plan_key),
        accounts_limit=row.accounts_limit,
        allow_scheduled_refresh=row.allow_scheduled_refresh,
        allow_oauth=row.allow_oauth,
        default_refresh_interval_hours=row.default_refresh_interval_hours,
    )


def _override_data(row: WorkspacePolicyOverride) -> WorkspaceOverrideData:
    return WorkspaceOverrideData(
        workspace_id=row.workspace_id,
        accounts_limit=row.accounts_limit,
        allow_scheduled_refresh=row.allow_scheduled_refresh,
        allow_oauth=row.allow_oauth,
        default_refresh_interval_hours=row.default_refresh_interval_hours,
    )


class PolicyService:
    """
    Loads policy rows and resolves them.

    Read operations have no side effects. Admin mutations commit.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve(self, plan: Plan, workspace_id: str | None = None) -> ResolvedPolicy:
        """Resolved policy for a plan and optional workspace."""
        plan_row = await self.session.get(PlanPolicy, plan)
        if plan_row is None:
            logger.error("plan_policy_missing", plan=str(plan))
            raise UnknownPlanError(str(plan))

        override = None
        if workspace_id is not None:
            override_row = await self.session.get(WorkspacePolicyOverride, workspace_id)
            if override_row is not None:
                override = _override_data(override_row)

        return resolve_policy(_plan_policy_data(plan_row), override)

    async def is_feature_allowed(
        self, feature: Feature, plan: Plan, workspace_id: str | None = None
    ) -> bool:
        policy = await self.resolve(plan, workspace_id)
        return policy.allows(feature)

    # ========================================================================
    # Admin Operations
    # ========================================================================

    async def list_plan_policies(self) -> list[PlanPolicy]:
        result = await self.session.execute(select(PlanPolicy))
        rows = list(result.scalars().all())
        order = list(Plan)
        return sorted(rows, key=lambda row: order.index(Plan(row.plan_key)))

    async def update_plan_policy(self, plan: Plan, patch: PlanPolicyPatch) -> PlanPolicy:
        """Apply the fields set on the patch to a plan policy."""
        row = await self.session.get(PlanPolicy, plan, with_for_update=True)
        if row is None:
            raise UnknownPlanError(str(plan))

        changes = patch.changes()
        for field_name, value in changes.items():
            setattr(row, field_name, value)

        await self.session.commit()
        logger.info("plan_policy_updated", plan=str(plan), changes=changes)
        return row

    async def list_workspace_overrides(
        self, workspace_id: str | None = None
    ) -> list[WorkspacePolicyOverride]:
        query = select(WorkspacePolicyOverride).order_by(WorkspacePolicyOverride.workspace_id)
        if workspace_id is not None:
            query = query.where(WorkspacePolicyOverride.workspace_id == workspace_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def upsert_workspace_override(
        self, workspace_id: str, patch: WorkspacePolicyPatch
    ) -> WorkspacePolicyOverride:
        """
        Create or update a workspace override.

        Unset patch fields keep their value (NULL for a new row); explicit
        None clears the field back to inherit.
        """
        if not workspace_id:
            raise ValueError("workspace_id cannot be empty")

        row = await self.session.get(WorkspacePolicyOverride, workspace_id, with_for_update=True)
        if row is None:
            row = WorkspacePolicyOverride(workspace_id=workspace_id)
            self.session.add(row)

        changes = patch.changes()
        for field_name, value in changes.items():
            setattr(row, field_name, value)

        await self.session.commit()
        logger.info("workspace_override_upserted", workspace_id=workspace_id, changes=changes)
        return row

    async def delete_workspace_override(self, workspace_id: str) -> bool:
        row = await self.session.get(WorkspacePolicyOverride, workspace_id)
        if row is None:
            return False

        await self.session.delete(row)
        await self.session.commit()
        logger.info("workspace_override_deleted", workspace_id=workspace_id)
        return True

    async def ensure_default_policies(self) -> int:
        """Insert any missing default plan rows. Returns how many were added."""
        added = 0
        for default in DEFAULT_PLAN_POLICIES:
            if await self.session.get(PlanPolicy, default.plan) is not None:
                continue
            self.session.add(
                PlanPolicy(
                    plan_key=default.plan,
                    accounts_limit=default.accounts_limit,
                    allow_scheduled_refresh=default.allow_scheduled_refresh,
                    allow_oauth=default.allow_oauth,
                    default_refresh_interval_hours=default.default_refresh_interval_hours,
                )
            )
            added += 1

        if added:
            await self.session.commit()
            logger.info("default_plan_policies_seeded", added=added)
        return added
