"""
Tests for admin API routes.

The API principal is made an admin by the admin_account fixture; tests
that need a plain user create the principal's account with role user.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.api.admin_routes import get_refresh_scheduler
from app.db.models import Account
from app.models.api import Plan, RefreshMode, Role
from app.services.refresh_scheduler import RefreshScheduler
from tests.helpers import reload


class TestAdminAuthorization:
    """Role checks on the admin router."""

    async def test_regular_user_is_forbidden(self, client, make_account, principal):
        await make_account(external_id=principal.external_id, role=Role.USER)

        response = await client.get("/v1/admin/accounts")

        assert response.status_code == 403
        assert response.json()["detail"] == "Admin role required"

    async def test_admin_cannot_change_roles(self, client, admin_account, make_account):
        target = await make_account()

        response = await client.put(
            f"/v1/admin/accounts/{target.id}/role", json={"role": "admin"}
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Superadmin role required"

    async def test_superadmin_can_change_roles(
        self, client, make_account, principal, session_factory
    ):
        await make_account(external_id=principal.external_id, role=Role.SUPERADMIN)
        target = await make_account()

        response = await client.put(
            f"/v1/admin/accounts/{target.id}/role", json={"role": "admin"}
        )

        assert response.status_code == 200
        assert response.json()["role"] == "admin"
        stored = await reload(session_factory, Account, target.id)
        assert stored.role == Role.ADMIN


class TestAdminAccounts:
    """Account listing, overrides and grants."""

    async def test_list_accounts(self, client, admin_account, make_account):
        await make_account()

        response = await client.get("/v1/admin/accounts")

        assert response.status_code == 200
        assert response.json()["total"] == 2

    async def test_get_unknown_account_is_404(self, client, admin_account):
        response = await client.get(f"/v1/admin/accounts/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_set_and_clear_override(self, client, admin_account, pro_subscriber):
        expires = (datetime.now(UTC) + timedelta(days=14)).isoformat()

        set_response = await client.put(
            f"/v1/admin/accounts/{pro_subscriber.id}/plan-override",
            json={"plan": "enterprise", "expires_at": expires, "reason": "pilot"},
        )
        clear_response = await client.delete(
            f"/v1/admin/accounts/{pro_subscriber.id}/plan-override"
        )

        assert set_response.status_code == 200
        assert set_response.json()["effective_plan"] == "enterprise"
        assert set_response.json()["plan_override_reason"] == "pilot"
        assert clear_response.status_code == 200
        assert clear_response.json()["effective_plan"] == "pro"
        assert clear_response.json()["plan_override"] is None

    async def test_past_expiry_is_400(self, client, admin_account, make_account):
        target = await make_account()
        expires = (datetime.now(UTC) - timedelta(days=1)).isoformat()

        response = await client.put(
            f"/v1/admin/accounts/{target.id}/plan-override",
            json={"plan": "pro", "expires_at": expires},
        )

        assert response.status_code == 400

    async def test_grant_credits(self, client, admin_account, make_account):
        target = await make_account()

        response = await client.post(
            f"/v1/admin/accounts/{target.id}/credits", json={"amount": 250}
        )

        assert response.status_code == 200
        assert response.json() == {
            "account_id": str(target.id),
            "amount": 250,
            "new_balance": 250,
        }

    async def test_grant_non_positive_is_422(self, client, admin_account, make_account):
        target = await make_account()

        response = await client.post(
            f"/v1/admin/accounts/{target.id}/credits", json={"amount": -5}
        )

        assert response.status_code == 422

    async def test_audit_log_lists_override_entries(self, client, admin_account, make_account):
        target = await make_account()
        await client.put(
            f"/v1/admin/accounts/{target.id}/plan-override", json={"plan": "pro"}
        )

        response = await client.get(
            "/v1/admin/audit-log",
            params={"account_id": str(target.id), "event_type": "plan_override_set"},
        )

        assert response.status_code == 200
        entries = response.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["new_plan"] == "pro"
        assert entries[0]["actor"] == str(admin_account.id)


class TestAdminPolicies:
    """Plan policies and workspace overrides."""

    async def test_list_policies(self, client, admin_account):
        response = await client.get("/v1/admin/policies")

        assert response.status_code == 200
        assert [p["plan_key"] for p in response.json()] == ["free", "pro", "enterprise"]

    async def test_patch_policy(self, client, admin_account):
        response = await client.patch(
            "/v1/admin/policies/free", json={"allow_scheduled_refresh": True}
        )

        assert response.status_code == 200
        assert response.json()["allow_scheduled_refresh"] is True
        assert response.json()["accounts_limit"] == 1

    async def test_patch_policy_null_is_422(self, client, admin_account):
        response = await client.patch("/v1/admin/policies/pro", json={"accounts_limit": None})
        assert response.status_code == 422

    async def test_workspace_override_lifecycle(self, client, admin_account):
        put = await client.put(
            "/v1/admin/workspace-overrides/ws-beta", json={"allow_oauth": True}
        )
        listed = await client.get(
            "/v1/admin/workspace-overrides", params={"workspace_id": "ws-beta"}
        )
        deleted = await client.delete("/v1/admin/workspace-overrides/ws-beta")
        missing = await client.delete("/v1/admin/workspace-overrides/ws-beta")

        assert put.status_code == 200
        assert put.json()["allow_oauth"] is True
        assert put.json()["accounts_limit"] is None
        assert [o["workspace_id"] for o in listed.json()] == ["ws-beta"]
        assert deleted.status_code == 204
        assert missing.status_code == 404


class TestAdminRefresh:
    """Manual refresh cycle trigger."""

    @pytest.fixture
    def scheduler(self, app, session_factory, fetcher, clock):
        scheduler = RefreshScheduler(session_factory, fetcher, clock=clock)

        async def override():
            yield scheduler

        app.dependency_overrides[get_refresh_scheduler] = override
        return scheduler

    async def test_run_cycle(self, client, admin_account, scheduler, make_entity, fetcher):
        await make_entity(admin_account.id, refresh_mode=RefreshMode.SCHEDULED)

        response = await client.post("/v1/admin/refresh/run")

        assert response.status_code == 200
        assert response.json() == {"due": 1, "succeeded": 1, "failed": 0, "skipped": False}
        assert len(fetcher.calls) == 1

    async def test_requires_admin(self, client, make_account, principal, scheduler):
        await make_account(external_id=principal.external_id, plan_override=Plan.ENTERPRISE)

        response = await client.post("/v1/admin/refresh/run")

        assert response.status_code == 403
