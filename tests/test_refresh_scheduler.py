"""
Tests for the refresh scheduler and per-entity refresh settings.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.db.models import MetricsSnapshot, RefreshableEntity
from app.exceptions import EntityNotFoundError, ExternalFetchFailure, FeatureNotAllowedError
from app.models.api import (
    EntityStatus,
    Plan,
    RefreshMode,
    SubscriptionStatus,
    WorkspacePolicyPatch,
)
from app.models.domain import PlatformMetrics
from app.services.policies import PolicyService
from app.services.refresh_scheduler import (
    FAILURE_STATUS_THRESHOLD,
    RefreshScheduler,
    RefreshSettingsService,
    apply_refresh_failure,
    backoff_hours,
)
from tests.helpers import FIXED_NOW, FakeFetcher, reload


class SlowFetcher:
    """Fetcher that never answers within the test timeout."""

    async def fetch_metrics(self, platform, username):
        await asyncio.sleep(5)
        return PlatformMetrics(follower_count=1, post_count=1)


def make_scheduler(session_factory, fetcher, clock, **kwargs) -> RefreshScheduler:
    return RefreshScheduler(session_factory, fetcher, clock=clock, **kwargs)


async def snapshots_for(session_factory, entity_id) -> list[MetricsSnapshot]:
    async with session_factory() as session:
        result = await session.execute(
            select(MetricsSnapshot).where(MetricsSnapshot.entity_id == entity_id)
        )
        return list(result.scalars().all())


# ============================================================================
# Pure scheduling rules
# ============================================================================


class TestBackoff:
    """Exponential backoff capped at 24 hours."""

    def test_sequence(self):
        assert [backoff_hours(n) for n in range(1, 9)] == [1, 2, 4, 8, 16, 24, 24, 24]

    @pytest.mark.parametrize("fail_count", [0, -1])
    def test_fail_count_must_be_positive(self, fail_count):
        with pytest.raises(ValueError):
            backoff_hours(fail_count)

    def test_status_flips_to_error_only_at_threshold(self):
        entity = RefreshableEntity(
            platform="instagram",
            username="flaky",
            refresh_mode=RefreshMode.SCHEDULED,
            refresh_interval_hours=24,
            refresh_fail_count=0,
            status=EntityStatus.ACTIVE,
            next_refresh_at=FIXED_NOW,
        )

        delays = []
        for attempt in range(1, FAILURE_STATUS_THRESHOLD + 1):
            apply_refresh_failure(entity, ExternalFetchFailure("boom"), FIXED_NOW)
            delays.append(entity.next_refresh_at - FIXED_NOW)
            if attempt < FAILURE_STATUS_THRESHOLD:
                assert entity.status == EntityStatus.ACTIVE

        assert entity.status == EntityStatus.ERROR
        assert entity.refresh_fail_count == 5
        assert delays == [timedelta(hours=h) for h in (1, 2, 4, 8, 16)]

    def test_failure_does_not_unpause(self):
        entity = RefreshableEntity(
            platform="instagram",
            username="paused",
            refresh_mode=RefreshMode.SCHEDULED,
            refresh_fail_count=9,
            status=EntityStatus.PAUSED,
            next_refresh_at=FIXED_NOW,
        )
        apply_refresh_failure(entity, ExternalFetchFailure("boom"), FIXED_NOW)
        assert entity.status == EntityStatus.PAUSED

    def test_error_text_is_truncated(self):
        entity = RefreshableEntity(
            platform="instagram",
            username="verbose",
            refresh_mode=RefreshMode.MANUAL,
            refresh_fail_count=0,
            status=EntityStatus.ACTIVE,
        )
        apply_refresh_failure(entity, ExternalFetchFailure("x" * 2000), FIXED_NOW)
        assert len(entity.refresh_error) == 500
        assert entity.next_refresh_at is None


# ============================================================================
# Scheduler cycles
# ============================================================================


class TestRefreshCycle:
    """run_cycle against the in-memory database."""

    async def test_success_records_snapshot_and_schedules_next(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        entity = await make_entity(
            account.id, refresh_mode=RefreshMode.SCHEDULED, refresh_interval_hours=12
        )
        fetcher.results[entity.username] = PlatformMetrics(
            follower_count=1200, post_count=40, engagement_rate=0.05, is_verified=True
        )

        report = await make_scheduler(session_factory, fetcher, clock).run_cycle()

        assert report.due == 1
        assert report.succeeded == 1
        assert report.failed == 0
        stored = await reload(session_factory, RefreshableEntity, entity.id)
        assert stored.follower_count == 1200
        assert stored.is_verified is True
        assert stored.last_synced_at == FIXED_NOW
        assert stored.last_refresh_attempt_at == FIXED_NOW
        assert stored.next_refresh_at == FIXED_NOW + timedelta(hours=12)
        assert stored.refresh_fail_count == 0

        snapshots = await snapshots_for(session_factory, entity.id)
        assert len(snapshots) == 1
        assert snapshots[0].follower_count == 1200
        assert snapshots[0].captured_at == FIXED_NOW

    async def test_one_failure_does_not_abort_the_batch(
        self, session_factory, make_account, make_entity, failing_fetcher, clock
    ):
        account = await make_account()
        broken = await make_entity(
            account.id,
            refresh_mode=RefreshMode.SCHEDULED,
            username="broken",
            next_refresh_at=FIXED_NOW - timedelta(hours=2),
        )
        healthy = await make_entity(account.id, refresh_mode=RefreshMode.SCHEDULED)

        report = await make_scheduler(session_factory, failing_fetcher, clock).run_cycle()

        assert report.due == 2
        assert report.succeeded == 1
        assert report.failed == 1

        failed = await reload(session_factory, RefreshableEntity, broken.id)
        assert failed.refresh_fail_count == 1
        assert "HTTP 503" in failed.refresh_error
        assert failed.next_refresh_at == FIXED_NOW + timedelta(hours=1)
        assert failed.status == EntityStatus.ACTIVE
        assert await snapshots_for(session_factory, broken.id) == []

        assert len(await snapshots_for(session_factory, healthy.id)) == 1

    async def test_fifth_failure_marks_error(
        self, session_factory, make_account, make_entity, failing_fetcher, clock
    ):
        account = await make_account()
        entity = await make_entity(
            account.id,
            refresh_mode=RefreshMode.SCHEDULED,
            username="broken",
            refresh_fail_count=4,
        )

        await make_scheduler(session_factory, failing_fetcher, clock).run_cycle()

        stored = await reload(session_factory, RefreshableEntity, entity.id)
        assert stored.refresh_fail_count == 5
        assert stored.status == EntityStatus.ERROR
        assert stored.next_refresh_at == FIXED_NOW + timedelta(hours=16)

    async def test_timeout_counts_as_failure(
        self, session_factory, make_account, make_entity, clock
    ):
        account = await make_account()
        entity = await make_entity(account.id, refresh_mode=RefreshMode.SCHEDULED)

        scheduler = make_scheduler(
            session_factory, SlowFetcher(), clock, fetch_timeout_seconds=0.05
        )
        report = await scheduler.run_cycle()

        assert report.failed == 1
        stored = await reload(session_factory, RefreshableEntity, entity.id)
        assert stored.refresh_fail_count == 1
        assert "timed out" in stored.refresh_error

    async def test_unexpected_fetcher_error_is_a_failure(
        self, session_factory, make_account, make_entity, clock
    ):
        account = await make_account()
        entity = await make_entity(
            account.id, refresh_mode=RefreshMode.SCHEDULED, username="odd"
        )
        fetcher = FakeFetcher({"odd": KeyError("followers")})

        report = await make_scheduler(session_factory, fetcher, clock).run_cycle()

        assert report.failed == 1
        stored = await reload(session_factory, RefreshableEntity, entity.id)
        assert stored.refresh_error.startswith("Metrics fetch failed: KeyError")

    async def test_only_due_scheduled_unpaused_entities_are_selected(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        await make_entity(account.id, refresh_mode=RefreshMode.MANUAL, username="manual")
        await make_entity(
            account.id,
            refresh_mode=RefreshMode.SCHEDULED,
            username="paused",
            status=EntityStatus.PAUSED,
        )
        await make_entity(
            account.id,
            refresh_mode=RefreshMode.SCHEDULED,
            username="future",
            next_refresh_at=FIXED_NOW + timedelta(hours=1),
        )
        await make_entity(account.id, refresh_mode=RefreshMode.SCHEDULED, username="due")

        report = await make_scheduler(session_factory, fetcher, clock).run_cycle()

        assert report.due == 1
        assert fetcher.calls == [("instagram", "due")]

    async def test_batch_size_takes_oldest_first(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        for hours, name in ((1, "newest"), (3, "oldest"), (2, "middle")):
            await make_entity(
                account.id,
                refresh_mode=RefreshMode.SCHEDULED,
                username=name,
                next_refresh_at=FIXED_NOW - timedelta(hours=hours),
            )

        report = await make_scheduler(session_factory, fetcher, clock, batch_size=2).run_cycle()

        assert report.due == 2
        assert [username for _, username in fetcher.calls] == ["oldest", "middle"]

    async def test_overlapping_cycle_is_skipped(self, session_factory, fetcher, clock):
        scheduler = make_scheduler(session_factory, fetcher, clock)

        async with scheduler._cycle_lock:
            report = await scheduler.run_cycle()

        assert report.skipped is True
        assert fetcher.calls == []

    async def test_second_cycle_finds_nothing_due(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        await make_entity(account.id, refresh_mode=RefreshMode.SCHEDULED)
        scheduler = make_scheduler(session_factory, fetcher, clock)

        await scheduler.run_cycle()
        report = await scheduler.run_cycle()

        assert report.due == 0
        assert len(fetcher.calls) == 1

    @pytest.mark.parametrize("kwargs", [{"interval_seconds": 0}, {"batch_size": 0}])
    def test_invalid_construction(self, session_factory, fetcher, kwargs):
        with pytest.raises(ValueError):
            RefreshScheduler(session_factory, fetcher, **kwargs)


class TestSchedulerLifecycle:
    """start/stop of the background task."""

    async def test_start_runs_a_cycle_and_stop_cancels(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        await make_entity(account.id, refresh_mode=RefreshMode.SCHEDULED)
        scheduler = make_scheduler(session_factory, fetcher, clock, interval_seconds=3600)

        scheduler.start()
        assert scheduler.running
        for _ in range(200):
            if fetcher.calls and not scheduler._cycle_lock.locked():
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.running
        assert len(fetcher.calls) == 1

    async def test_stop_without_start_is_noop(self, session_factory, fetcher):
        scheduler = RefreshScheduler(session_factory, fetcher)
        await scheduler.stop()
        assert not scheduler.running


# ============================================================================
# Refresh settings
# ============================================================================


class TestSetRefreshMode:
    """Plan-gated switching between manual and scheduled refresh."""

    async def test_free_plan_is_denied(self, session_factory, make_account, make_entity, clock):
        account = await make_account()
        entity = await make_entity(account.id)

        async with session_factory() as session:
            result = await RefreshSettingsService(session, clock=clock).set_refresh_mode(
                entity.id, RefreshMode.SCHEDULED
            )

        assert not result.ok
        assert isinstance(result.error, FeatureNotAllowedError)
        assert result.error.feature == "scheduled_refresh"
        assert result.error.plan == "free"
        stored = await reload(session_factory, RefreshableEntity, entity.id)
        assert stored.refresh_mode == RefreshMode.MANUAL
        assert stored.next_refresh_at is None

    async def test_pro_plan_enables_and_is_due_now(
        self, session_factory, pro_subscriber, make_entity, clock
    ):
        entity = await make_entity(pro_subscriber.id, refresh_interval_hours=72)

        async with session_factory() as session:
            result = await RefreshSettingsService(session, clock=clock).set_refresh_mode(
                entity.id, RefreshMode.SCHEDULED
            )

        assert result.ok
        assert result.entity.refresh_mode == RefreshMode.SCHEDULED
        assert result.entity.next_refresh_at == FIXED_NOW
        assert result.entity.refresh_interval_hours == 24

    async def test_explicit_interval_wins_over_policy_default(
        self, session_factory, make_account, make_entity, clock
    ):
        account = await make_account(
            plan_override=Plan.ENTERPRISE, effective_plan=Plan.ENTERPRISE
        )
        entity = await make_entity(account.id)

        async with session_factory() as session:
            service = RefreshSettingsService(session, clock=clock)
            default = await service.set_refresh_mode(entity.id, RefreshMode.SCHEDULED)
            assert default.entity.refresh_interval_hours == 6

            explicit = await service.set_refresh_mode(entity.id, RefreshMode.SCHEDULED, 48)

        assert explicit.entity.refresh_interval_hours == 48
        assert explicit.entity.next_refresh_at == FIXED_NOW

    async def test_switch_to_manual_clears_next_refresh(
        self, session_factory, pro_subscriber, make_entity, clock
    ):
        entity = await make_entity(pro_subscriber.id, refresh_mode=RefreshMode.SCHEDULED)

        async with session_factory() as session:
            result = await RefreshSettingsService(session, clock=clock).set_refresh_mode(
                entity.id, RefreshMode.MANUAL
            )

        assert result.entity.refresh_mode == RefreshMode.MANUAL
        assert result.entity.next_refresh_at is None

    async def test_workspace_override_enables_free_plan(
        self, session_factory, make_account, make_entity, clock
    ):
        async with session_factory() as session:
            await PolicyService(session).upsert_workspace_override(
                "ws-beta", WorkspacePolicyPatch(allow_scheduled_refresh=True)
            )
        account = await make_account()
        entity = await make_entity(account.id, workspace_id="ws-beta")

        async with session_factory() as session:
            result = await RefreshSettingsService(session, clock=clock).set_refresh_mode(
                entity.id, RefreshMode.SCHEDULED
            )

        assert result.ok

    async def test_canceled_subscription_is_denied(
        self, session_factory, make_account, make_entity, clock
    ):
        account = await make_account(
            subscription_plan=Plan.PRO, subscription_status=SubscriptionStatus.CANCELED
        )
        entity = await make_entity(account.id)

        async with session_factory() as session:
            result = await RefreshSettingsService(session, clock=clock).set_refresh_mode(
                entity.id, RefreshMode.SCHEDULED
            )

        assert not result.ok

    @pytest.mark.parametrize("interval", [0, 169])
    async def test_interval_out_of_range(
        self, session_factory, pro_subscriber, make_entity, interval
    ):
        entity = await make_entity(pro_subscriber.id)
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await RefreshSettingsService(session).set_refresh_mode(
                    entity.id, RefreshMode.SCHEDULED, interval
                )

    async def test_missing_entity(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(EntityNotFoundError):
                await RefreshSettingsService(session).set_refresh_mode(
                    uuid4(), RefreshMode.MANUAL
                )


class TestPauseResume:
    """Paused entities are skipped; resuming starts over."""

    async def test_pause_then_resume(
        self, session_factory, make_account, make_entity, fetcher, clock
    ):
        account = await make_account()
        entity = await make_entity(
            account.id,
            refresh_mode=RefreshMode.SCHEDULED,
            refresh_fail_count=6,
            status=EntityStatus.ERROR,
        )

        async with session_factory() as session:
            paused = await RefreshSettingsService(session, clock=clock).set_paused(entity.id, True)
        assert paused.status == EntityStatus.PAUSED

        report = await make_scheduler(session_factory, fetcher, clock).run_cycle()
        assert report.due == 0

        async with session_factory() as session:
            resumed = await RefreshSettingsService(session, clock=clock).set_paused(
                entity.id, False
            )
        assert resumed.status == EntityStatus.ACTIVE
        assert resumed.refresh_fail_count == 0
        assert resumed.next_refresh_at == FIXED_NOW

        report = await make_scheduler(session_factory, fetcher, clock).run_cycle()
        assert report.succeeded == 1
