"""
Refresh Scheduler - Background loop that refreshes due monitored accounts.

One asyncio task per process runs a cycle at start and then every
interval. A cycle selects a bounded batch of due entities (oldest first)
and refreshes them one at a time; a failing entity never aborts the batch.

Per entity:
1. Claim: lock the row, stamp the attempt, push next_refresh_at forward so
   other instances skip it, commit
2. Fetch metrics with a bounded timeout (no transaction held)
3. Record: reset on success, back off on failure, commit
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import MetricsSnapshot, RefreshableEntity
from app.exceptions import (
    EntityNotFoundError,
    ExternalFetchFailure,
    ExternalFetchTimeoutError,
    FeatureNotAllowedError,
)
from app.models.api import (
    MAX_REFRESH_INTERVAL_HOURS,
    MIN_REFRESH_INTERVAL_HOURS,
    EntityStatus,
    Feature,
    RefreshMode,
)
from app.models.domain import (
    PlatformMetrics,
    RefreshCycleReport,
    RefreshEntityData,
    RefreshModeResult,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics, track_duration
from app.services.entitlements import EntitlementService
from app.services.metrics_fetcher import MetricsFetcher
from app.services.policies import PolicyService

logger = get_logger(__name__)

MAX_BACKOFF_HOURS = 24
FAILURE_STATUS_THRESHOLD = 5
MAX_ERROR_LENGTH = 500


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def backoff_hours(fail_count: int) -> int:
    """Delay after the Nth consecutive failure: 1, 2, 4, 8, 16, 24, 24, ..."""
    if fail_count < 1:
        raise ValueError(f"fail_count must be at least 1: {fail_count}")
    return min(2 ** min(fail_count - 1, 5), MAX_BACKOFF_HOURS)


def is_due(entity: RefreshableEntity, now: datetime) -> bool:
    return (
        entity.refresh_mode == RefreshMode.SCHEDULED
        and entity.status != EntityStatus.PAUSED
        and entity.next_refresh_at is not None
        and entity.next_refresh_at <= now
    )


def apply_refresh_success(
    entity: RefreshableEntity, result: PlatformMetrics, now: datetime
) -> MetricsSnapshot:
    """Reset failure state, copy metrics, schedule the next interval. Returns the snapshot."""
    entity.refresh_fail_count = 0
    entity.refresh_error = None
    if entity.status != EntityStatus.PAUSED:
        entity.status = EntityStatus.ACTIVE
    entity.follower_count = result.follower_count
    entity.post_count = result.post_count
    entity.engagement_rate = result.engagement_rate
    if result.is_verified is not None:
        entity.is_verified = result.is_verified
    entity.last_synced_at = now
    if entity.refresh_mode == RefreshMode.SCHEDULED:
        entity.next_refresh_at = now + timedelta(hours=entity.refresh_interval_hours)

    return MetricsSnapshot(
        entity_id=entity.id,
        follower_count=result.follower_count,
        post_count=result.post_count,
        engagement_rate=result.engagement_rate,
        captured_at=now,
    )


def apply_refresh_failure(
    entity: RefreshableEntity, error: ExternalFetchFailure, now: datetime
) -> None:
    """Count the failure and back off; status flips to error only at the threshold."""
    entity.refresh_fail_count += 1
    entity.refresh_error = str(error)[:MAX_ERROR_LENGTH]
    if entity.refresh_mode == RefreshMode.SCHEDULED:
        entity.next_refresh_at = now + timedelta(hours=backoff_hours(entity.refresh_fail_count))
    if (
        entity.refresh_fail_count >= FAILURE_STATUS_THRESHOLD
        and entity.status != EntityStatus.PAUSED
    ):
        entity.status = EntityStatus.ERROR


class RefreshScheduler:
    """
    Owns the refresh loop's lifecycle.

    Construct once at process start, call start() inside the running event
    loop and await stop() on shutdown.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: MetricsFetcher,
        interval_seconds: float = 600,
        batch_size: int = 100,
        fetch_timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive: {interval_seconds}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {batch_size}")

        self.session_factory = session_factory
        self.fetcher = fetcher
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.clock = clock

        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self.log = logger.bind(component="refresh_scheduler")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run_loop(), name="refresh-scheduler")
        self.log.info(
            "refresh_scheduler_started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self.log.info("refresh_scheduler_stopped")

    async def run_cycle(self) -> RefreshCycleReport:
        """Run one cycle now. A cycle already in progress makes this a skipped no-op."""
        if self._cycle_lock.locked():
            self.log.info("refresh_cycle_skipped", reason="cycle_in_progress")
            return RefreshCycleReport(skipped=True)

        async with self._cycle_lock:
            with track_duration() as timer:
                report = await self._run_cycle()
            if not report.skipped:
                metrics.record_refresh_cycle(report.due, timer.elapsed)
            return report

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                # The loop outlives a broken cycle; the next tick retries.
                metrics.record_error(type(e).__name__, "refresh_cycle")
                self.log.error("refresh_cycle_crashed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue

    async def _run_cycle(self) -> RefreshCycleReport:
        if not await self._database_ready():
            self.log.warning("refresh_cycle_skipped", reason="database_unavailable")
            return RefreshCycleReport(skipped=True)

        entity_ids = await self._due_entity_ids(self.clock())
        succeeded = 0
        failed = 0

        for entity_id in entity_ids:
            try:
                with log_context(entity_id=str(entity_id)):
                    outcome = await self._refresh_entity(entity_id)
            except Exception as e:
                failed += 1
                metrics.record_refresh_attempt("crashed")
                metrics.record_error(type(e).__name__, "refresh_entity")
                self.log.error(
                    "refresh_entity_crashed",
                    entity_id=str(entity_id),
                    error=str(e),
                    exc_info=True,
                )
                continue

            if outcome is True:
                succeeded += 1
            elif outcome is False:
                failed += 1

        report = RefreshCycleReport(due=len(entity_ids), succeeded=succeeded, failed=failed)
        self.log.info(
            "refresh_cycle_completed",
            due=report.due,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    async def _database_ready(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            self.log.warning("refresh_database_not_ready", error=str(e))
            return False

    async def _due_entity_ids(self, now: datetime) -> list[UUID]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefreshableEntity.id)
                .where(
                    RefreshableEntity.refresh_mode == RefreshMode.SCHEDULED,
                    RefreshableEntity.next_refresh_at.is_not(None),
                    RefreshableEntity.next_refresh_at <= now,
                    RefreshableEntity.status != EntityStatus.PAUSED,
                )
                .order_by(RefreshableEntity.next_refresh_at.asc())
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _refresh_entity(self, entity_id: UUID) -> bool | None:
        """True on success, False on a recorded failure, None if no longer due."""
        claim = await self._claim(entity_id)
        if claim is None:
            return None
        platform, username = claim

        error: ExternalFetchFailure | None = None
        result: PlatformMetrics | None = None
        try:
            result = await asyncio.wait_for(
                self.fetcher.fetch_metrics(platform, username),
                timeout=self.fetch_timeout_seconds,
            )
        except TimeoutError:
            error = ExternalFetchTimeoutError(self.fetch_timeout_seconds)
        except ExternalFetchFailure as e:
            error = e
        except Exception as e:
            # Collaborators may raise anything; it is still a fetch failure.
            error = ExternalFetchFailure(f"{type(e).__name__}: {e}")

        async with self.session_factory() as session:
            entity = await self._lock_entity(session, entity_id)
            if entity is None:
                return None
            now = self.clock()

            if result is not None:
                session.add(apply_refresh_success(entity, result, now))
                await session.commit()
                metrics.record_refresh_attempt("success")
                self.log.info(
                    "refresh_entity_succeeded",
                    entity_id=str(entity_id),
                    platform=platform,
                    follower_count=result.follower_count,
                )
                return True

            assert error is not None
            apply_refresh_failure(entity, error, now)
            await session.commit()
            outcome = "timeout" if isinstance(error, ExternalFetchTimeoutError) else "failure"
            metrics.record_refresh_attempt(outcome)
            self.log.warning(
                "refresh_entity_failed",
                entity_id=str(entity_id),
                platform=platform,
                fail_count=entity.refresh_fail_count,
                status=entity.status.value,
                next_refresh_at=(
                    entity.next_refresh_at.isoformat() if entity.next_refresh_at else None
                ),
                error=str(error),
            )
            return False

    async def _claim(self, entity_id: UUID) -> tuple[str, str] | None:
        async with self.session_factory() as session:
            entity = await self._lock_entity(session, entity_id)
            now = self.clock()
            if entity is None or not is_due(entity, now):
                return None

            entity.last_refresh_attempt_at = now
            entity.next_refresh_at = now + timedelta(
                hours=backoff_hours(entity.refresh_fail_count + 1)
            )
            await session.commit()
            return entity.platform, entity.username

    async def _lock_entity(
        self, session: AsyncSession, entity_id: UUID
    ) -> RefreshableEntity | None:
        result = await session.execute(
            select(RefreshableEntity).where(RefreshableEntity.id == entity_id).with_for_update()
        )
        return result.scalar_one_or_none()


def refresh_entity_data(entity: RefreshableEntity) -> RefreshEntityData:
    return RefreshEntityData(
        entity_id=entity.id,
        account_id=entity.account_id,
        workspace_id=entity.workspace_id,
        platform=entity.platform,
        username=entity.username,
        refresh_mode=entity.refresh_mode,
        refresh_interval_hours=entity.refresh_interval_hours,
        next_refresh_at=entity.next_refresh_at,
        refresh_fail_count=entity.refresh_fail_count,
        status=entity.status,
    )


class RefreshSettingsService:
    """
    Per-entity refresh settings.

    Enabling scheduled refresh is gated on the resolved policy for the
    owner's effective plan and the entity's workspace. A denial is returned
    in the result, not raised.
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = _utc_now) -> None:
        self.session = session
        self.clock = clock
        self.policies = PolicyService(session)
        self.entitlements = EntitlementService(session)

    async def get_entity(self, entity_id: UUID) -> RefreshEntityData:
        return refresh_entity_data(await self._get_entity(entity_id))

    async def set_refresh_mode(
        self,
        entity_id: UUID,
        mode: RefreshMode,
        interval_hours: int | None = None,
    ) -> RefreshModeResult:
        """
        Switch an entity between manual and scheduled refresh.

        manual -> scheduled makes the entity due immediately; without an
        explicit interval it adopts the policy's default interval.
        -> manual clears next_refresh_at.

        Raises:
            ValueError: If interval_hours is outside 1..168
            EntityNotFoundError: If the entity does not exist
            UnknownPlanError: If the owner's plan has no policy row
        """
        if interval_hours is not None and not (
            MIN_REFRESH_INTERVAL_HOURS <= interval_hours <= MAX_REFRESH_INTERVAL_HOURS
        ):
            raise ValueError(
                f"refresh_interval_hours must be between {MIN_REFRESH_INTERVAL_HOURS} "
                f"and {MAX_REFRESH_INTERVAL_HOURS}: {interval_hours}"
            )

        # Policy first: get_effective_plan may commit a drift correction,
        # which would release a row lock taken earlier.
        entity = await self._get_entity(entity_id)
        policy = None
        if mode == RefreshMode.SCHEDULED:
            plan = await self.entitlements.get_effective_plan(entity.account_id)
            policy = await self.policies.resolve(plan, entity.workspace_id)
            if not policy.allows(Feature.SCHEDULED_REFRESH):
                logger.info(
                    "scheduled_refresh_denied",
                    entity_id=str(entity_id),
                    plan=plan.value,
                    workspace_id=entity.workspace_id,
                )
                return RefreshModeResult(
                    entity=refresh_entity_data(entity),
                    error=FeatureNotAllowedError(Feature.SCHEDULED_REFRESH.value, plan.value),
                )

        entity = await self._get_entity(entity_id, for_update=True)
        previous_mode = entity.refresh_mode

        if mode == RefreshMode.SCHEDULED:
            assert policy is not None
            if interval_hours is not None:
                entity.refresh_interval_hours = interval_hours
            elif previous_mode == RefreshMode.MANUAL:
                entity.refresh_interval_hours = policy.default_refresh_interval_hours
            if previous_mode == RefreshMode.MANUAL or entity.next_refresh_at is None:
                entity.next_refresh_at = self.clock()
        else:
            if interval_hours is not None:
                entity.refresh_interval_hours = interval_hours
            entity.next_refresh_at = None

        entity.refresh_mode = mode
        await self.session.commit()

        logger.info(
            "refresh_mode_updated",
            entity_id=str(entity_id),
            previous_mode=previous_mode.value,
            mode=mode.value,
            interval_hours=entity.refresh_interval_hours,
        )
        return RefreshModeResult(entity=refresh_entity_data(entity))

    async def set_paused(self, entity_id: UUID, paused: bool) -> RefreshEntityData:
        """
        Pause or resume an entity. Paused entities are never selected as due.

        Resuming clears the failure state so a previously erroring entity
        starts over from the first backoff step.
        """
        entity = await self._get_entity(entity_id, for_update=True)
        if paused:
            entity.status = EntityStatus.PAUSED
        else:
            entity.status = EntityStatus.ACTIVE
            entity.refresh_fail_count = 0
            entity.refresh_error = None
            if entity.refresh_mode == RefreshMode.SCHEDULED:
                entity.next_refresh_at = self.clock()
        await self.session.commit()

        event = "refresh_entity_paused" if paused else "refresh_entity_resumed"
        logger.info(event, entity_id=str(entity_id))
        return refresh_entity_data(entity)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _get_entity(self, entity_id: UUID, for_update: bool = False) -> RefreshableEntity:
        query = select(RefreshableEntity).where(RefreshableEntity.id == entity_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity
