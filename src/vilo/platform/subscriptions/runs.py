"""
Automation run tracking and the shared sweep machinery.

Every job execution gets an ``automation_runs`` row written at start and
updated once at completion. ``AutomationJob`` wraps a sweep with run
tracking, per-item isolation, paging and a wall-clock deadline.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4

import structlog
from sqlalchemy import Select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vilo.platform.settings import get_settings

from ..db import utcnow
from .locks import KeyedLock, automation_locks
from .models import AutomationRun, AutomationRunStatus, TriggerSource
from .schemas import (
    AutomationRunResult,
    AutomationSettingsSnapshot,
    ItemError,
    SweepResults,
)
from .settings_provider import PlatformSettingsProvider

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

# (results bucket, value) recorded after an item commits
Outcome = tuple[str, Any]


class AutomationRunTracker:
    """Persists the start and completion of automation runs."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def start(
        self,
        job_name: str,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> UUID | None:
        """
        Insert a ``running`` row for a job.

        Returns:
            The run id, or None if the row could not be written. The job
            proceeds either way.
        """
        run = AutomationRun(
            id=uuid4(),
            job_name=job_name,
            status=AutomationRunStatus.RUNNING.value,
            triggered_by=triggered_by.value,
            triggered_by_admin=admin_id,
            started_at=self.clock(),
        )
        try:
            self.db.add(run)
            await self.db.commit()
        except Exception as e:
            logger.error("Failed to record automation run start", job_name=job_name, error=str(e))
            await self._safe_rollback()
            return None
        return run.id

    async def complete(self, run_id: UUID | None, result: AutomationRunResult) -> None:
        """Write final status, counters and results. Failures are logged only."""
        if run_id is None:
            return
        try:
            await self.db.execute(
                update(AutomationRun)
                .where(AutomationRun.id == run_id)
                .values(
                    status=result.status.value,
                    items_processed=result.items_processed,
                    items_succeeded=result.items_succeeded,
                    items_failed=result.items_failed,
                    results=result.results.model_dump(mode="json"),
                    error_message=result.error,
                    completed_at=result.completed_at or self.clock(),
                )
            )
            await self.db.commit()
        except Exception as e:
            logger.error(
                "Failed to record automation run completion",
                run_id=str(run_id),
                job_name=result.job_name,
                error=str(e),
            )
            await self._safe_rollback()

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except Exception:
            logger.debug("Rollback after run tracking failure failed", exc_info=True)


class SweepGuard:
    """Wall-clock budget and page size for one sweep."""

    def __init__(
        self,
        time_limit_seconds: float,
        batch_size: int,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.time_limit_seconds = time_limit_seconds
        self.batch_size = max(1, batch_size)
        self._monotonic = monotonic
        self._started = monotonic()
        self.deadline_reached = False

    @property
    def expired(self) -> bool:
        if self._monotonic() - self._started >= self.time_limit_seconds:
            self.deadline_reached = True
        return self.deadline_reached

    async def pages(
        self, db: AsyncSession, query: Select[Any], id_column: Any
    ) -> AsyncIterator[list[Any]]:
        """
        Yield candidate rows in id order, one page at a time.

        Each page is re-queried after the previous one was processed, so the
        query's filters are re-applied and rows already handled drop out.
        """
        last_id = None
        while True:
            stmt = query.order_by(id_column).limit(self.batch_size)
            if last_id is not None:
                stmt = stmt.where(id_column > last_id)
            rows = list((await db.execute(stmt)).all())
            if not rows:
                return
            yield rows
            if len(rows) < self.batch_size or self.deadline_reached:
                return
            last_id = rows[-1].id


class SweepCounters:
    def __init__(self) -> None:
        self.processed = 0
        self.succeeded = 0
        self.failed = 0


class AutomationJob:
    """
    Base class for scheduled sweeps.

    Subclasses set ``job_name`` and ``results_model`` and implement
    ``sweep()``. ``execute()`` never raises.
    """

    job_name: ClassVar[str]
    results_model: ClassVar[type[SweepResults]]

    def __init__(
        self,
        db: AsyncSession,
        snapshot: AutomationSettingsSnapshot | None = None,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
        batch_size: int | None = None,
        time_limit_seconds: float | None = None,
    ):
        automation = get_settings().automation
        self.db = db
        self.snapshot = snapshot
        self.clock = clock
        self.locks = locks or automation_locks
        self.batch_size = batch_size or automation.batch_size
        self.time_limit_seconds = (
            time_limit_seconds
            if time_limit_seconds is not None
            else automation.sweep_time_limit_seconds
        )

    async def get_snapshot(self) -> AutomationSettingsSnapshot:
        if self.snapshot is None:
            self.snapshot = await PlatformSettingsProvider(self.db).load_snapshot()
        return self.snapshot

    async def sweep(self, results: Any, counters: SweepCounters, guard: SweepGuard) -> None:
        raise NotImplementedError

    async def execute(
        self,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> AutomationRunResult:
        tracker = AutomationRunTracker(self.db, self.clock)
        started_at = self.clock()
        run_id = await tracker.start(self.job_name, triggered_by, admin_id)
        log = logger.bind(job_name=self.job_name, run_id=str(run_id) if run_id else None)

        results = self.results_model()
        counters = SweepCounters()
        guard = SweepGuard(self.time_limit_seconds, self.batch_size)
        error: str | None = None

        try:
            await self.get_snapshot()
            await self.sweep(results, counters, guard)
        except Exception as e:
            log.error("Automation sweep failed", error=str(e), exc_info=True)
            error = str(e)
            try:
                await self.db.rollback()
            except Exception:
                log.debug("Rollback after sweep failure failed", exc_info=True)

        results.deadline_reached = guard.deadline_reached
        if error is not None:
            status = AutomationRunStatus.FAILED
        elif counters.failed or guard.deadline_reached:
            status = AutomationRunStatus.PARTIAL
        else:
            status = AutomationRunStatus.COMPLETED

        result = AutomationRunResult(
            run_id=run_id,
            job_name=self.job_name,
            status=status,
            items_processed=counters.processed,
            items_succeeded=counters.succeeded,
            items_failed=counters.failed,
            results=results,
            error=error,
            started_at=started_at,
            completed_at=self.clock(),
        )
        await tracker.complete(run_id, result)

        log.info(
            "Automation run finished",
            status=status.value,
            processed=counters.processed,
            succeeded=counters.succeeded,
            failed=counters.failed,
            deadline_reached=guard.deadline_reached,
        )
        return result

    async def process_item(
        self,
        item_id: Any,
        results: SweepResults,
        counters: SweepCounters,
        handler: Callable[[], Awaitable[list[Outcome]]],
        lock_key: tuple[Any, ...] | None = None,
    ) -> bool:
        """
        Run one item's work and commit it on its own.

        ``handler`` returns the ``(bucket, value)`` pairs to record in the
        results once the commit succeeds; an empty list means the item needed
        no action. Failures roll back this item only. With a ``lock_key`` the
        check, the write and the commit happen under one keyed lock.
        """
        counters.processed += 1
        try:
            if lock_key is None:
                outcomes = await handler()
                await self.db.commit()
            else:
                async with self.locks.hold(*lock_key):
                    outcomes = await handler()
                    await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            counters.failed += 1
            results.errors.append(ItemError(id=str(item_id), error=str(e)))
            logger.warning(
                "Automation item failed",
                job_name=self.job_name,
                item_id=str(item_id),
                error=str(e),
            )
            return False
        if not outcomes:
            return False
        for bucket, value in outcomes:
            getattr(results, bucket).append(value)
        counters.succeeded += 1
        return True


__all__ = [
    "Clock",
    "Outcome",
    "AutomationRunTracker",
    "SweepGuard",
    "SweepCounters",
    "AutomationJob",
]
