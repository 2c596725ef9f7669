"""
Usage limit monitor.

Compares each live subscription's resource counts with its plan limits and
records warning or limit events. Nothing is enforced here; downstream
features read ``action_taken`` to decide what to gate.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import partial
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    LimitAction,
    LimitThresholdType,
    Room,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantMember,
    TriggerSource,
    UsageLimitEvent,
)
from .runs import AutomationJob, Outcome, SweepCounters, SweepGuard
from .schemas import AutomationRunResult, UsageLimitHit, UsageSweepResults

logger = structlog.get_logger(__name__)

# Stand-in for a missing or non-positive plan limit
UNLIMITED = 999999
LIMIT_EVENT_DEDUP_WINDOW = timedelta(hours=24)
_MAX_PERCENT = Decimal("99999.99")


async def count_rooms(db: AsyncSession, tenant_id: str) -> int:
    result = await db.execute(select(func.count(Room.id)).where(Room.tenant_id == tenant_id))
    return result.scalar_one()


async def count_active_members(db: AsyncSession, tenant_id: str) -> int:
    result = await db.execute(
        select(func.count(TenantMember.id)).where(
            and_(TenantMember.tenant_id == tenant_id, TenantMember.status == "active")
        )
    )
    return result.scalar_one()


@dataclass(frozen=True)
class ResourceCounter:
    """A tracked resource: its event name, its plan limit key and how to count it."""

    limit_type: str
    limit_key: str
    count: Callable[[AsyncSession, str], Awaitable[int]]


DEFAULT_COUNTERS: tuple[ResourceCounter, ...] = (
    ResourceCounter("rooms", "max_rooms", count_rooms),
    ResourceCounter("team_members", "max_team_members", count_active_members),
)


def resolve_limit(limits: dict[str, Any] | None, key: str) -> int:
    value = (limits or {}).get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return UNLIMITED
    return value


def classify_usage(current: int, limit: int, warning_threshold: float) -> LimitThresholdType | None:
    usage = current / limit
    if usage >= 1:
        return LimitThresholdType.LIMIT
    if usage >= warning_threshold:
        return LimitThresholdType.WARNING
    return None


class UsageLimitMonitor(AutomationJob):
    """Raises deduplicated usage-limit events for active and trial subscriptions."""

    job_name = "check_usage_limits"
    results_model = UsageSweepResults

    def __init__(
        self,
        db: AsyncSession,
        counters: Sequence[ResourceCounter] | None = None,
        **kwargs: Any,
    ):
        super().__init__(db, **kwargs)
        self.counters = tuple(counters) if counters is not None else DEFAULT_COUNTERS
        self._plan_limits: dict[UUID, dict[str, Any]] = {}

    async def check_usage_limits(
        self,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> AutomationRunResult:
        return await self.execute(triggered_by, admin_id)

    async def sweep(
        self, results: UsageSweepResults, counters: SweepCounters, guard: SweepGuard
    ) -> None:
        now = self.clock()
        live = select(Subscription.id, Subscription.tenant_id, Subscription.plan_id).where(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value]
            )
        )
        async for page in guard.pages(self.db, live, Subscription.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._check, row.id, row.tenant_id, row.plan_id, now),
                    lock_key=("usage", row.tenant_id),
                )

    async def _limits_for(self, plan_id: UUID) -> dict[str, Any]:
        if plan_id not in self._plan_limits:
            plan = await self.db.get(SubscriptionPlan, plan_id)
            self._plan_limits[plan_id] = dict(plan.limits or {}) if plan is not None else {}
        return self._plan_limits[plan_id]

    async def _check(
        self, subscription_id: UUID, tenant_id: str, plan_id: UUID, now: datetime
    ) -> list[Outcome]:
        snapshot = await self.get_snapshot()
        limits = await self._limits_for(plan_id)
        outcomes: list[Outcome] = []

        for counter in self.counters:
            limit = resolve_limit(limits, counter.limit_key)
            current = await counter.count(self.db, tenant_id)
            threshold = classify_usage(current, limit, snapshot.limit_warning_threshold)
            if threshold is None:
                continue
            hit = await self._record(
                subscription_id, tenant_id, counter, current, limit, threshold, now
            )
            if hit is not None:
                bucket = "limits" if threshold == LimitThresholdType.LIMIT else "warnings"
                outcomes.append((bucket, hit))

        return outcomes

    async def has_recent_event(
        self, tenant_id: str, limit_type: str, threshold: LimitThresholdType, now: datetime
    ) -> bool:
        result = await self.db.execute(
            select(UsageLimitEvent.id)
            .where(
                and_(
                    UsageLimitEvent.tenant_id == tenant_id,
                    UsageLimitEvent.limit_type == limit_type,
                    UsageLimitEvent.threshold_type == threshold.value,
                    UsageLimitEvent.created_at >= now - LIMIT_EVENT_DEDUP_WINDOW,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _record(
        self,
        subscription_id: UUID,
        tenant_id: str,
        counter: ResourceCounter,
        current: int,
        limit: int,
        threshold: LimitThresholdType,
        now: datetime,
    ) -> UsageLimitHit | None:
        """Insert a usage event unless one of the same kind exists within 24 hours."""
        if await self.has_recent_event(tenant_id, counter.limit_type, threshold, now):
            return None

        percent = (Decimal(current) * 100 / Decimal(limit)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        action = (
            LimitAction.FEATURE_DISABLED
            if threshold == LimitThresholdType.LIMIT
            else LimitAction.NOTIFICATION_SENT
        )
        self.db.add(
            UsageLimitEvent(
                id=uuid4(),
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                limit_type=counter.limit_type,
                current_usage=current,
                limit_value=limit,
                usage_percent=min(percent, _MAX_PERCENT),
                threshold_type=threshold.value,
                action_taken=action.value,
                created_at=now,
            )
        )
        await self.db.flush()

        logger.info(
            "Usage limit event recorded",
            tenant_id=tenant_id,
            subscription_id=str(subscription_id),
            limit_type=counter.limit_type,
            threshold_type=threshold.value,
            current_usage=current,
            limit_value=limit,
        )
        return UsageLimitHit(
            tenant_id=tenant_id,
            subscription_id=str(subscription_id),
            limit_type=counter.limit_type,
            current_usage=current,
            limit_value=limit,
            usage_percent=float(percent),
        )


__all__ = [
    "UsageLimitMonitor",
    "ResourceCounter",
    "DEFAULT_COUNTERS",
    "UNLIMITED",
    "LIMIT_EVENT_DEDUP_WINDOW",
    "count_rooms",
    "count_active_members",
    "resolve_limit",
    "classify_usage",
]
