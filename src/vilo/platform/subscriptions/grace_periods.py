"""
Payment grace period management.

A grace period opens when a charge fails on an active subscription. The
periodic sweep expires overdue periods (optionally cancelling the
subscription) and then walks the retry schedule for the rest. Resolution is
reported from outside, either by a payment webhook or by an admin.
"""

from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow
from .admin_actions import perform_admin_action
from .events import SubscriptionEventLogger
from .exceptions import (
    GracePeriodNotFoundError,
    InvalidActionArgumentError,
    InvalidGracePeriodStateError,
    InvalidSubscriptionStateError,
    SubscriptionNotFoundError,
)
from .locks import KeyedLock
from .models import (
    GracePeriod,
    GracePeriodStatus,
    NotificationType,
    ResolutionMethod,
    Subscription,
    SubscriptionStatus,
    TriggerSource,
)
from .runs import AutomationJob, Clock, Outcome, SweepCounters, SweepGuard
from .schemas import (
    AdminActionResult,
    AutomationRunResult,
    AutomationSettingsSnapshot,
    GracePeriodEndedDetails,
    GracePeriodExtendedDetails,
    GracePeriodStartedDetails,
    GracePeriodStats,
    GracePeriodSummary,
    GraceSweepResults,
    PaymentRetryDetails,
    PaymentSucceededDetails,
    SubscriptionEventCreate,
)
from .settings_provider import PlatformSettingsProvider

logger = structlog.get_logger(__name__)

MAX_EXTENSION_DAYS = 30
RESOLUTION_WINDOW_DAYS = 30

# Methods accepted when a payment is reported as collected
PAID_RESOLUTION_METHODS = (
    ResolutionMethod.AUTO_PAYMENT,
    ResolutionMethod.MANUAL_PAYMENT,
    ResolutionMethod.ADMIN_OVERRIDE,
)


class PaymentRetryOutcome(str, Enum):
    """Result recorded in ``retry_history`` for one attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentGateway(Protocol):
    """Hook for charging the customer again during a grace period."""

    async def retry_payment(self, grace_period: GracePeriod) -> PaymentRetryOutcome: ...


def next_retry_offset(intervals: tuple[int, ...], retry_count: int) -> int:
    """Day offset for the retry after ``retry_count`` attempts; the last interval repeats."""
    if retry_count < len(intervals):
        return intervals[retry_count]
    return intervals[-1]


class GracePeriodManager(AutomationJob):
    """Opens, advances, expires and resolves payment grace periods."""

    job_name = "process_grace_periods"
    results_model = GraceSweepResults

    def __init__(
        self,
        db: AsyncSession,
        snapshot: AutomationSettingsSnapshot | None = None,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
        batch_size: int | None = None,
        time_limit_seconds: float | None = None,
        payment_gateway: PaymentGateway | None = None,
    ):
        super().__init__(
            db,
            snapshot=snapshot,
            clock=clock,
            locks=locks,
            batch_size=batch_size,
            time_limit_seconds=time_limit_seconds,
        )
        self.payment_gateway = payment_gateway
        self.events = SubscriptionEventLogger(db, clock)

    # ==========================================
    # Opening
    # ==========================================

    async def start_grace_period(
        self,
        subscription_id: UUID,
        tenant_id: str,
        failure_reason: str | None = None,
    ) -> UUID | None:
        """
        Open a grace period after a failed payment.

        If the subscription already has an active grace period its id is
        returned and nothing is written.

        Args:
            subscription_id: Subscription whose charge failed
            tenant_id: Owning tenant
            failure_reason: Gateway failure message

        Returns:
            Grace period id, or None if the subscription is missing, not
            active, or the store failed
        """
        try:
            async with self.locks.hold("subscription", subscription_id):
                grace_period = await self._open(subscription_id, tenant_id, failure_reason)
                await self.db.commit()
        except (SubscriptionNotFoundError, InvalidSubscriptionStateError) as e:
            await self.db.rollback()
            logger.warning(
                "Grace period not started",
                subscription_id=str(subscription_id),
                tenant_id=tenant_id,
                error=e.message,
            )
            return None
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to start grace period",
                subscription_id=str(subscription_id),
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return None

        return grace_period.id

    async def _open(
        self, subscription_id: UUID, tenant_id: str, failure_reason: str | None
    ) -> GracePeriod:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None or subscription.tenant_id != tenant_id:
            raise SubscriptionNotFoundError(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidSubscriptionStateError(
                "Grace periods are only opened for active subscriptions",
                current_state=subscription.status,
                required=SubscriptionStatus.ACTIVE.value,
            )

        current_status = subscription.status
        existing = await self.get_active_for_subscription(subscription_id)
        if existing is not None:
            logger.info(
                "Grace period already active",
                subscription_id=str(subscription_id),
                grace_period_id=str(existing.id),
            )
            return existing

        # Fresh settings unless a snapshot was injected
        snapshot = self.snapshot or await PlatformSettingsProvider(self.db).load_snapshot()
        intervals = snapshot.payment_retry_intervals
        now = self.clock()

        grace_period = GracePeriod(
            id=uuid4(),
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            status=GracePeriodStatus.ACTIVE.value,
            started_at=now,
            ends_at=now + timedelta(days=snapshot.grace_period_days),
            original_failure_reason=failure_reason,
            original_failure_at=now,
            retry_count=0,
            max_retries=len(intervals),
            next_retry_at=now + timedelta(days=intervals[0]),
            retry_history=[],
            created_at=now,
            updated_at=now,
        )
        self.db.add(grace_period)
        await self.db.flush()

        await self.events.log(
            SubscriptionEventCreate(
                subscription_id=subscription_id,
                tenant_id=tenant_id,
                details=GracePeriodStartedDetails(
                    grace_period_id=grace_period.id,
                    ends_at=grace_period.ends_at,
                    failure_reason=failure_reason,
                    max_retries=grace_period.max_retries,
                    next_retry_at=grace_period.next_retry_at,
                ),
                previous_status=current_status,
                new_status=current_status,
                notification_type=NotificationType.BOTH,
            )
        )
        logger.info(
            "Grace period started",
            grace_period_id=str(grace_period.id),
            subscription_id=str(subscription_id),
            tenant_id=tenant_id,
            ends_at=grace_period.ends_at.isoformat(),
        )
        return grace_period

    # ==========================================
    # Periodic sweep
    # ==========================================

    async def process_grace_periods(
        self,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> AutomationRunResult:
        return await self.execute(triggered_by, admin_id)

    async def sweep(
        self, results: GraceSweepResults, counters: SweepCounters, guard: SweepGuard
    ) -> None:
        now = self.clock()

        # Expiry runs first; the retry query below only sees what is still active
        overdue = select(GracePeriod.id).where(
            and_(
                GracePeriod.status == GracePeriodStatus.ACTIVE.value,
                GracePeriod.ends_at < now,
            )
        )
        async for page in guard.pages(self.db, overdue, GracePeriod.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._expire, row.id, now),
                    lock_key=("grace_period", row.id),
                )

        due = select(GracePeriod.id).where(
            and_(
                GracePeriod.status == GracePeriodStatus.ACTIVE.value,
                GracePeriod.next_retry_at.is_not(None),
                GracePeriod.next_retry_at <= now,
            )
        )
        async for page in guard.pages(self.db, due, GracePeriod.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._retry, row.id, now),
                    lock_key=("grace_period", row.id),
                )

    async def _lock_row(self, grace_period_id: UUID) -> GracePeriod | None:
        """Re-read a grace period with a row lock; rows locked elsewhere are skipped."""
        result = await self.db.execute(
            select(GracePeriod)
            .where(GracePeriod.id == grace_period_id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _expire(self, grace_period_id: UUID, now: datetime) -> list[Outcome]:
        grace_period = await self._lock_row(grace_period_id)
        if (
            grace_period is None
            or grace_period.status != GracePeriodStatus.ACTIVE.value
            or grace_period.ends_at >= now
        ):
            return []

        snapshot = await self.get_snapshot()
        grace_period.status = GracePeriodStatus.EXPIRED.value
        grace_period.resolved_at = now
        grace_period.resolution_method = ResolutionMethod.EXPIRED.value
        grace_period.next_retry_at = None

        subscription = await self.db.get(
            Subscription, grace_period.subscription_id, populate_existing=True
        )
        previous_status = subscription.status if subscription is not None else None
        action = "cancelled" if snapshot.auto_cancel_after_grace else "expired"
        if (
            snapshot.auto_cancel_after_grace
            and subscription is not None
            and subscription.status not in (
                SubscriptionStatus.CANCELLED.value,
                SubscriptionStatus.EXPIRED.value,
            )
        ):
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
            subscription.cancellation_reason = "payment_failed"

        await self.events.log(
            SubscriptionEventCreate(
                subscription_id=grace_period.subscription_id,
                tenant_id=grace_period.tenant_id,
                details=GracePeriodEndedDetails(grace_period_id=grace_period.id, action=action),
                previous_status=previous_status,
                new_status=subscription.status if subscription is not None else None,
                notification_type=NotificationType.BOTH,
            )
        )
        logger.info(
            "Grace period expired",
            grace_period_id=str(grace_period.id),
            subscription_id=str(grace_period.subscription_id),
            action=action,
        )
        return [("expired", str(grace_period.id))]

    async def _retry(self, grace_period_id: UUID, now: datetime) -> list[Outcome]:
        grace_period = await self._lock_row(grace_period_id)
        if (
            grace_period is None
            or grace_period.status != GracePeriodStatus.ACTIVE.value
            or grace_period.next_retry_at is None
            or grace_period.next_retry_at > now
        ):
            return []

        snapshot = await self.get_snapshot()
        outcome = await self._attempt_payment(grace_period, now, snapshot.payment_retry_intervals)
        outcomes: list[Outcome] = [("retried", str(grace_period.id))]

        if outcome == PaymentRetryOutcome.SUCCEEDED:
            await self._resolve_paid(grace_period, ResolutionMethod.AUTO_PAYMENT, now)
            outcomes.append(("resolved", str(grace_period.id)))
        return outcomes

    async def _attempt_payment(
        self,
        grace_period: GracePeriod,
        now: datetime,
        intervals: tuple[int, ...],
        admin_id: str | None = None,
    ) -> PaymentRetryOutcome:
        """Record one retry attempt and schedule the next one."""
        if self.payment_gateway is not None:
            outcome = await self.payment_gateway.retry_payment(grace_period)
        else:
            outcome = PaymentRetryOutcome.PENDING

        attempt = grace_period.retry_count + 1
        entry: dict[str, Any] = {
            "attempt": attempt,
            "at": now.isoformat(),
            "result": outcome.value,
        }
        if admin_id is not None:
            entry["manual"] = True
            entry["triggered_by"] = admin_id

        grace_period.retry_count = attempt
        # Reassign so the JSON column is flagged dirty
        grace_period.retry_history = [*(grace_period.retry_history or []), entry]
        grace_period.last_retry_at = now
        if admin_id is None:
            if attempt < grace_period.max_retries:
                offset = next_retry_offset(intervals, attempt)
                grace_period.next_retry_at = now + timedelta(days=offset)
            else:
                grace_period.next_retry_at = None
        elif attempt >= grace_period.max_retries:
            grace_period.next_retry_at = None

        await self.events.log(
            SubscriptionEventCreate(
                subscription_id=grace_period.subscription_id,
                tenant_id=grace_period.tenant_id,
                details=PaymentRetryDetails(
                    grace_period_id=grace_period.id,
                    retry_count=attempt,
                    max_retries=grace_period.max_retries,
                    next_retry_at=grace_period.next_retry_at,
                    result=outcome.value,
                    manual=admin_id is not None,
                ),
                is_automated=admin_id is None,
                triggered_by=admin_id,
            )
        )
        logger.info(
            "Payment retry recorded",
            grace_period_id=str(grace_period.id),
            retry_count=attempt,
            max_retries=grace_period.max_retries,
            result=outcome.value,
        )
        return outcome

    async def _resolve_paid(
        self,
        grace_period: GracePeriod,
        resolution_method: ResolutionMethod,
        now: datetime,
        admin_id: str | None = None,
    ) -> UUID | None:
        grace_period.status = GracePeriodStatus.RESOLVED_PAID.value
        grace_period.resolved_at = now
        grace_period.resolution_method = resolution_method.value
        grace_period.next_retry_at = None

        subscription = await self.db.get(
            Subscription, grace_period.subscription_id, populate_existing=True
        )
        previous_status = subscription.status if subscription is not None else None
        if subscription is not None:
            subscription.status = SubscriptionStatus.ACTIVE.value

        event_id = await self.events.log(
            SubscriptionEventCreate(
                subscription_id=grace_period.subscription_id,
                tenant_id=grace_period.tenant_id,
                details=PaymentSucceededDetails(
                    grace_period_id=grace_period.id,
                    resolution_method=resolution_method.value,
                ),
                previous_status=previous_status,
                new_status=SubscriptionStatus.ACTIVE.value,
                notification_type=NotificationType.BOTH,
                is_automated=admin_id is None,
                triggered_by=admin_id,
            )
        )
        logger.info(
            "Grace period resolved",
            grace_period_id=str(grace_period.id),
            subscription_id=str(grace_period.subscription_id),
            resolution_method=resolution_method.value,
        )
        return event_id

    # ==========================================
    # External resolution and admin operations
    # ==========================================

    async def _load_active(self, grace_period_id: UUID) -> GracePeriod:
        grace_period = await self.db.get(GracePeriod, grace_period_id, populate_existing=True)
        if grace_period is None:
            raise GracePeriodNotFoundError(grace_period_id)
        if grace_period.status != GracePeriodStatus.ACTIVE.value:
            raise InvalidGracePeriodStateError(
                "Grace period is not active", current_state=grace_period.status
            )
        return grace_period

    async def resolve_grace_period(
        self,
        grace_period_id: UUID,
        resolution_method: ResolutionMethod = ResolutionMethod.AUTO_PAYMENT,
        admin_id: str | None = None,
    ) -> AdminActionResult:
        """
        Close a grace period as paid and reactivate its subscription.

        Called once a payment webhook or an admin confirms the charge.
        """

        async def operation() -> UUID | None:
            if resolution_method not in PAID_RESOLUTION_METHODS:
                raise InvalidActionArgumentError(
                    "Unsupported resolution method", resolution_method=resolution_method.value
                )
            grace_period = await self._load_active(grace_period_id)
            return await self._resolve_paid(grace_period, resolution_method, self.clock(), admin_id)

        return await perform_admin_action(
            self.db,
            "resolve_grace_period",
            operation,
            locks=self.locks,
            lock_key=("grace_period", grace_period_id),
            grace_period_id=grace_period_id,
            resolution_method=resolution_method.value,
        )

    async def cancel_grace_period(
        self, grace_period_id: UUID, admin_id: str, reason: str | None = None
    ) -> AdminActionResult:
        """Close a grace period as unpaid and cancel the subscription."""

        async def operation() -> UUID | None:
            grace_period = await self._load_active(grace_period_id)
            now = self.clock()
            grace_period.status = GracePeriodStatus.RESOLVED_CANCELLED.value
            grace_period.resolved_at = now
            grace_period.resolution_method = ResolutionMethod.ADMIN_CANCELLED.value
            grace_period.next_retry_at = None

            subscription = await self.db.get(
                Subscription, grace_period.subscription_id, populate_existing=True
            )
            previous_status = subscription.status if subscription is not None else None
            if subscription is not None:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancelled_at = now
                subscription.cancellation_reason = reason or "payment_failed"

            return await self.events.log(
                SubscriptionEventCreate(
                    subscription_id=grace_period.subscription_id,
                    tenant_id=grace_period.tenant_id,
                    details=GracePeriodEndedDetails(
                        grace_period_id=grace_period.id, action="cancelled", reason=reason
                    ),
                    previous_status=previous_status,
                    new_status=SubscriptionStatus.CANCELLED.value,
                    notification_type=NotificationType.BOTH,
                    is_automated=False,
                    triggered_by=admin_id,
                )
            )

        return await perform_admin_action(
            self.db,
            "cancel_grace_period",
            operation,
            locks=self.locks,
            lock_key=("grace_period", grace_period_id),
            grace_period_id=grace_period_id,
            admin_id=admin_id,
        )

    async def extend_grace_period(
        self, grace_period_id: UUID, days: int, admin_id: str, reason: str | None = None
    ) -> AdminActionResult:
        """Move an active grace period's end date out by 1 to 30 days."""

        async def operation() -> UUID | None:
            if days < 1 or days > MAX_EXTENSION_DAYS:
                raise InvalidActionArgumentError(
                    f"Days must be between 1 and {MAX_EXTENSION_DAYS}", days=days
                )
            grace_period = await self._load_active(grace_period_id)
            grace_period.ends_at = grace_period.ends_at + timedelta(days=days)

            return await self.events.log(
                SubscriptionEventCreate(
                    subscription_id=grace_period.subscription_id,
                    tenant_id=grace_period.tenant_id,
                    details=GracePeriodExtendedDetails(
                        grace_period_id=grace_period.id,
                        extension_days=days,
                        new_ends_at=grace_period.ends_at,
                        reason=reason,
                    ),
                    is_automated=False,
                    triggered_by=admin_id,
                )
            )

        return await perform_admin_action(
            self.db,
            "extend_grace_period",
            operation,
            locks=self.locks,
            lock_key=("grace_period", grace_period_id),
            grace_period_id=grace_period_id,
            admin_id=admin_id,
            days=days,
        )

    async def retry_payment_now(self, grace_period_id: UUID, admin_id: str) -> AdminActionResult:
        """Trigger an out-of-schedule retry. The automatic schedule is left as is."""

        async def operation() -> UUID | None:
            grace_period = await self._load_active(grace_period_id)
            if grace_period.retry_count >= grace_period.max_retries:
                raise InvalidGracePeriodStateError(
                    "Maximum retry attempts reached", current_state=grace_period.status
                )
            now = self.clock()
            intervals = (await self.get_snapshot()).payment_retry_intervals
            outcome = await self._attempt_payment(grace_period, now, intervals, admin_id=admin_id)
            if outcome == PaymentRetryOutcome.SUCCEEDED:
                return await self._resolve_paid(
                    grace_period, ResolutionMethod.AUTO_PAYMENT, now, admin_id
                )
            return None

        return await perform_admin_action(
            self.db,
            "retry_payment",
            operation,
            locks=self.locks,
            lock_key=("grace_period", grace_period_id),
            grace_period_id=grace_period_id,
            admin_id=admin_id,
        )

    # ==========================================
    # Queries
    # ==========================================

    async def get_active_for_subscription(self, subscription_id: UUID) -> GracePeriod | None:
        result = await self.db.execute(
            select(GracePeriod).where(
                and_(
                    GracePeriod.subscription_id == subscription_id,
                    GracePeriod.status == GracePeriodStatus.ACTIVE.value,
                )
            )
        )
        return result.scalars().first()

    async def list_grace_periods(
        self,
        status: GracePeriodStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[GracePeriodSummary]:
        """Grace periods, newest first, optionally filtered by status."""
        query = select(GracePeriod)
        if status is not None:
            query = query.where(GracePeriod.status == status.value)
        query = query.order_by(GracePeriod.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return [GracePeriodSummary.model_validate(row) for row in result.scalars().all()]

    async def get_stats(self) -> GracePeriodStats:
        """
        Aggregate figures for the admin dashboard.

        ``resolution_rate`` is the share of periods created in the last 30
        days and already closed that ended paid, as a whole percentage.
        """
        now = self.clock()
        stats = GracePeriodStats()

        result = await self.db.execute(
            select(GracePeriod.status, func.count(GracePeriod.id)).group_by(GracePeriod.status)
        )
        for status, count in result.all():
            if status in GracePeriodStats.model_fields:
                setattr(stats, status, count)

        end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=999999)
        result = await self.db.execute(
            select(func.count(GracePeriod.id)).where(
                and_(
                    GracePeriod.status == GracePeriodStatus.ACTIVE.value,
                    GracePeriod.ends_at <= end_of_day,
                )
            )
        )
        stats.expiring_today = result.scalar_one()

        result = await self.db.execute(
            select(GracePeriod.started_at).where(
                GracePeriod.status == GracePeriodStatus.ACTIVE.value
            )
        )
        started = list(result.scalars().all())
        if started:
            total_days = sum((now - started_at).days for started_at in started)
            stats.avg_days_in_grace = round(total_days / len(started), 1)

        window_start = now - timedelta(days=RESOLUTION_WINDOW_DAYS)
        result = await self.db.execute(
            select(GracePeriod.status).where(
                and_(
                    GracePeriod.created_at >= window_start,
                    GracePeriod.status != GracePeriodStatus.ACTIVE.value,
                )
            )
        )
        closed = list(result.scalars().all())
        if closed:
            paid = sum(1 for status in closed if status == GracePeriodStatus.RESOLVED_PAID.value)
            stats.resolution_rate = float(round(paid / len(closed) * 100))

        return stats


__all__ = [
    "PaymentRetryOutcome",
    "PaymentGateway",
    "GracePeriodManager",
    "next_retry_offset",
]
