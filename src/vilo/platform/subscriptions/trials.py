"""
Trial processor.

Sends the one-off "trial ending soon" notice and closes trials whose end
date has passed.
"""

import math
from datetime import datetime, timedelta
from functools import partial
from uuid import UUID

import structlog
from sqlalchemy import and_, select

from .events import SubscriptionEventLogger
from .models import (
    NotificationType,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
    TriggerSource,
)
from .runs import AutomationJob, Outcome, SweepCounters, SweepGuard
from .schemas import (
    AutomationRunResult,
    SubscriptionEventCreate,
    TrialEndingSoonDetails,
    TrialExpiredDetails,
    TrialSweepResults,
)

logger = structlog.get_logger(__name__)


class TrialProcessor(AutomationJob):
    """Notifies trials that are about to end and expires the ones that have."""

    job_name = "process_expiring_trials"
    results_model = TrialSweepResults

    async def process_expiring_trials(
        self,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> AutomationRunResult:
        return await self.execute(triggered_by, admin_id)

    async def sweep(
        self, results: TrialSweepResults, counters: SweepCounters, guard: SweepGuard
    ) -> None:
        snapshot = await self.get_snapshot()
        events = SubscriptionEventLogger(self.db, self.clock)
        now = self.clock()

        # 1. Ending-soon notices
        notice_cutoff = now + timedelta(days=snapshot.trial_ending_notice_days)
        ending_soon = select(Subscription.id).where(
            and_(
                Subscription.status == SubscriptionStatus.TRIAL.value,
                Subscription.ends_at >= now,
                Subscription.ends_at <= notice_cutoff,
            )
        )
        async for page in guard.pages(self.db, ending_soon, Subscription.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._send_ending_soon_notice, row.id, now, events),
                    lock_key=("subscription", row.id),
                )

        # 2. Expiration
        overdue = select(Subscription.id).where(
            and_(
                Subscription.status == SubscriptionStatus.TRIAL.value,
                Subscription.ends_at < now,
            )
        )
        async for page in guard.pages(self.db, overdue, Subscription.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._expire_trial, row.id, now, events),
                    lock_key=("subscription", row.id),
                )

    async def _send_ending_soon_notice(
        self,
        subscription_id: UUID,
        now: datetime,
        events: SubscriptionEventLogger,
    ) -> list[Outcome]:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.TRIAL.value
            or subscription.ends_at is None
        ):
            return []

        # No time window: one notice per trial, ever
        if await events.has_event(subscription.id, SubscriptionEventType.TRIAL_ENDING_SOON):
            return []

        days_remaining = max(0, math.ceil((subscription.ends_at - now).total_seconds() / 86400))
        event_id = await events.log(
            SubscriptionEventCreate(
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                details=TrialEndingSoonDetails(
                    ends_at=subscription.ends_at, days_remaining=days_remaining
                ),
                previous_status=subscription.status,
                new_status=subscription.status,
                notification_type=NotificationType.BOTH,
            )
        )
        if event_id is None:
            # Another worker may have won the unique index race
            if await events.has_event(subscription.id, SubscriptionEventType.TRIAL_ENDING_SOON):
                return []
            raise RuntimeError("Failed to record trial_ending_soon event")

        return [("notified", str(subscription.id))]

    async def _expire_trial(
        self,
        subscription_id: UUID,
        now: datetime,
        events: SubscriptionEventLogger,
    ) -> list[Outcome]:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.TRIAL.value
            or subscription.ends_at is None
            or subscription.ends_at >= now
        ):
            return []

        snapshot = await self.get_snapshot()
        downgrade = snapshot.downgrade_to_free_on_cancel
        new_status = SubscriptionStatus.CANCELLED if downgrade else SubscriptionStatus.EXPIRED

        subscription.status = new_status.value
        if new_status == SubscriptionStatus.CANCELLED:
            subscription.cancelled_at = now
            subscription.cancellation_reason = "trial_expired"

        event_id = await events.log(
            SubscriptionEventCreate(
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                details=TrialExpiredDetails(
                    ends_at=subscription.ends_at, downgraded_to_free=downgrade
                ),
                previous_status=SubscriptionStatus.TRIAL.value,
                new_status=new_status.value,
                notification_type=NotificationType.BOTH,
            )
        )
        if event_id is None:
            logger.warning(
                "Trial expired without an event record", subscription_id=str(subscription.id)
            )

        logger.info(
            "Trial expired",
            subscription_id=str(subscription.id),
            tenant_id=subscription.tenant_id,
            new_status=new_status.value,
        )
        return [("expired", str(subscription.id))]


__all__ = ["TrialProcessor"]
