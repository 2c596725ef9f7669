"""Renewal reminder processor."""

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
    RenewalReminderDetails,
    RenewalSweepResults,
    SubscriptionEventCreate,
)

logger = structlog.get_logger(__name__)

# A reminder suppresses further reminders for this long
REMINDER_DEDUP_WINDOW = timedelta(days=7)


class RenewalReminderProcessor(AutomationJob):
    """Emails tenants whose auto-renewing subscription is about to renew."""

    job_name = "process_renewals"
    results_model = RenewalSweepResults

    async def process_renewals(
        self,
        triggered_by: TriggerSource = TriggerSource.SCHEDULED,
        admin_id: str | None = None,
    ) -> AutomationRunResult:
        return await self.execute(triggered_by, admin_id)

    async def sweep(
        self, results: RenewalSweepResults, counters: SweepCounters, guard: SweepGuard
    ) -> None:
        snapshot = await self.get_snapshot()
        events = SubscriptionEventLogger(self.db, self.clock)
        now = self.clock()
        cutoff = now + timedelta(days=snapshot.renewal_reminder_days)

        upcoming = select(Subscription.id).where(
            and_(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(True),
                Subscription.ends_at >= now,
                Subscription.ends_at <= cutoff,
            )
        )
        async for page in guard.pages(self.db, upcoming, Subscription.id):
            for row in page:
                if guard.expired:
                    return
                await self.process_item(
                    row.id,
                    results,
                    counters,
                    partial(self._remind, row.id, now, events),
                    lock_key=("subscription", row.id),
                )

    async def _remind(
        self, subscription_id: UUID, now: datetime, events: SubscriptionEventLogger
    ) -> list[Outcome]:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.ACTIVE.value
            or not subscription.auto_renew
            or subscription.ends_at is None
        ):
            return []

        if await events.has_event(
            subscription.id,
            SubscriptionEventType.RENEWAL_REMINDER,
            since=now - REMINDER_DEDUP_WINDOW,
        ):
            return []

        days_remaining = max(0, math.ceil((subscription.ends_at - now).total_seconds() / 86400))
        event_id = await events.log(
            SubscriptionEventCreate(
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                details=RenewalReminderDetails(
                    ends_at=subscription.ends_at, days_remaining=days_remaining
                ),
                previous_status=subscription.status,
                new_status=subscription.status,
                notification_type=NotificationType.EMAIL,
            )
        )
        if event_id is None:
            raise RuntimeError("Failed to record renewal_reminder event")

        return [("reminded", str(subscription.id))]


__all__ = ["RenewalReminderProcessor", "REMINDER_DEDUP_WINDOW"]
