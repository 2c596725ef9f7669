"""Tests for renewal reminders."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from vilo.platform.subscriptions.events import SubscriptionEventLogger
from vilo.platform.subscriptions.models import (
    AutomationRunStatus,
    NotificationType,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from vilo.platform.subscriptions.renewals import RenewalReminderProcessor
from vilo.platform.subscriptions.schemas import AutomationSettingsSnapshot

pytestmark = pytest.mark.integration


@pytest.fixture
def processor(async_session, clock, locks):
    def _processor(snapshot=None) -> RenewalReminderProcessor:
        return RenewalReminderProcessor(
            async_session,
            snapshot=snapshot or AutomationSettingsSnapshot(),
            clock=clock,
            locks=locks,
        )

    return _processor


@pytest.mark.asyncio
class TestRenewalReminders:
    async def test_reminds_upcoming_renewal(self, async_session, processor, make_subscription):
        subscription = await make_subscription(ends_in=timedelta(days=5))

        result = await processor().process_renewals()

        assert result.status == AutomationRunStatus.COMPLETED
        assert result.results.reminded == [str(subscription.id)]
        events = await SubscriptionEventLogger(async_session).list_events(
            subscription.id, SubscriptionEventType.RENEWAL_REMINDER
        )
        assert len(events) == 1
        assert events[0].notification_type == NotificationType.EMAIL.value
        assert events[0].details["days_remaining"] == 5

    async def test_reminder_not_repeated_within_a_week(
        self, async_session, clock, processor, make_subscription
    ):
        subscription = await make_subscription(ends_in=timedelta(days=6))

        await processor().process_renewals()
        clock.advance(hours=1)
        second = await processor().process_renewals()

        assert second.results.reminded == []
        events = await SubscriptionEventLogger(async_session).list_events(
            subscription.id, SubscriptionEventType.RENEWAL_REMINDER
        )
        assert len(events) == 1

    async def test_old_reminder_does_not_block(
        self, async_session, clock, processor, make_subscription
    ):
        subscription = await make_subscription(ends_in=timedelta(days=3))
        async_session.add(
            SubscriptionEvent(
                id=uuid4(),
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                event_type=SubscriptionEventType.RENEWAL_REMINDER.value,
                details={},
                notification_type=NotificationType.EMAIL.value,
                created_at=clock() - timedelta(days=8),
            )
        )
        await async_session.commit()

        result = await processor().process_renewals()

        assert result.results.reminded == [str(subscription.id)]

    async def test_outside_window_ignored(self, processor, make_subscription):
        await make_subscription(ends_in=timedelta(days=10))

        result = await processor().process_renewals()

        assert result.items_processed == 0

    async def test_window_follows_snapshot(self, processor, make_subscription):
        subscription = await make_subscription(ends_in=timedelta(days=10))

        snapshot = AutomationSettingsSnapshot(renewal_reminder_days=14)
        result = await processor(snapshot).process_renewals()

        assert result.results.reminded == [str(subscription.id)]

    @pytest.mark.parametrize(
        ("status", "auto_renew"),
        [
            (SubscriptionStatus.ACTIVE, False),
            (SubscriptionStatus.TRIAL, True),
            (SubscriptionStatus.CANCELLED, True),
        ],
    )
    async def test_only_auto_renewing_active_subscriptions(
        self, processor, make_subscription, status, auto_renew
    ):
        await make_subscription(status=status, ends_in=timedelta(days=2), auto_renew=auto_renew)

        result = await processor().process_renewals()

        assert result.items_processed == 0

    async def test_failed_event_write_is_an_item_error(self, processor, make_subscription):
        subscription = await make_subscription(ends_in=timedelta(days=2))

        with patch.object(SubscriptionEventLogger, "log", AsyncMock(return_value=None)):
            result = await processor().process_renewals()

        assert result.status == AutomationRunStatus.PARTIAL
        assert result.results.errors[0].id == str(subscription.id)
        assert result.results.reminded == []
