"""Tests for the trial processor."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from vilo.platform.subscriptions.events import SubscriptionEventLogger
from vilo.platform.subscriptions.models import (
    AutomationRun,
    AutomationRunStatus,
    NotificationType,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
    TriggerSource,
)
from vilo.platform.subscriptions.schemas import AutomationSettingsSnapshot
from vilo.platform.subscriptions.trials import TrialProcessor

pytestmark = pytest.mark.integration


def _processor(session, clock, locks, snapshot=None, **kwargs) -> TrialProcessor:
    return TrialProcessor(
        session,
        snapshot=snapshot or AutomationSettingsSnapshot(),
        clock=clock,
        locks=locks,
        **kwargs,
    )


@pytest.mark.asyncio
class TestTrialEndingSoon:
    """Ending-soon notices."""

    async def test_notifies_trial_inside_notice_window(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=2, hours=1)
        )

        result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.status == AutomationRunStatus.COMPLETED
        assert result.results.notified == [str(trial.id)]
        assert result.items_succeeded == 1

        events = await SubscriptionEventLogger(async_session).list_events(
            trial.id, SubscriptionEventType.TRIAL_ENDING_SOON
        )
        assert len(events) == 1
        assert events[0].notification_type == NotificationType.BOTH.value
        assert events[0].is_automated is True
        # Partial days round up
        assert events[0].details["days_remaining"] == 3
        assert "event_type" not in events[0].details

    async def test_notice_sent_only_once(self, async_session, clock, locks, make_subscription):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=2)
        )
        processor = _processor(async_session, clock, locks)

        await processor.process_expiring_trials()
        clock.advance(days=1)
        second = await processor.process_expiring_trials()

        assert second.results.notified == []
        assert second.items_processed == 1
        assert second.items_succeeded == 0
        assert second.status == AutomationRunStatus.COMPLETED

        events = await SubscriptionEventLogger(async_session).list_events(
            trial.id, SubscriptionEventType.TRIAL_ENDING_SOON
        )
        assert len(events) == 1

    async def test_trial_outside_window_is_ignored(
        self, async_session, clock, locks, make_subscription
    ):
        await make_subscription(status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=5))

        result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.items_processed == 0
        assert result.results.notified == []

    async def test_notice_window_follows_snapshot(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=5)
        )
        snapshot = AutomationSettingsSnapshot(trial_ending_notice_days=7)

        result = await _processor(async_session, clock, locks, snapshot).process_expiring_trials()

        assert result.results.notified == [str(trial.id)]

    async def test_active_subscription_not_notified(
        self, async_session, clock, locks, make_subscription
    ):
        await make_subscription(status=SubscriptionStatus.ACTIVE, ends_in=timedelta(days=1))

        result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.items_processed == 0

    async def test_failed_event_write_is_an_item_error(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=1)
        )

        with patch.object(SubscriptionEventLogger, "log", AsyncMock(return_value=None)):
            result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.status == AutomationRunStatus.PARTIAL
        assert result.items_failed == 1
        assert result.results.notified == []
        assert result.results.errors[0].id == str(trial.id)
        assert "trial_ending_soon" in result.results.errors[0].error


@pytest.mark.asyncio
class TestTrialExpiry:
    """Closing trials past their end date."""

    async def test_expired_trial_is_cancelled_when_downgrading(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-1)
        )

        result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.results.expired == [str(trial.id)]
        refreshed = await async_session.get(Subscription, trial.id, populate_existing=True)
        assert refreshed.status == SubscriptionStatus.CANCELLED.value
        assert refreshed.cancellation_reason == "trial_expired"
        assert refreshed.cancelled_at == clock()

        events = await SubscriptionEventLogger(async_session).list_events(
            trial.id, SubscriptionEventType.TRIAL_EXPIRED
        )
        assert len(events) == 1
        assert events[0].previous_status == SubscriptionStatus.TRIAL.value
        assert events[0].new_status == SubscriptionStatus.CANCELLED.value
        assert events[0].details["downgraded_to_free"] is True

    async def test_expired_trial_marked_expired_without_downgrade(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(hours=-2)
        )
        snapshot = AutomationSettingsSnapshot(downgrade_to_free_on_cancel=False)

        first = await _processor(async_session, clock, locks, snapshot).process_expiring_trials()
        clock.advance(days=1)
        second = await _processor(async_session, clock, locks, snapshot).process_expiring_trials()

        assert first.results.expired == [str(trial.id)]
        assert second.results.expired == []
        assert second.items_processed == 0

        refreshed = await async_session.get(Subscription, trial.id, populate_existing=True)
        assert refreshed.status == SubscriptionStatus.EXPIRED.value
        assert refreshed.cancelled_at is None

        events = await SubscriptionEventLogger(async_session).list_events(
            trial.id, SubscriptionEventType.TRIAL_EXPIRED
        )
        assert len(events) == 1
        assert events[0].previous_status == SubscriptionStatus.TRIAL.value
        assert events[0].new_status == SubscriptionStatus.EXPIRED.value
        assert events[0].details["downgraded_to_free"] is False

    async def test_expiry_survives_event_failure(
        self, async_session, clock, locks, make_subscription
    ):
        trial = await make_subscription(
            status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-3)
        )

        with patch.object(SubscriptionEventLogger, "log", AsyncMock(return_value=None)):
            result = await _processor(async_session, clock, locks).process_expiring_trials()

        assert result.status == AutomationRunStatus.COMPLETED
        assert result.results.expired == [str(trial.id)]
        refreshed = await async_session.get(Subscription, trial.id, populate_existing=True)
        assert refreshed.status == SubscriptionStatus.CANCELLED.value

    async def test_pages_through_every_trial(self, async_session, clock, locks, make_subscription):
        trials = [
            await make_subscription(status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-1))
            for _ in range(5)
        ]

        processor = _processor(async_session, clock, locks, batch_size=2)
        result = await processor.process_expiring_trials()

        assert sorted(result.results.expired) == sorted(str(t.id) for t in trials)
        assert result.items_processed == 5


@pytest.mark.asyncio
class TestTrialRunTracking:
    """Run rows and run status."""

    async def test_run_row_written(self, async_session, clock, locks, make_subscription):
        await make_subscription(status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-1))

        result = await _processor(async_session, clock, locks).process_expiring_trials(
            TriggerSource.MANUAL, admin_id="admin-7"
        )

        query = select(AutomationRun).where(AutomationRun.id == result.run_id)
        run = (await async_session.execute(query)).scalar_one()
        assert run.job_name == "process_expiring_trials"
        assert run.status == AutomationRunStatus.COMPLETED.value
        assert run.triggered_by == TriggerSource.MANUAL.value
        assert run.triggered_by_admin == "admin-7"
        assert run.items_processed == 1
        assert run.items_succeeded == 1
        assert run.results["job"] == "process_expiring_trials"
        assert run.completed_at is not None

    async def test_deadline_marks_run_partial(self, async_session, clock, locks, make_subscription):
        await make_subscription(status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-1))

        result = await _processor(
            async_session, clock, locks, time_limit_seconds=0
        ).process_expiring_trials()

        assert result.status == AutomationRunStatus.PARTIAL
        assert result.results.deadline_reached is True
        assert result.items_processed == 0

    async def test_sweep_failure_marks_run_failed(self, async_session, clock, locks):
        processor = _processor(async_session, clock, locks)

        with patch.object(TrialProcessor, "sweep", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await processor.process_expiring_trials()

        assert result.status == AutomationRunStatus.FAILED
        assert result.error == "boom"
        run = await async_session.get(AutomationRun, result.run_id, populate_existing=True)
        assert run.status == AutomationRunStatus.FAILED.value
        assert run.error_message == "boom"
