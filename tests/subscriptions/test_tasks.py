"""Tests for subscription Celery tasks."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from vilo.platform.subscriptions.models import (
    GracePeriod,
    ResolutionMethod,
    SubscriptionStatus,
    TriggerSource,
)

pytestmark = pytest.mark.unit


class TestRunDailyJobsTask:
    @patch("vilo.platform.subscriptions.tasks._run_daily_jobs")
    def test_returns_job_results(self, mock_run):
        from vilo.platform.subscriptions.tasks import run_daily_jobs_task

        mock_run.return_value = {
            "trials": {"status": "completed"},
            "grace_periods": {"status": "partial"},
            "usage_limits": {"status": "completed"},
        }

        result = run_daily_jobs_task()

        assert result["grace_periods"]["status"] == "partial"
        mock_run.assert_called_once_with(TriggerSource.SCHEDULED, None)

    @patch("vilo.platform.subscriptions.tasks._run_daily_jobs")
    def test_manual_trigger_passed_through(self, mock_run):
        from vilo.platform.subscriptions.tasks import run_daily_jobs_task

        mock_run.return_value = {}

        run_daily_jobs_task(triggered_by="manual", admin_id="admin-3")

        mock_run.assert_called_once_with(TriggerSource.MANUAL, "admin-3")

    @patch("vilo.platform.subscriptions.tasks._run_daily_jobs")
    def test_errors_propagate(self, mock_run):
        from vilo.platform.subscriptions.tasks import run_daily_jobs_task

        mock_run.side_effect = Exception("Database connection failed")

        with pytest.raises(Exception, match="Database connection failed"):
            run_daily_jobs_task()


class TestRunHourlyJobsTask:
    @patch("vilo.platform.subscriptions.tasks._run_hourly_jobs")
    def test_returns_job_results(self, mock_run):
        from vilo.platform.subscriptions.tasks import run_hourly_jobs_task

        mock_run.return_value = {"renewals": {"status": "completed"}}

        assert run_hourly_jobs_task() == {"renewals": {"status": "completed"}}


class TestGracePeriodTasks:
    @patch("vilo.platform.subscriptions.tasks._start_grace_period")
    def test_start_grace_period(self, mock_start):
        from vilo.platform.subscriptions.tasks import start_grace_period_task

        subscription_id = uuid4()
        grace_period_id = uuid4()
        mock_start.return_value = grace_period_id

        result = start_grace_period_task(str(subscription_id), "tenant-1", "card_declined")

        assert result == {
            "status": "started",
            "subscription_id": str(subscription_id),
            "grace_period_id": str(grace_period_id),
        }
        mock_start.assert_called_once_with(subscription_id, "tenant-1", "card_declined")

    @patch("vilo.platform.subscriptions.tasks._start_grace_period")
    def test_start_grace_period_not_started(self, mock_start):
        from vilo.platform.subscriptions.tasks import start_grace_period_task

        mock_start.return_value = None

        result = start_grace_period_task(str(uuid4()), "tenant-1")

        assert result["status"] == "not_started"

    @patch("vilo.platform.subscriptions.tasks._resolve_grace_period")
    def test_resolve_grace_period(self, mock_resolve):
        from vilo.platform.subscriptions.tasks import resolve_grace_period_task

        grace_period_id = uuid4()
        mock_resolve.return_value = {"success": True}

        assert resolve_grace_period_task(str(grace_period_id), "manual_payment") == {
            "success": True
        }
        mock_resolve.assert_called_once_with(grace_period_id, ResolutionMethod.MANUAL_PAYMENT)


@pytest.mark.integration
@pytest.mark.asyncio
class TestTaskCoroutines:
    """The coroutines behind the tasks, run against the test database."""

    @pytest.fixture(autouse=True)
    def _use_test_session(self, async_session):
        with (
            patch(
                "vilo.platform.subscriptions.tasks.AsyncSessionLocal",
                return_value=async_session,
            ),
            patch(
                "vilo.platform.subscriptions.tasks._dispose_engine", new=AsyncMock()
            ) as dispose,
        ):
            self.dispose = dispose
            yield

    async def test_run_daily_jobs_serialises_results(self, make_subscription):
        from vilo.platform.subscriptions.tasks import _run_daily_jobs

        await make_subscription(status=SubscriptionStatus.TRIAL, ends_in=timedelta(days=-1))

        results = await _run_daily_jobs(TriggerSource.SCHEDULED, None)

        assert results["trials"]["status"] == "completed"
        assert results["trials"]["results"]["job"] == "process_expiring_trials"
        assert len(results["trials"]["results"]["expired"]) == 1
        assert isinstance(results["trials"]["started_at"], str)
        self.dispose.assert_awaited_once()

    async def test_start_and_resolve(self, async_session, make_subscription):
        from vilo.platform.subscriptions.tasks import _resolve_grace_period, _start_grace_period

        subscription = await make_subscription()

        grace_period_id = await _start_grace_period(
            subscription.id, subscription.tenant_id, "card_declined"
        )
        assert grace_period_id is not None

        result = await _resolve_grace_period(grace_period_id, ResolutionMethod.AUTO_PAYMENT)

        assert result["success"] is True
        grace_period = await async_session.get(GracePeriod, grace_period_id, populate_existing=True)
        assert grace_period.status == "resolved_paid"
