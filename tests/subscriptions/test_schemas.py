"""Tests for subscription automation schemas."""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError

from vilo.platform.subscriptions.schemas import (
    AdminActionFailure,
    AdminActionResult,
    AutomationRunResult,
    AutomationSettingsSnapshot,
    GracePeriodEndedDetails,
    PlanChangedDetails,
    SubscriptionEventCreate,
    TrialExpiredDetails,
    UsageSweepResults,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class TestEventDetails:
    def test_details_resolved_from_event_type(self):
        event = SubscriptionEventCreate(
            subscription_id=uuid4(),
            tenant_id="tenant-1",
            details={"event_type": "trial_expired", "downgraded_to_free": True},
        )

        assert isinstance(event.details, TrialExpiredDetails)
        assert event.event_type == "trial_expired"

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValidationError):
            SubscriptionEventCreate(
                subscription_id=uuid4(),
                tenant_id="tenant-1",
                details={"event_type": "subscription_paused"},
            )

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            TrialExpiredDetails(downgraded_to_free=False, coupon="SPRING")

    def test_to_json_drops_tag_and_empty_fields(self):
        details = GracePeriodEndedDetails(grace_period_id=uuid4(), action="expired")

        payload = details.to_json()

        assert "event_type" not in payload
        assert "reason" not in payload
        assert payload["action"] == "expired"
        assert isinstance(payload["grace_period_id"], str)

    def test_plan_change_needs_explicit_direction(self):
        with pytest.raises(ValidationError):
            PlanChangedDetails(old_plan="starter", new_plan="pro")

        upgraded = PlanChangedDetails(
            event_type="plan_upgraded", old_plan="starter", new_plan="pro"
        )
        assert upgraded.to_json() == {"old_plan": "starter", "new_plan": "pro"}


class TestAutomationSettingsSnapshot:
    def test_frozen(self):
        snapshot = AutomationSettingsSnapshot()

        with pytest.raises(ValidationError):
            snapshot.grace_period_days = 30


class TestAutomationRunResult:
    def test_results_resolved_from_job(self):
        result = AutomationRunResult.model_validate(
            {
                "job_name": "check_usage_limits",
                "status": "partial",
                "results": {"job": "check_usage_limits", "deadline_reached": True},
                "started_at": NOW,
            }
        )

        assert isinstance(result.results, UsageSweepResults)
        assert result.results.deadline_reached is True

    def test_json_dump(self):
        result = AutomationRunResult(
            job_name="check_usage_limits",
            status="completed",
            results=UsageSweepResults(),
            started_at=NOW,
        )

        dumped = result.model_dump(mode="json")

        assert dumped["status"] == "completed"
        assert dumped["results"]["job"] == "check_usage_limits"
        assert dumped["started_at"].startswith("2026-03-10T12:00:00")


class TestAdminActionResult:
    def test_truthiness(self):
        assert AdminActionResult.ok()
        assert not AdminActionResult.fail(AdminActionFailure.INVALID_STATE, "Not a trial")

    def test_fail_carries_reason(self):
        result = AdminActionResult.fail(AdminActionFailure.NOT_FOUND, "Subscription not found")

        assert result.success is False
        assert result.failure == AdminActionFailure.NOT_FOUND
        assert result.message == "Subscription not found"
