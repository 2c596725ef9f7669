"""
Pydantic models for subscription automation.

Event details are a tagged union keyed by ``event_type`` so that each event
kind carries exactly the fields it needs.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import AutomationRunStatus, NotificationType

# ==========================================
# Event details
# ==========================================


class _EventDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_json(self) -> dict[str, Any]:
        """Payload stored in ``subscription_events.details``."""
        return self.model_dump(mode="json", exclude={"event_type"}, exclude_none=True)


class TrialEndingSoonDetails(_EventDetails):
    event_type: Literal["trial_ending_soon"] = "trial_ending_soon"
    ends_at: datetime
    days_remaining: int


class TrialExpiredDetails(_EventDetails):
    event_type: Literal["trial_expired"] = "trial_expired"
    ends_at: datetime | None = None
    downgraded_to_free: bool


class GracePeriodStartedDetails(_EventDetails):
    event_type: Literal["grace_period_started"] = "grace_period_started"
    grace_period_id: UUID
    ends_at: datetime
    failure_reason: str | None = None
    max_retries: int
    next_retry_at: datetime | None = None


class PaymentRetryDetails(_EventDetails):
    event_type: Literal["payment_retry"] = "payment_retry"
    grace_period_id: UUID
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None = None
    result: str
    manual: bool = False


class GracePeriodEndedDetails(_EventDetails):
    event_type: Literal["grace_period_ended"] = "grace_period_ended"
    grace_period_id: UUID
    action: Literal["cancelled", "expired"]
    reason: str | None = None


class GracePeriodExtendedDetails(_EventDetails):
    event_type: Literal["grace_period_extended"] = "grace_period_extended"
    grace_period_id: UUID
    extension_days: int
    new_ends_at: datetime
    reason: str | None = None


class PaymentSucceededDetails(_EventDetails):
    event_type: Literal["payment_succeeded"] = "payment_succeeded"
    grace_period_id: UUID
    resolution_method: str


class RenewalReminderDetails(_EventDetails):
    event_type: Literal["renewal_reminder"] = "renewal_reminder"
    ends_at: datetime
    days_remaining: int


class ManuallyExtendedDetails(_EventDetails):
    event_type: Literal["manually_extended"] = "manually_extended"
    extension_days: int
    new_ends_at: datetime
    reason: str | None = None


class PlanChangedDetails(_EventDetails):
    event_type: Literal["plan_upgraded", "plan_downgraded"]
    old_plan: str
    new_plan: str
    reason: str | None = None


class SubscriptionCancelledDetails(_EventDetails):
    event_type: Literal["subscription_cancelled"] = "subscription_cancelled"
    immediate: bool
    cancel_at_period_end: bool
    reason: str | None = None


EventDetails = Annotated[
    Union[
        TrialEndingSoonDetails,
        TrialExpiredDetails,
        GracePeriodStartedDetails,
        PaymentRetryDetails,
        GracePeriodEndedDetails,
        GracePeriodExtendedDetails,
        PaymentSucceededDetails,
        RenewalReminderDetails,
        ManuallyExtendedDetails,
        PlanChangedDetails,
        SubscriptionCancelledDetails,
    ],
    Field(discriminator="event_type"),
]


class SubscriptionEventCreate(BaseModel):
    """Input for the event logger."""

    subscription_id: UUID
    tenant_id: str
    details: EventDetails
    previous_status: str | None = None
    new_status: str | None = None
    notification_type: NotificationType = NotificationType.NONE
    is_automated: bool = True
    triggered_by: str | None = None

    @property
    def event_type(self) -> str:
        return self.details.event_type


# ==========================================
# Settings snapshot
# ==========================================


class AutomationSettingsSnapshot(BaseModel):
    """Automation settings read once per run."""

    model_config = ConfigDict(frozen=True)

    trial_ending_notice_days: int = 3
    grace_period_days: int = 7
    payment_retry_intervals: tuple[int, ...] = (1, 3, 7)
    limit_warning_threshold: float = 0.8
    auto_cancel_after_grace: bool = True
    downgrade_to_free_on_cancel: bool = True
    renewal_reminder_days: int = 7


# ==========================================
# Run results
# ==========================================


class ItemError(BaseModel):
    """Failure of a single item inside a sweep."""

    id: str
    error: str


class SweepResults(BaseModel):
    errors: list[ItemError] = Field(default_factory=list)
    deadline_reached: bool = False


class TrialSweepResults(SweepResults):
    job: Literal["process_expiring_trials"] = "process_expiring_trials"
    notified: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)


class GraceSweepResults(SweepResults):
    job: Literal["process_grace_periods"] = "process_grace_periods"
    expired: list[str] = Field(default_factory=list)
    retried: list[str] = Field(default_factory=list)
    resolved: list[str] = Field(default_factory=list)


class RenewalSweepResults(SweepResults):
    job: Literal["process_renewals"] = "process_renewals"
    reminded: list[str] = Field(default_factory=list)


class UsageLimitHit(BaseModel):
    tenant_id: str
    subscription_id: str
    limit_type: str
    current_usage: int
    limit_value: int
    usage_percent: float


class UsageSweepResults(SweepResults):
    job: Literal["check_usage_limits"] = "check_usage_limits"
    warnings: list[UsageLimitHit] = Field(default_factory=list)
    limits: list[UsageLimitHit] = Field(default_factory=list)


JobResults = Annotated[
    Union[TrialSweepResults, GraceSweepResults, RenewalSweepResults, UsageSweepResults],
    Field(discriminator="job"),
]


class AutomationRunResult(BaseModel):
    """Outcome of one automation job, mirrored into ``automation_runs``."""

    run_id: UUID | None = None
    job_name: str
    status: AutomationRunStatus
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    results: JobResults
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


# ==========================================
# Manual action results
# ==========================================


class AdminActionFailure(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    STORE_ERROR = "store_error"


class AdminActionResult(BaseModel):
    """Result of a manual admin action. Truthy only on success."""

    success: bool
    failure: AdminActionFailure | None = None
    message: str | None = None
    event_id: UUID | None = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, event_id: UUID | None = None, message: str | None = None) -> "AdminActionResult":
        return cls(success=True, event_id=event_id, message=message)

    @classmethod
    def fail(cls, failure: AdminActionFailure, message: str) -> "AdminActionResult":
        return cls(success=False, failure=failure, message=message)


# ==========================================
# Grace period reporting
# ==========================================


class GracePeriodStats(BaseModel):
    """Aggregate view over payment grace periods."""

    active: int = 0
    expired: int = 0
    resolved_paid: int = 0
    resolved_cancelled: int = 0
    expiring_today: int = 0
    avg_days_in_grace: float = 0.0
    resolution_rate: float = Field(0.0, description="Percent resolved as paid over 30 days")


class GracePeriodSummary(BaseModel):
    """Listing row for a grace period."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    tenant_id: str
    status: str
    started_at: datetime
    ends_at: datetime
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_method: str | None = None


__all__ = [
    "TrialEndingSoonDetails",
    "TrialExpiredDetails",
    "GracePeriodStartedDetails",
    "PaymentRetryDetails",
    "GracePeriodEndedDetails",
    "GracePeriodExtendedDetails",
    "PaymentSucceededDetails",
    "RenewalReminderDetails",
    "ManuallyExtendedDetails",
    "PlanChangedDetails",
    "SubscriptionCancelledDetails",
    "EventDetails",
    "SubscriptionEventCreate",
    "AutomationSettingsSnapshot",
    "ItemError",
    "SweepResults",
    "TrialSweepResults",
    "GraceSweepResults",
    "RenewalSweepResults",
    "UsageLimitHit",
    "UsageSweepResults",
    "AutomationRunResult",
    "AdminActionFailure",
    "AdminActionResult",
    "GracePeriodStats",
    "GracePeriodSummary",
]
