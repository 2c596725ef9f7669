"""
Subscription automation.

Provides:
- Trial ending notices and trial expiry
- Payment grace periods with scheduled retries
- Renewal reminders
- Usage limit warnings
- Manual admin actions with an audit trail of subscription events

Celery tasks live in ``vilo.platform.subscriptions.tasks`` and are not
imported here.
"""

from vilo.platform.subscriptions.admin_actions import SubscriptionAdminActions
from vilo.platform.subscriptions.events import SubscriptionEventLogger
from vilo.platform.subscriptions.exceptions import (
    GracePeriodNotFoundError,
    InvalidGracePeriodStateError,
    InvalidStateError,
    InvalidSubscriptionStateError,
    PlanNotFoundError,
    ResourceNotFoundError,
    SubscriptionAutomationError,
    SubscriptionNotFoundError,
)
from vilo.platform.subscriptions.grace_periods import (
    GracePeriodManager,
    PaymentGateway,
    PaymentRetryOutcome,
)
from vilo.platform.subscriptions.jobs import run_daily_jobs, run_hourly_jobs
from vilo.platform.subscriptions.renewals import RenewalReminderProcessor
from vilo.platform.subscriptions.schemas import (
    AdminActionFailure,
    AdminActionResult,
    AutomationRunResult,
    AutomationSettingsSnapshot,
    GracePeriodStats,
)
from vilo.platform.subscriptions.settings_provider import PlatformSettingsProvider
from vilo.platform.subscriptions.trials import TrialProcessor
from vilo.platform.subscriptions.usage_limits import UsageLimitMonitor

__all__ = [
    # Services
    "TrialProcessor",
    "GracePeriodManager",
    "RenewalReminderProcessor",
    "UsageLimitMonitor",
    "SubscriptionAdminActions",
    "SubscriptionEventLogger",
    "PlatformSettingsProvider",
    "run_daily_jobs",
    "run_hourly_jobs",
    # Payment gateway hook
    "PaymentGateway",
    "PaymentRetryOutcome",
    # Results
    "AdminActionFailure",
    "AdminActionResult",
    "AutomationRunResult",
    "AutomationSettingsSnapshot",
    "GracePeriodStats",
    # Exceptions
    "SubscriptionAutomationError",
    "ResourceNotFoundError",
    "SubscriptionNotFoundError",
    "GracePeriodNotFoundError",
    "PlanNotFoundError",
    "InvalidStateError",
    "InvalidSubscriptionStateError",
    "InvalidGracePeriodStateError",
]
