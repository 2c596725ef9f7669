"""
Job runners invoked by the scheduler, the CLI and admin tooling.

The daily runner loads one settings snapshot and runs its jobs in sequence;
no job depends on another, they are just kept off the store at the same time.
"""

from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow
from .grace_periods import GracePeriodManager, PaymentGateway
from .models import TriggerSource
from .renewals import RenewalReminderProcessor
from .schemas import AutomationRunResult, AutomationSettingsSnapshot
from .settings_provider import PlatformSettingsProvider
from .trials import TrialProcessor
from .usage_limits import UsageLimitMonitor

logger = structlog.get_logger(__name__)


async def run_daily_jobs(
    db: AsyncSession,
    triggered_by: TriggerSource = TriggerSource.SCHEDULED,
    admin_id: str | None = None,
    snapshot: AutomationSettingsSnapshot | None = None,
    clock: Callable[[], datetime] = utcnow,
    payment_gateway: PaymentGateway | None = None,
) -> dict[str, AutomationRunResult]:
    """
    Run the trial, grace period and usage limit sweeps.

    Returns:
        Results keyed ``trials``, ``grace_periods`` and ``usage_limits``
    """
    if snapshot is None:
        snapshot = await PlatformSettingsProvider(db).load_snapshot()

    logger.info("Starting daily subscription jobs", triggered_by=triggered_by.value)

    results = {
        "trials": await TrialProcessor(db, snapshot=snapshot, clock=clock).process_expiring_trials(
            triggered_by, admin_id
        ),
        "grace_periods": await GracePeriodManager(
            db, snapshot=snapshot, clock=clock, payment_gateway=payment_gateway
        ).process_grace_periods(triggered_by, admin_id),
        "usage_limits": await UsageLimitMonitor(
            db, snapshot=snapshot, clock=clock
        ).check_usage_limits(triggered_by, admin_id),
    }

    logger.info(
        "Daily subscription jobs finished",
        **{name: result.status.value for name, result in results.items()},
    )
    return results


async def run_hourly_jobs(
    db: AsyncSession,
    triggered_by: TriggerSource = TriggerSource.SCHEDULED,
    admin_id: str | None = None,
    snapshot: AutomationSettingsSnapshot | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, AutomationRunResult]:
    """
    Run the renewal reminder sweep.

    Returns:
        Results keyed ``renewals``
    """
    logger.info("Starting hourly subscription jobs", triggered_by=triggered_by.value)

    results = {
        "renewals": await RenewalReminderProcessor(
            db, snapshot=snapshot, clock=clock
        ).process_renewals(triggered_by, admin_id),
    }

    logger.info("Hourly subscription jobs finished", renewals=results["renewals"].status.value)
    return results


__all__ = ["run_daily_jobs", "run_hourly_jobs"]
