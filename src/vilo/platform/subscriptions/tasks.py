"""
Celery tasks for subscription automation.

Each task runs its coroutine on a fresh event loop with its own session and
returns a JSON-serialisable dict.
"""

import asyncio
from typing import Any
from uuid import UUID

import structlog

from ..celery_app import celery_app
from ..db import AsyncSessionLocal, get_async_engine
from .grace_periods import GracePeriodManager
from .jobs import run_daily_jobs, run_hourly_jobs
from .models import ResolutionMethod, TriggerSource

logger = structlog.get_logger(__name__)


async def _dispose_engine() -> None:
    # Pooled connections are bound to the loop that asyncio.run is about to close
    await get_async_engine().dispose()


async def _run_daily_jobs(triggered_by: TriggerSource, admin_id: str | None) -> dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            results = await run_daily_jobs(session, triggered_by=triggered_by, admin_id=admin_id)
    finally:
        await _dispose_engine()
    return {name: result.model_dump(mode="json") for name, result in results.items()}


async def _run_hourly_jobs(triggered_by: TriggerSource, admin_id: str | None) -> dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            results = await run_hourly_jobs(session, triggered_by=triggered_by, admin_id=admin_id)
    finally:
        await _dispose_engine()
    return {name: result.model_dump(mode="json") for name, result in results.items()}


async def _start_grace_period(
    subscription_id: UUID, tenant_id: str, failure_reason: str | None
) -> UUID | None:
    try:
        async with AsyncSessionLocal() as session:
            return await GracePeriodManager(session).start_grace_period(
                subscription_id, tenant_id, failure_reason
            )
    finally:
        await _dispose_engine()


async def _resolve_grace_period(
    grace_period_id: UUID, resolution_method: ResolutionMethod
) -> dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            result = await GracePeriodManager(session).resolve_grace_period(
                grace_period_id, resolution_method
            )
    finally:
        await _dispose_engine()
    return result.model_dump(mode="json")


@celery_app.task(name="subscriptions.run_daily_jobs")
def run_daily_jobs_task(
    triggered_by: str = TriggerSource.SCHEDULED.value, admin_id: str | None = None
) -> dict[str, Any]:
    """Periodic task: trial, grace period and usage limit sweeps."""
    results = asyncio.run(_run_daily_jobs(TriggerSource(triggered_by), admin_id))
    logger.info(
        "Daily subscription jobs task finished",
        statuses={name: result["status"] for name, result in results.items()},
    )
    return results


@celery_app.task(name="subscriptions.run_hourly_jobs")
def run_hourly_jobs_task(
    triggered_by: str = TriggerSource.SCHEDULED.value, admin_id: str | None = None
) -> dict[str, Any]:
    """Periodic task: renewal reminders."""
    return asyncio.run(_run_hourly_jobs(TriggerSource(triggered_by), admin_id))


@celery_app.task(name="subscriptions.start_grace_period")
def start_grace_period_task(
    subscription_id: str, tenant_id: str, failure_reason: str | None = None
) -> dict[str, Any]:
    """Open a grace period for a failed payment reported by the gateway webhook."""
    grace_period_id = asyncio.run(
        _start_grace_period(UUID(subscription_id), tenant_id, failure_reason)
    )
    if grace_period_id is None:
        return {"status": "not_started", "subscription_id": subscription_id}
    return {
        "status": "started",
        "subscription_id": subscription_id,
        "grace_period_id": str(grace_period_id),
    }


@celery_app.task(name="subscriptions.resolve_grace_period")
def resolve_grace_period_task(
    grace_period_id: str, resolution_method: str = ResolutionMethod.AUTO_PAYMENT.value
) -> dict[str, Any]:
    """Close a grace period after the gateway reports a successful payment."""
    return asyncio.run(
        _resolve_grace_period(UUID(grace_period_id), ResolutionMethod(resolution_method))
    )


__all__ = [
    "run_daily_jobs_task",
    "run_hourly_jobs_task",
    "start_grace_period_task",
    "resolve_grace_period_task",
]
