#!/usr/bin/env python
"""
CLI management commands for Vilo subscription automation.
"""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import click
from pydantic import BaseModel

from vilo.platform.db import AsyncSessionLocal, create_all_tables_async
from vilo.platform.logging import setup_logging
from vilo.platform.subscriptions.admin_actions import SubscriptionAdminActions
from vilo.platform.subscriptions.grace_periods import GracePeriodManager
from vilo.platform.subscriptions.jobs import run_daily_jobs, run_hourly_jobs
from vilo.platform.subscriptions.models import (
    GracePeriodStatus,
    ResolutionMethod,
    TriggerSource,
)
from vilo.platform.subscriptions.schemas import AdminActionResult


class AsyncSessionManager(Protocol):
    async def __aenter__(self) -> Any: ...  # pragma: no cover - protocol definition
    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any: ...  # pragma: no cover


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], AsyncSessionManager]
    create_tables: Callable[[], Awaitable[None]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        session_factory=AsyncSessionLocal,
        create_tables=create_all_tables_async,
    )


def _echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(indent=2))


def _finish_action(result: AdminActionResult) -> None:
    """Print an admin action result and exit non-zero when it failed."""
    _echo_model(result)
    if not result:
        sys.exit(1)


@click.group()
def cli() -> None:
    """Vilo subscription automation CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the automation tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.create_tables())
    click.echo("Database initialized successfully!")


# ==========================================
# Job runners
# ==========================================


@cli.command()
@click.option("--admin-id", default=None, help="Admin triggering the run")
def run_daily(admin_id: str | None) -> None:
    """Run the trial, grace period and usage limit sweeps now."""
    deps = _get_cli_dependencies()

    async def _run() -> None:
        async with deps.session_factory() as session:
            results = await run_daily_jobs(
                session, triggered_by=TriggerSource.MANUAL, admin_id=admin_id
            )
        for name, result in results.items():
            click.echo(f"{name}: {result.status.value}")
            _echo_model(result)

    asyncio.run(_run())


@cli.command()
@click.option("--admin-id", default=None, help="Admin triggering the run")
def run_hourly(admin_id: str | None) -> None:
    """Run the renewal reminder sweep now."""
    deps = _get_cli_dependencies()

    async def _run() -> None:
        async with deps.session_factory() as session:
            results = await run_hourly_jobs(
                session, triggered_by=TriggerSource.MANUAL, admin_id=admin_id
            )
        for name, result in results.items():
            click.echo(f"{name}: {result.status.value}")
            _echo_model(result)

    asyncio.run(_run())


# ==========================================
# Subscription actions
# ==========================================


@cli.command()
@click.argument("subscription_id", type=click.UUID)
@click.option("--days", type=int, required=True, help="Days to add to the trial")
@click.option("--admin-id", required=True, help="Admin performing the action")
@click.option("--reason", default=None, help="Reason recorded on the event")
def extend_trial(subscription_id: UUID, days: int, admin_id: str, reason: str | None) -> None:
    """Extend a trial subscription."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await SubscriptionAdminActions(session).extend_trial(
                subscription_id, days, admin_id, reason
            )

    _finish_action(asyncio.run(_run()))


@cli.command()
@click.argument("subscription_id", type=click.UUID)
@click.option("--plan-id", type=click.UUID, required=True, help="Plan to move to")
@click.option("--admin-id", required=True, help="Admin performing the action")
@click.option("--reason", default=None, help="Reason recorded on the event")
def change_plan(subscription_id: UUID, plan_id: UUID, admin_id: str, reason: str | None) -> None:
    """Move a subscription to another plan."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await SubscriptionAdminActions(session).change_plan(
                subscription_id, plan_id, admin_id, reason
            )

    _finish_action(asyncio.run(_run()))


@cli.command()
@click.argument("subscription_id", type=click.UUID)
@click.option("--admin-id", required=True, help="Admin performing the action")
@click.option("--reason", default=None, help="Reason recorded on the event")
@click.option("--immediate", is_flag=True, help="Cancel now instead of at period end")
def cancel_subscription(
    subscription_id: UUID, admin_id: str, reason: str | None, immediate: bool
) -> None:
    """Cancel a subscription."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await SubscriptionAdminActions(session).cancel_subscription(
                subscription_id, admin_id, reason, immediate=immediate
            )

    _finish_action(asyncio.run(_run()))


# ==========================================
# Grace periods
# ==========================================


@cli.command()
@click.argument("subscription_id", type=click.UUID)
@click.option("--tenant-id", required=True, help="Tenant owning the subscription")
@click.option("--failure-reason", default=None, help="Gateway failure reason")
def start_grace_period(subscription_id: UUID, tenant_id: str, failure_reason: str | None) -> None:
    """Open a grace period after a failed payment."""
    deps = _get_cli_dependencies()

    async def _run() -> UUID | None:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).start_grace_period(
                subscription_id, tenant_id, failure_reason
            )

    grace_period_id = asyncio.run(_run())
    if grace_period_id is None:
        click.echo("Grace period could not be started")
        sys.exit(1)
    click.echo(f"Grace period {grace_period_id} active")


@cli.command()
@click.argument("grace_period_id", type=click.UUID)
@click.option(
    "--method",
    type=click.Choice(
        [
            ResolutionMethod.AUTO_PAYMENT.value,
            ResolutionMethod.MANUAL_PAYMENT.value,
            ResolutionMethod.ADMIN_OVERRIDE.value,
        ]
    ),
    default=ResolutionMethod.MANUAL_PAYMENT.value,
    show_default=True,
    help="How the payment was settled",
)
@click.option("--admin-id", default=None, help="Admin performing the action")
def resolve_grace_period(grace_period_id: UUID, method: str, admin_id: str | None) -> None:
    """Mark a grace period as paid and reactivate the subscription."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).resolve_grace_period(
                grace_period_id, ResolutionMethod(method), admin_id
            )

    _finish_action(asyncio.run(_run()))


@cli.command()
@click.argument("grace_period_id", type=click.UUID)
@click.option("--days", type=int, required=True, help="Days to add (1-30)")
@click.option("--admin-id", required=True, help="Admin performing the action")
@click.option("--reason", default=None, help="Reason recorded on the event")
def extend_grace_period(
    grace_period_id: UUID, days: int, admin_id: str, reason: str | None
) -> None:
    """Extend an active grace period."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).extend_grace_period(
                grace_period_id, days, admin_id, reason
            )

    _finish_action(asyncio.run(_run()))


@cli.command()
@click.argument("grace_period_id", type=click.UUID)
@click.option("--admin-id", required=True, help="Admin performing the action")
@click.option("--reason", default=None, help="Reason recorded on the event")
def cancel_grace_period(grace_period_id: UUID, admin_id: str, reason: str | None) -> None:
    """Close a grace period unpaid and cancel the subscription."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).cancel_grace_period(
                grace_period_id, admin_id, reason
            )

    _finish_action(asyncio.run(_run()))


@cli.command()
@click.argument("grace_period_id", type=click.UUID)
@click.option("--admin-id", required=True, help="Admin performing the action")
def retry_payment(grace_period_id: UUID, admin_id: str) -> None:
    """Retry the payment for a grace period immediately."""
    deps = _get_cli_dependencies()

    async def _run() -> AdminActionResult:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).retry_payment_now(grace_period_id, admin_id)

    _finish_action(asyncio.run(_run()))


@cli.command()
def grace_stats() -> None:
    """Show grace period statistics."""
    deps = _get_cli_dependencies()

    async def _run() -> BaseModel:
        async with deps.session_factory() as session:
            return await GracePeriodManager(session).get_stats()

    _echo_model(asyncio.run(_run()))


@cli.command()
@click.option(
    "--status",
    type=click.Choice([status.value for status in GracePeriodStatus]),
    default=None,
    help="Only show grace periods in this status",
)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
def list_grace_periods(status: str | None, limit: int, offset: int) -> None:
    """List grace periods, newest first."""
    deps = _get_cli_dependencies()

    async def _run() -> None:
        async with deps.session_factory() as session:
            rows = await GracePeriodManager(session).list_grace_periods(
                GracePeriodStatus(status) if status else None, limit=limit, offset=offset
            )
        if not rows:
            click.echo("No grace periods found")
            return
        for row in rows:
            click.echo(
                f"{row.id}  {row.status:<18} tenant={row.tenant_id} "
                f"ends={row.ends_at.isoformat()} retries={row.retry_count}/{row.max_retries}"
            )

    asyncio.run(_run())


if __name__ == "__main__":
    cli()
