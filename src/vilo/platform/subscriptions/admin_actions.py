"""
Manual admin actions on subscriptions.

Every action validates its preconditions, mutates the subscription, writes a
non-automated event and commits. Callers get an ``AdminActionResult`` instead
of an exception.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow
from .events import SubscriptionEventLogger
from .exceptions import (
    InvalidActionArgumentError,
    InvalidStateError,
    InvalidSubscriptionStateError,
    PlanNotFoundError,
    ResourceNotFoundError,
    SubscriptionNotFoundError,
)
from .locks import KeyedLock, automation_locks
from .models import Subscription, SubscriptionPlan, SubscriptionStatus
from .schemas import (
    AdminActionFailure,
    AdminActionResult,
    ManuallyExtendedDetails,
    PlanChangedDetails,
    SubscriptionCancelledDetails,
    SubscriptionEventCreate,
)

logger = structlog.get_logger(__name__)

_CLOSED_STATUSES = {SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value}


async def perform_admin_action(
    db: AsyncSession,
    action: str,
    operation: Callable[[], Awaitable[UUID | None]],
    locks: KeyedLock | None = None,
    lock_key: tuple[Any, ...] | None = None,
    **context: Any,
) -> AdminActionResult:
    """
    Run an admin operation and commit it, translating failures into a result.

    Args:
        db: Session the operation writes through
        action: Action name for logging
        operation: Coroutine factory returning the id of the logged event
        locks: Keyed lock registry, defaults to the process-wide one
        lock_key: Key held for the duration of the operation and commit
        **context: Extra fields for log records

    Returns:
        AdminActionResult with the event id on success
    """
    log = logger.bind(action=action, **{k: str(v) for k, v in context.items()})
    registry = locks or automation_locks

    try:
        if lock_key is None:
            event_id = await operation()
            await db.commit()
        else:
            async with registry.hold(*lock_key):
                event_id = await operation()
                await db.commit()
    except ResourceNotFoundError as e:
        await db.rollback()
        log.warning("Admin action target not found", error=e.to_dict())
        return AdminActionResult.fail(AdminActionFailure.NOT_FOUND, e.message)
    except InvalidStateError as e:
        await db.rollback()
        log.warning("Admin action rejected", error=e.to_dict())
        return AdminActionResult.fail(AdminActionFailure.INVALID_STATE, e.message)
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Admin action failed in store", error=str(e), exc_info=True)
        return AdminActionResult.fail(AdminActionFailure.STORE_ERROR, str(e))
    except Exception as e:
        await db.rollback()
        log.error("Admin action failed unexpectedly", error=str(e), exc_info=True)
        return AdminActionResult.fail(AdminActionFailure.STORE_ERROR, str(e))

    log.info("Admin action applied", event_id=str(event_id) if event_id else None)
    return AdminActionResult.ok(event_id)


class SubscriptionAdminActions:
    """Manual trial extension, plan change and cancellation."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLock | None = None,
    ):
        self.db = db
        self.clock = clock
        self.locks = locks or automation_locks
        self.events = SubscriptionEventLogger(db, clock)

    async def _load(self, subscription_id: UUID) -> Subscription:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def extend_trial(
        self, subscription_id: UUID, days: int, admin_id: str, reason: str | None = None
    ) -> AdminActionResult:
        """Push a trial's end date out by ``days``."""

        async def operation() -> UUID | None:
            if days < 1:
                raise InvalidActionArgumentError("Extension must be at least one day", days=days)
            subscription = await self._load(subscription_id)
            if subscription.status != SubscriptionStatus.TRIAL.value:
                raise InvalidSubscriptionStateError(
                    "Only trials can be extended",
                    current_state=subscription.status,
                    required=SubscriptionStatus.TRIAL.value,
                )

            base = subscription.ends_at or self.clock()
            new_ends_at = base + timedelta(days=days)
            subscription.ends_at = new_ends_at

            return await self.events.log(
                SubscriptionEventCreate(
                    subscription_id=subscription.id,
                    tenant_id=subscription.tenant_id,
                    details=ManuallyExtendedDetails(
                        extension_days=days, new_ends_at=new_ends_at, reason=reason
                    ),
                    previous_status=subscription.status,
                    new_status=subscription.status,
                    is_automated=False,
                    triggered_by=admin_id,
                )
            )

        return await perform_admin_action(
            self.db,
            "extend_trial",
            operation,
            locks=self.locks,
            lock_key=("subscription", subscription_id),
            subscription_id=subscription_id,
            admin_id=admin_id,
        )

    async def change_plan(
        self, subscription_id: UUID, new_plan_id: UUID, admin_id: str, reason: str | None = None
    ) -> AdminActionResult:
        """Move a subscription to another plan; a higher price counts as an upgrade."""

        async def operation() -> UUID | None:
            subscription = await self._load(subscription_id)
            if subscription.status in _CLOSED_STATUSES:
                raise InvalidSubscriptionStateError(
                    "Cannot change the plan of a closed subscription",
                    current_state=subscription.status,
                )
            new_plan = await self.db.get(SubscriptionPlan, new_plan_id)
            if new_plan is None:
                raise PlanNotFoundError(new_plan_id)
            if new_plan.id == subscription.plan_id:
                raise InvalidSubscriptionStateError(
                    "Subscription is already on this plan", current_state=subscription.status
                )
            old_plan = await self.db.get(SubscriptionPlan, subscription.plan_id)

            old_price = old_plan.price if old_plan is not None else Decimal("0")
            is_upgrade = (new_plan.price or Decimal("0")) > (old_price or Decimal("0"))
            subscription.plan_id = new_plan.id

            return await self.events.log(
                SubscriptionEventCreate(
                    subscription_id=subscription.id,
                    tenant_id=subscription.tenant_id,
                    details=PlanChangedDetails(
                        event_type="plan_upgraded" if is_upgrade else "plan_downgraded",
                        old_plan=old_plan.slug if old_plan is not None else "unknown",
                        new_plan=new_plan.slug,
                        reason=reason,
                    ),
                    previous_status=subscription.status,
                    new_status=subscription.status,
                    is_automated=False,
                    triggered_by=admin_id,
                )
            )

        return await perform_admin_action(
            self.db,
            "change_plan",
            operation,
            locks=self.locks,
            lock_key=("subscription", subscription_id),
            subscription_id=subscription_id,
            new_plan_id=new_plan_id,
            admin_id=admin_id,
        )

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        admin_id: str,
        reason: str | None = None,
        immediate: bool = False,
    ) -> AdminActionResult:
        """
        Cancel a subscription now, or at the end of the current period.

        A deferred cancellation only turns off auto-renew and flags
        ``cancel_at_period_end``; the status stays as it was.
        """

        async def operation() -> UUID | None:
            subscription = await self._load(subscription_id)
            previous_status = subscription.status
            if previous_status in _CLOSED_STATUSES:
                raise InvalidSubscriptionStateError(
                    "Subscription is already closed", current_state=previous_status
                )

            if immediate:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancelled_at = self.clock()
                subscription.cancellation_reason = reason
            else:
                subscription.auto_renew = False
                subscription.cancel_at_period_end = True

            return await self.events.log(
                SubscriptionEventCreate(
                    subscription_id=subscription.id,
                    tenant_id=subscription.tenant_id,
                    details=SubscriptionCancelledDetails(
                        immediate=immediate,
                        cancel_at_period_end=not immediate,
                        reason=reason,
                    ),
                    previous_status=previous_status,
                    new_status=subscription.status,
                    is_automated=False,
                    triggered_by=admin_id,
                )
            )

        return await perform_admin_action(
            self.db,
            "cancel_subscription",
            operation,
            locks=self.locks,
            lock_key=("subscription", subscription_id),
            subscription_id=subscription_id,
            admin_id=admin_id,
            immediate=immediate,
        )


__all__ = ["perform_admin_action", "SubscriptionAdminActions"]
