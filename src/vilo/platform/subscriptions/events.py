"""
Subscription event log.

Every lifecycle change is recorded as one append-only row. Writing an event
is best effort: failures are logged and reported as ``None`` so the caller
decides whether the surrounding work still counts.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow
from .models import SubscriptionEvent, SubscriptionEventType
from .schemas import SubscriptionEventCreate

logger = structlog.get_logger(__name__)


class SubscriptionEventLogger:
    """Writes and queries ``subscription_events``."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def log(self, event: SubscriptionEventCreate) -> UUID | None:
        """
        Record a lifecycle event.

        The insert runs in a savepoint, so a failure only discards the event
        and leaves the caller's pending changes intact.

        Args:
            event: Event to record

        Returns:
            The new event id, or None if the insert failed
        """
        row = SubscriptionEvent(
            id=uuid4(),
            subscription_id=event.subscription_id,
            tenant_id=event.tenant_id,
            event_type=event.event_type,
            previous_status=event.previous_status,
            new_status=event.new_status,
            details=event.details.to_json(),
            notification_type=event.notification_type.value,
            is_automated=event.is_automated,
            triggered_by=event.triggered_by,
            created_at=self.clock(),
        )

        try:
            async with self.db.begin_nested():
                self.db.add(row)
        except Exception as e:
            logger.error(
                "Failed to log subscription event",
                subscription_id=str(event.subscription_id),
                event_type=event.event_type,
                error=str(e),
            )
            return None

        logger.info(
            "Subscription event logged",
            event_id=str(row.id),
            subscription_id=str(event.subscription_id),
            tenant_id=event.tenant_id,
            event_type=event.event_type,
            is_automated=event.is_automated,
        )
        return row.id

    async def has_event(
        self,
        subscription_id: UUID,
        event_type: SubscriptionEventType,
        since: datetime | None = None,
    ) -> bool:
        """Check whether an event of this type exists, optionally since a point in time."""
        conditions = [
            SubscriptionEvent.subscription_id == subscription_id,
            SubscriptionEvent.event_type == event_type.value,
        ]
        if since is not None:
            conditions.append(SubscriptionEvent.created_at >= since)

        result = await self.db.execute(
            select(SubscriptionEvent.id).where(and_(*conditions)).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_events(
        self,
        subscription_id: UUID,
        event_type: SubscriptionEventType | None = None,
    ) -> list[SubscriptionEvent]:
        """Events for a subscription, oldest first."""
        query = select(SubscriptionEvent).where(
            SubscriptionEvent.subscription_id == subscription_id
        )
        if event_type is not None:
            query = query.where(SubscriptionEvent.event_type == event_type.value)
        result = await self.db.execute(query.order_by(SubscriptionEvent.created_at))
        return list(result.scalars().all())


__all__ = ["SubscriptionEventLogger"]
