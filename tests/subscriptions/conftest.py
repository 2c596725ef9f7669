"""Test fixtures for subscription automation."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from vilo.platform.db import Base
from vilo.platform.subscriptions.locks import KeyedLock
from vilo.platform.subscriptions.models import (
    GracePeriod,
    GracePeriodStatus,
    PlatformSetting,
    Room,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantMember,
)
from vilo.platform.subscriptions.schemas import AutomationSettingsSnapshot

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock passed to services in place of ``utcnow``."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest_asyncio.fixture(scope="function")
async def async_session():
    """Create an async database session for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_maker() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks():
    """Private lock registry so tests never share state through the global one."""
    return KeyedLock()


@pytest.fixture
def snapshot():
    return AutomationSettingsSnapshot()


@pytest.fixture
def test_tenant_id():
    """Test tenant ID."""
    return f"tenant-{uuid4().hex[:8]}"


@pytest.fixture
def admin_id():
    return "admin-1"


# ==========================================
# Factories
# ==========================================


@pytest.fixture
def make_plan(async_session):
    async def _make_plan(
        slug: str | None = None,
        price: str = "49.00",
        limits: dict[str, Any] | None = None,
    ) -> SubscriptionPlan:
        slug = slug or f"plan-{uuid4().hex[:6]}"
        plan = SubscriptionPlan(
            id=uuid4(),
            slug=slug,
            name=slug.title(),
            price=Decimal(price),
            limits=limits if limits is not None else {"max_rooms": 10, "max_team_members": 5},
            is_active=True,
        )
        async_session.add(plan)
        await async_session.commit()
        return plan

    return _make_plan


@pytest.fixture
def make_subscription(async_session, make_plan, test_tenant_id, clock):
    async def _make_subscription(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        ends_in: timedelta | None = timedelta(days=30),
        plan: SubscriptionPlan | None = None,
        tenant_id: str | None = None,
        auto_renew: bool = True,
    ) -> Subscription:
        plan = plan or await make_plan()
        subscription = Subscription(
            id=uuid4(),
            tenant_id=tenant_id or test_tenant_id,
            plan_id=plan.id,
            status=status.value,
            ends_at=clock() + ends_in if ends_in is not None else None,
            auto_renew=auto_renew,
            cancel_at_period_end=False,
        )
        async_session.add(subscription)
        await async_session.commit()
        return subscription

    return _make_subscription


@pytest.fixture
def make_grace_period(async_session, clock):
    async def _make_grace_period(
        subscription: Subscription,
        status: GracePeriodStatus = GracePeriodStatus.ACTIVE,
        started_ago: timedelta = timedelta(days=0),
        ends_in: timedelta = timedelta(days=7),
        next_retry_in: timedelta | None = timedelta(days=1),
        retry_count: int = 0,
        max_retries: int = 3,
        resolution_method: str | None = None,
    ) -> GracePeriod:
        now = clock()
        grace_period = GracePeriod(
            id=uuid4(),
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            status=status.value,
            started_at=now - started_ago,
            ends_at=now + ends_in,
            original_failure_reason="card_declined",
            original_failure_at=now - started_ago,
            retry_count=retry_count,
            max_retries=max_retries,
            next_retry_at=now + next_retry_in if next_retry_in is not None else None,
            retry_history=[],
            resolved_at=None if status == GracePeriodStatus.ACTIVE else now,
            resolution_method=resolution_method,
            created_at=now - started_ago,
            updated_at=now,
        )
        async_session.add(grace_period)
        await async_session.commit()
        return grace_period

    return _make_grace_period


@pytest.fixture
def add_rooms(async_session):
    async def _add_rooms(tenant_id: str, count: int) -> None:
        for i in range(count):
            async_session.add(Room(id=uuid4(), tenant_id=tenant_id, name=f"Room {i + 1}"))
        await async_session.commit()

    return _add_rooms


@pytest.fixture
def add_members(async_session):
    async def _add_members(tenant_id: str, count: int, status: str = "active") -> None:
        for _ in range(count):
            async_session.add(
                TenantMember(
                    id=uuid4(), tenant_id=tenant_id, user_id=f"user-{uuid4().hex}", status=status
                )
            )
        await async_session.commit()

    return _add_members


@pytest.fixture
def set_platform_setting(async_session):
    async def _set(key: str, value: str | None) -> None:
        async_session.add(PlatformSetting(key=key, value=value, category="automation"))
        await async_session.commit()

    return _set
