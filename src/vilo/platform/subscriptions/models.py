"""
Database models for subscription lifecycle automation.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base, StrictTenantMixin, TimestampMixin, UTCDateTime, utcnow


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a tenant subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class GracePeriodStatus(str, Enum):
    """Grace period states. Everything except ACTIVE is terminal."""

    ACTIVE = "active"
    EXPIRED = "expired"
    RESOLVED_PAID = "resolved_paid"
    RESOLVED_CANCELLED = "resolved_cancelled"


class ResolutionMethod(str, Enum):
    """How a grace period was closed."""

    AUTO_PAYMENT = "auto_payment"
    MANUAL_PAYMENT = "manual_payment"
    ADMIN_OVERRIDE = "admin_override"
    EXPIRED = "expired"
    ADMIN_CANCELLED = "admin_cancelled"


class SubscriptionEventType(str, Enum):
    """Kinds of lifecycle events written to the event log."""

    TRIAL_ENDING_SOON = "trial_ending_soon"
    TRIAL_EXPIRED = "trial_expired"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_EXTENDED = "grace_period_extended"
    GRACE_PERIOD_ENDED = "grace_period_ended"
    PAYMENT_RETRY = "payment_retry"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    RENEWAL_REMINDER = "renewal_reminder"
    MANUALLY_EXTENDED = "manually_extended"
    PLAN_UPGRADED = "plan_upgraded"
    PLAN_DOWNGRADED = "plan_downgraded"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class NotificationType(str, Enum):
    """Delivery hint for the external notifier."""

    EMAIL = "email"
    IN_APP = "in_app"
    BOTH = "both"
    NONE = "none"


class AutomationRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class TriggerSource(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class LimitThresholdType(str, Enum):
    WARNING = "warning"
    LIMIT = "limit"
    EXCEEDED = "exceeded"


class LimitAction(str, Enum):
    NOTIFICATION_SENT = "notification_sent"
    FEATURE_DISABLED = "feature_disabled"


# ==========================================
# Read-mostly collaborators
# ==========================================


class SubscriptionPlan(Base, TimestampMixin):
    """Plan catalogue entry. ``limits`` holds keys such as ``max_rooms``."""

    __tablename__ = "subscription_plans"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    limits: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Room(Base, TimestampMixin, StrictTenantMixin):
    """Bookable room owned by a tenant. Only counted here."""

    __tablename__ = "rooms"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class TenantMember(Base, TimestampMixin, StrictTenantMixin):
    """Team member of a tenant. Only active members count towards limits."""

    __tablename__ = "tenant_members"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")


class PlatformSetting(Base):
    """Runtime-tunable key/value setting."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_secret: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )


# ==========================================
# Automation-owned tables
# ==========================================


class Subscription(Base, TimestampMixin, StrictTenantMixin):
    """A tenant's subscription. Never hard-deleted."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    plan_id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.TRIAL.value, index=True
    )
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_tenant_subscriptions_status_ends_at", "status", "ends_at"),)


class GracePeriod(Base, TimestampMixin, StrictTenantMixin):
    """Payment grace period following a failed charge."""

    __tablename__ = "payment_grace_periods"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True), ForeignKey("tenant_subscriptions.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=GracePeriodStatus.ACTIVE.value
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    original_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_failure_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    retry_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Resolution
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolution_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    __table_args__ = (
        Index("ix_payment_grace_periods_status_ends_at", "status", "ends_at"),
        Index("ix_payment_grace_periods_status_next_retry", "status", "next_retry_at"),
        # One open grace period per subscription
        Index(
            "uq_payment_grace_periods_active_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class SubscriptionEvent(Base, StrictTenantMixin):
    """Append-only lifecycle event."""

    __tablename__ = "subscription_events"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True), ForeignKey("tenant_subscriptions.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Notification hand-off
    notification_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationType.NONE.value
    )
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    is_automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "ix_subscription_events_subscription_type_created",
            "subscription_id",
            "event_type",
            "created_at",
        ),
        # A trial gets at most one ending-soon notice
        Index(
            "uq_subscription_events_trial_ending_soon",
            "subscription_id",
            unique=True,
            postgresql_where=text("event_type = 'trial_ending_soon'"),
            sqlite_where=text("event_type = 'trial_ending_soon'"),
        ),
    )


class AutomationRun(Base):
    """One execution of an automation job."""

    __tablename__ = "automation_runs"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AutomationRunStatus.RUNNING.value
    )
    triggered_by: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TriggerSource.SCHEDULED.value
    )
    triggered_by_admin: Mapped[str | None] = mapped_column(String(255), nullable=True)

    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class UsageLimitEvent(Base, StrictTenantMixin):
    """Record of a tenant crossing a plan usage threshold."""

    __tablename__ = "usage_limit_events"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID | None] = mapped_column(
        PostgresUUID(as_uuid=True), ForeignKey("tenant_subscriptions.id"), nullable=True
    )
    limit_type: Mapped[str] = mapped_column(String(50), nullable=False)
    current_usage: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_value: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_percent: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    threshold_type: Mapped[str] = mapped_column(String(20), nullable=False)
    action_taken: Mapped[str | None] = mapped_column(String(30), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "ix_usage_limit_events_dedup",
            "tenant_id",
            "limit_type",
            "threshold_type",
            "created_at",
        ),
    )


__all__ = [
    "SubscriptionStatus",
    "GracePeriodStatus",
    "ResolutionMethod",
    "SubscriptionEventType",
    "NotificationType",
    "AutomationRunStatus",
    "TriggerSource",
    "LimitThresholdType",
    "LimitAction",
    "SubscriptionPlan",
    "Room",
    "TenantMember",
    "PlatformSetting",
    "Subscription",
    "GracePeriod",
    "SubscriptionEvent",
    "AutomationRun",
    "UsageLimitEvent",
]
