"""create_subscription_automation_tables

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-01-12 09:00:00.000000

"""

from datetime import UTC, datetime

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "4f1c2a9e7b30"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


# Default automation settings, editable at runtime through the admin console
DEFAULT_SETTINGS = [
    ("trial_ending_notice_days", "3", "Days before trial end to send the ending-soon notice"),
    ("grace_period_days", "7", "Length of the payment grace period in days"),
    ("payment_retry_intervals", "[1, 3, 7]", "Days between payment retries (JSON list)"),
    ("limit_warning_threshold", "0.8", "Usage ratio that triggers a limit warning"),
    ("auto_cancel_after_grace", "true", "Cancel subscriptions when the grace period expires"),
    ("downgrade_to_free_on_cancel", "true", "Move cancelled tenants to the free plan"),
    ("renewal_reminder_days", "7", "Days before renewal to send a reminder"),
]


def upgrade() -> None:
    """Create subscription automation tables and seed default settings."""

    # Read-mostly collaborators
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("limits", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "rooms",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_rooms_tenant_id", "rooms", ["tenant_id"])

    op.create_table(
        "tenant_members",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_tenant_members_tenant_id", "tenant_members", ["tenant_id"])

    platform_settings = op.create_table(
        "platform_settings",
        sa.Column("key", sa.String(100), primary_key=True, nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_secret", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Subscriptions
    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "plan_id", sa.Uuid(), sa.ForeignKey("subscription_plans.id"), nullable=False
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenant_subscriptions_tenant_id", "tenant_subscriptions", ["tenant_id"])
    op.create_index("ix_tenant_subscriptions_status", "tenant_subscriptions", ["status"])
    op.create_index(
        "ix_tenant_subscriptions_status_ends_at", "tenant_subscriptions", ["status", "ends_at"]
    )

    # Grace periods
    op.create_table(
        "payment_grace_periods",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("tenant_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_failure_reason", sa.Text(), nullable=True),
        sa.Column("original_failure_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_history", sa.JSON(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_method", sa.String(30), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_grace_periods_tenant_id", "payment_grace_periods", ["tenant_id"])
    op.create_index(
        "ix_payment_grace_periods_status_ends_at", "payment_grace_periods", ["status", "ends_at"]
    )
    op.create_index(
        "ix_payment_grace_periods_status_next_retry",
        "payment_grace_periods",
        ["status", "next_retry_at"],
    )
    op.create_index(
        "uq_payment_grace_periods_active_subscription",
        "payment_grace_periods",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    # Lifecycle events
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("tenant_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("notification_type", sa.String(20), nullable=False),
        sa.Column("notification_sent", sa.Boolean(), nullable=False),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_automated", sa.Boolean(), nullable=False),
        sa.Column("triggered_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_subscription_events_tenant_id", "subscription_events", ["tenant_id"])
    op.create_index(
        "ix_subscription_events_subscription_type_created",
        "subscription_events",
        ["subscription_id", "event_type", "created_at"],
    )
    op.create_index(
        "uq_subscription_events_trial_ending_soon",
        "subscription_events",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("event_type = 'trial_ending_soon'"),
        sqlite_where=sa.text("event_type = 'trial_ending_soon'"),
    )

    # Job runs
    op.create_table(
        "automation_runs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(20), nullable=False),
        sa.Column("triggered_by_admin", sa.String(255), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.Column("items_succeeded", sa.Integer(), nullable=False),
        sa.Column("items_failed", sa.Integer(), nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_automation_runs_job_name", "automation_runs", ["job_name"])

    # Usage limits
    op.create_table(
        "usage_limit_events",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("tenant_subscriptions.id"),
            nullable=True,
        ),
        sa.Column("limit_type", sa.String(50), nullable=False),
        sa.Column("current_usage", sa.Integer(), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=False),
        sa.Column("usage_percent", sa.Numeric(7, 2), nullable=False),
        sa.Column("threshold_type", sa.String(20), nullable=False),
        sa.Column("action_taken", sa.String(30), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_usage_limit_events_tenant_id", "usage_limit_events", ["tenant_id"])
    op.create_index(
        "ix_usage_limit_events_dedup",
        "usage_limit_events",
        ["tenant_id", "limit_type", "threshold_type", "created_at"],
    )

    # Seed automation settings
    seeded_at = datetime.now(UTC)
    op.bulk_insert(
        platform_settings,
        [
            {
                "key": key,
                "value": value,
                "category": "automation",
                "description": description,
                "is_secret": False,
                "updated_at": seeded_at,
            }
            for key, value, description in DEFAULT_SETTINGS
        ],
    )


def downgrade() -> None:
    """Drop subscription automation tables."""
    op.drop_table("usage_limit_events")
    op.drop_table("automation_runs")
    op.drop_table("subscription_events")
    op.drop_table("payment_grace_periods")
    op.drop_table("tenant_subscriptions")
    op.drop_table("platform_settings")
    op.drop_table("tenant_members")
    op.drop_table("rooms")
    op.drop_table("subscription_plans")
