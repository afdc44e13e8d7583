"""create_reminder_engine_tables

Revision ID: 3f1c2a7b9d40
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "3f1c2a7b9d40"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create subscription, payment, preference and delivery-state tables."""

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("billing_cycle", sa.String(20), nullable=False, server_default="monthly"),
        sa.Column("billing_interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("billing_cycle_day", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("first_billing_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "use_default_notifications", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=True),
        sa.Column("reminder_intervals", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "billing_interval BETWEEN 1 AND 12", name="ck_subscriptions_billing_interval"
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_subscriptions_end_after_start"
        ),
    )
    op.create_index("ix_subscriptions_user", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])

    op.create_table(
        "payment_records",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(50),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="paid"),
        sa.Column("payment_method", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_records_subscription_status",
        "payment_records",
        ["subscription_id", "status"],
    )
    op.create_index(
        "ix_payment_records_ordering",
        "payment_records",
        ["subscription_id", "payment_date", "created_at"],
    )

    op.create_table(
        "notification_preferences",
        sa.Column("user_id", sa.String(50), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, server_default=""),
        sa.Column("notification_email", sa.String(255), nullable=True),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_reminder_intervals", sa.JSON(), nullable=False),
        sa.Column("notification_time", sa.Time(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "reminder_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("subscription_id", sa.String(50), nullable=False),
        sa.Column("interval_days", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("user_id", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscription_id",
            "interval_days",
            "due_date",
            name="uq_reminder_deliveries_key",
        ),
    )
    op.create_index(
        "ix_reminder_deliveries_status",
        "reminder_deliveries",
        ["status", "last_attempt_at"],
    )


def downgrade() -> None:
    """Drop the reminder engine tables."""
    op.drop_index("ix_reminder_deliveries_status", table_name="reminder_deliveries")
    op.drop_table("reminder_deliveries")
    op.drop_table("notification_preferences")
    op.drop_index("ix_payment_records_ordering", table_name="payment_records")
    op.drop_index("ix_payment_records_subscription_status", table_name="payment_records")
    op.drop_table("payment_records")
    op.drop_index("ix_subscriptions_end_date", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user", table_name="subscriptions")
    op.drop_table("subscriptions")
