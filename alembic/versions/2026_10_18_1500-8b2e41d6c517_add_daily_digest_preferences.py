"""add_daily_digest_preferences

Revision ID: 8b2e41d6c517
Revises: 3f1c2a7b9d40
Create Date: 2026-10-18 15:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "8b2e41d6c517"
down_revision = "3f1c2a7b9d40"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add the daily digest opt-in and its last-sent stamp."""
    op.add_column(
        "notification_preferences",
        sa.Column(
            "daily_notification_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
    )
    op.add_column(
        "notification_preferences",
        sa.Column("last_daily_notification_sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_notification_preferences_daily",
        "notification_preferences",
        ["daily_notification_enabled", "notification_time"],
    )


def downgrade() -> None:
    """Remove the daily digest columns."""
    op.drop_index("ix_notification_preferences_daily", table_name="notification_preferences")
    op.drop_column("notification_preferences", "last_daily_notification_sent_at")
    op.drop_column("notification_preferences", "daily_notification_enabled")
