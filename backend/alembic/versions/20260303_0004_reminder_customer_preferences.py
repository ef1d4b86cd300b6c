"""Add per-customer reminder pauses and unsubscribes."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260303_0004"
down_revision = "20260302_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_customer_preferences",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("workspace_id", sa.String(length=64), nullable=True),
        sa.Column("user_email", sa.String(length=320), nullable=True),
        sa.Column("customer_email", sa.String(length=320), nullable=False),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("unsubscribed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "workspace_id IS NOT NULL OR user_email IS NOT NULL",
            name="ck_reminder_customer_preferences_owner",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_reminder_customer_preferences_customer_email",
        "reminder_customer_preferences",
        ["customer_email"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_reminder_customer_preferences_customer_email", table_name="reminder_customer_preferences")
    op.drop_table("reminder_customer_preferences")
