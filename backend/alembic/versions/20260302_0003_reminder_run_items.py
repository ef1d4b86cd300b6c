"""Add workspace scoping to reminder runs and per-item delivery tracking."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260302_0003"
down_revision = "20260301_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("reminder_runs") as batch:
        batch.add_column(sa.Column("workspace_id", sa.String(length=64), nullable=True))
        batch.add_column(sa.Column("actor_email", sa.String(length=320), nullable=True))
        batch.add_column(sa.Column("attempted_count", sa.Integer(), nullable=False, server_default="0"))
    op.execute("UPDATE reminder_runs SET attempted_count = sent_count + error_count")
    op.create_index("ix_reminder_runs_workspace_id", "reminder_runs", ["workspace_id"], unique=False)

    op.create_table(
        "reminder_run_items",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=True),
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_code", sa.String(length=80), nullable=True),
        sa.Column("error_type", sa.String(length=80), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "provider IN ('resend', 'smtp', 'stub', 'unknown')",
            name="ck_reminder_run_items_provider",
        ),
        sa.CheckConstraint("status IN ('sent', 'error')", name="ck_reminder_run_items_status"),
        sa.ForeignKeyConstraint(["run_id"], ["reminder_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reminder_run_items_run_id", "reminder_run_items", ["run_id"], unique=False)
    op.create_index(
        "ix_reminder_run_items_provider_message",
        "reminder_run_items",
        ["provider", "provider_message_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_reminder_run_items_provider_message", table_name="reminder_run_items")
    op.drop_index("ix_reminder_run_items_run_id", table_name="reminder_run_items")
    op.drop_table("reminder_run_items")

    op.drop_index("ix_reminder_runs_workspace_id", table_name="reminder_runs")
    with op.batch_alter_table("reminder_runs") as batch:
        batch.drop_column("attempted_count")
        batch.drop_column("actor_email")
        batch.drop_column("workspace_id")
