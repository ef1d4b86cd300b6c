"""Create the aggregate reminder run log."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("triggered_by", sa.String(length=16), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_breakdown_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("errors_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("triggered_by IN ('manual', 'cron', 'dev')", name="ck_reminder_runs_triggered_by"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_reminder_runs_ran_at", "reminder_runs", ["ran_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reminder_runs_ran_at", table_name="reminder_runs")
    op.drop_table("reminder_runs")
