"""Create the invoices table with reminder escalation fields."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=True),
        sa.Column("user_email", sa.String(length=320), nullable=True),
        sa.Column("invoice_number", sa.String(length=64), nullable=True),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("reminder_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminders_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("reminder_level >= 0 AND reminder_level <= 3", name="ck_invoices_reminder_level"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_workspace_id", "invoices", ["workspace_id"], unique=False)
    op.create_index("ix_invoices_status_due_date", "invoices", ["status", "due_date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_invoices_status_due_date", table_name="invoices")
    op.drop_index("ix_invoices_workspace_id", table_name="invoices")
    op.drop_table("invoices")
