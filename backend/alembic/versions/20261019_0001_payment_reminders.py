"""Create the payment_reminders table and its pending-slot uniqueness index."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("day_offset", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_token", sa.String(length=64), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_payment_reminders_invoice_id", "payment_reminders", ["invoice_id"], unique=False)
    op.create_index("ix_payment_reminders_scheduled_for", "payment_reminders", ["scheduled_for"], unique=False)
    op.create_index("ix_payment_reminders_status", "payment_reminders", ["status"], unique=False)
    op.create_index(
        "ux_payment_reminders_pending_slot",
        "payment_reminders",
        ["invoice_id", "kind", "day_offset", "channel"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index("ux_payment_reminders_pending_slot", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_status", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_scheduled_for", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_invoice_id", table_name="payment_reminders")
    op.drop_table("payment_reminders")
