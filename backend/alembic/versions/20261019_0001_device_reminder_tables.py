"""Create owner, device, reminder run and reminder attempt tables."""

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
        "owners",
        sa.Column("owner_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index("ix_owners_email", "owners", ["email"], unique=False)

    op.create_table(
        "devices",
        sa.Column("device_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("serial_number", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("last_serviced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("interval_months", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stage1_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stage2_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["owners.owner_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("device_id"),
        sa.CheckConstraint("interval_months IN (6, 9, 12)", name="ck_devices_interval_months"),
    )
    op.create_index("ix_devices_owner_id", "devices", ["owner_id"], unique=False)

    op.create_table(
        "reminder_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("triggered_by", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("evaluated_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stage1_sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stage2_sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("persist_failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_reminder_runs_run_at", "reminder_runs", ["run_at"], unique=False)
    op.create_index("ix_reminder_runs_status", "reminder_runs", ["status"], unique=False)

    op.create_table(
        "reminder_attempts",
        sa.Column("attempt_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("address_masked", sa.String(length=320), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["reminder_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("attempt_id"),
    )
    op.create_index("ix_reminder_attempts_run_id", "reminder_attempts", ["run_id"], unique=False)
    op.create_index("ix_reminder_attempts_device_id", "reminder_attempts", ["device_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reminder_attempts_device_id", table_name="reminder_attempts")
    op.drop_index("ix_reminder_attempts_run_id", table_name="reminder_attempts")
    op.drop_table("reminder_attempts")
    op.drop_index("ix_reminder_runs_status", table_name="reminder_runs")
    op.drop_index("ix_reminder_runs_run_at", table_name="reminder_runs")
    op.drop_table("reminder_runs")
    op.drop_index("ix_devices_owner_id", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_owners_email", table_name="owners")
    op.drop_table("owners")
