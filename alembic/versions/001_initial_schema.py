"""Initial schema with events, vouchers, jobs and recurring_tasks tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_kind AS ENUM ('issue_and_notify', 'process_only', 'email_only');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_state AS ENUM ('waiting', 'active', 'completed', 'failed', 'delayed');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_backoff_type AS ENUM ('fixed', 'exponential');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Events: quota counter and edit lease
    op.create_table(
        "events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("max_quantity", sa.Integer, nullable=False),
        sa.Column("issued_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("editing_by", sa.String(255), nullable=True),
        sa.Column("edit_lock_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("max_quantity > 0", name="ck_events_max_quantity_positive"),
        sa.CheckConstraint(
            "issued_count >= 0 AND issued_count <= max_quantity",
            name="ck_events_issued_within_quota",
        ),
    )
    op.create_index("ix_events_edit_lock_at", "events", ["edit_lock_at"])

    # Vouchers: globally unique codes
    op.create_table(
        "vouchers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("issued_to", sa.String(255), nullable=False),
        sa.Column("is_used", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.UniqueConstraint("code", name="uq_vouchers_code"),
    )
    op.create_index("ix_vouchers_event_id", "vouchers", ["event_id"])

    # Jobs: notification lane
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "kind",
            postgresql.ENUM(
                "issue_and_notify", "process_only", "email_only",
                name="job_kind", create_type=False,
            ),
            nullable=False,
        ),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "state",
            postgresql.ENUM(
                "waiting", "active", "completed", "failed", "delayed",
                name="job_state", create_type=False,
            ),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column("attempts_made", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "backoff_type",
            postgresql.ENUM("fixed", "exponential", name="job_backoff_type", create_type=False),
            nullable=False,
            server_default="exponential",
        ),
        sa.Column("backoff_delay_ms", sa.Integer, nullable=False, server_default="2000"),
        sa.Column("backoff_factor", sa.Float, nullable=False, server_default="2.0"),
        sa.Column("available_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "attempts_made >= 0 AND attempts_made <= max_attempts",
            name="ck_jobs_attempts_bounded",
        ),
    )

    op.create_index("ix_jobs_state", "jobs", ["state"])
    # Index for efficient queue polling
    op.create_index("ix_jobs_reserve", "jobs", ["state", "available_at"])
    # Index for stalled job checks
    op.create_index("ix_jobs_lease_expiry", "jobs", ["state", "lease_expires_at"])
    # Index for the retention sweep
    op.create_index("ix_jobs_finished", "jobs", ["state", "finished_at"])

    # Recurring task run markers
    op.create_table(
        "recurring_tasks",
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("interval_seconds", sa.Float, nullable=False),
        sa.Column("last_run_at", sa.DateTime, nullable=False),
        sa.Column("last_run_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("recurring_tasks")

    op.drop_index("ix_jobs_finished", table_name="jobs")
    op.drop_index("ix_jobs_lease_expiry", table_name="jobs")
    op.drop_index("ix_jobs_reserve", table_name="jobs")
    op.drop_index("ix_jobs_state", table_name="jobs")
    op.drop_table("jobs")

    op.drop_index("ix_vouchers_event_id", table_name="vouchers")
    op.drop_table("vouchers")

    op.drop_index("ix_events_edit_lock_at", table_name="events")
    op.drop_table("events")

    op.execute("DROP TYPE IF EXISTS job_backoff_type")
    op.execute("DROP TYPE IF EXISTS job_state")
    op.execute("DROP TYPE IF EXISTS job_kind")
