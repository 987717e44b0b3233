"""Generation jobs, job events and result cache baseline."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("content_class", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_generation_jobs_retry_budget",
        ),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"], unique=False)
    op.create_index(
        "ix_generation_jobs_fingerprint",
        "generation_jobs",
        ["fingerprint"],
        unique=False,
    )
    op.create_index(
        "ix_generation_jobs_content_class",
        "generation_jobs",
        ["content_class"],
        unique=False,
    )
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"], unique=False)
    op.create_index(
        "ix_generation_jobs_error_code",
        "generation_jobs",
        ["error_code"],
        unique=False,
    )
    op.create_index(
        "ix_generation_jobs_worker_id",
        "generation_jobs",
        ["worker_id"],
        unique=False,
    )
    op.create_index(
        "idx_generation_jobs_queue",
        "generation_jobs",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_generation_jobs_expiry",
        "generation_jobs",
        ["expires_at"],
        unique=False,
    )
    # One pending/processing job per user, enforced by storage rather than callers.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_generation_jobs_user_active
            ON generation_jobs (user_id)
            WHERE status IN ('pending', 'processing')
            """,
        ),
    )

    op.create_table(
        "generation_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_job_events_job_id",
        "generation_job_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_job_events_event_type",
        "generation_job_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_generation_job_events_job_time",
        "generation_job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "result_cache",
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("content_class", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("generation_time_ms", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("fingerprint"),
    )
    op.create_index(
        "ix_result_cache_content_class",
        "result_cache",
        ["content_class"],
        unique=False,
    )
    op.create_index("idx_result_cache_expiry", "result_cache", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_result_cache_expiry", table_name="result_cache")
    op.drop_index("ix_result_cache_content_class", table_name="result_cache")
    op.drop_table("result_cache")
    op.drop_index("idx_generation_job_events_job_time", table_name="generation_job_events")
    op.drop_index("ix_generation_job_events_event_type", table_name="generation_job_events")
    op.drop_index("ix_generation_job_events_job_id", table_name="generation_job_events")
    op.drop_table("generation_job_events")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_generation_jobs_user_active"))
    op.drop_index("idx_generation_jobs_expiry", table_name="generation_jobs")
    op.drop_index("idx_generation_jobs_queue", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_worker_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_error_code", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_content_class", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_fingerprint", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_user_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
