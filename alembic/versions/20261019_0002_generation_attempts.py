"""Add per-attempt generation telemetry table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_attempts",
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("masked_key", sa.String(), nullable=True),
        sa.Column("constraint_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_output_tokens", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint(
            "job_id",
            "attempt_no",
            name="uq_generation_attempts_job_attempt_no",
        ),
    )
    op.create_index(
        "ix_generation_attempts_job_id",
        "generation_attempts",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_attempts_outcome",
        "generation_attempts",
        ["outcome"],
        unique=False,
    )
    op.create_index(
        "ix_generation_attempts_error_code",
        "generation_attempts",
        ["error_code"],
        unique=False,
    )
    op.create_index(
        "idx_generation_attempts_credential_time",
        "generation_attempts",
        ["credential_id", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_generation_attempts_credential_time", table_name="generation_attempts")
    op.drop_index("ix_generation_attempts_error_code", table_name="generation_attempts")
    op.drop_index("ix_generation_attempts_outcome", table_name="generation_attempts")
    op.drop_index("ix_generation_attempts_job_id", table_name="generation_attempts")
    op.drop_table("generation_attempts")
