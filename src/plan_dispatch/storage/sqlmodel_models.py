"""SQLModel ORM tables for dispatcher storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

ACTIVE_JOB_STATUSES_SQL = "status IN ('pending', 'processing')"


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_generation_jobs_user_active",
            "user_id",
            unique=True,
            sqlite_where=text(ACTIVE_JOB_STATUSES_SQL),
        ),
        Index("idx_generation_jobs_queue", "status", "created_at"),
        Index("idx_generation_jobs_expiry", "expires_at"),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_generation_jobs_retry_budget",
        ),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    fingerprint: str = Field(index=True)
    content_class: str = Field(index=True)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    result_ref: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_code: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJobEvent(SQLModel, table=True):
    __tablename__ = "generation_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationAttempt(SQLModel, table=True):
    __tablename__ = "generation_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "attempt_no", name="uq_generation_attempts_job_attempt_no"),
        Index("idx_generation_attempts_credential_time", "credential_id", "started_at"),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    credential_id: str | None = None
    masked_key: str | None = None
    constraint_level: int = 0
    max_output_tokens: int | None = None
    outcome: str = Field(index=True)
    error_code: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    latency_ms: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResultCacheEntry(SQLModel, table=True):
    __tablename__ = "result_cache"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_result_cache_expiry", "expires_at"),)

    fingerprint: str = Field(primary_key=True)
    content_class: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    hit_count: int = Field(default=0)
    last_accessed_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    model_used: str | None = None
    generation_time_ms: int | None = None
    tokens_used: int | None = None
