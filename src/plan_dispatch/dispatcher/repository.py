"""Persistent job store for generation jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from plan_dispatch.dispatcher.errors import ActiveJobConflictError, JobNotFoundError
from plan_dispatch.dispatcher.fingerprint import canonicalize
from plan_dispatch.dispatcher.models import (
    ACTIVE_JOB_STATUSES,
    AttemptOutcome,
    AttemptRecordWrite,
    AttemptView,
    ConflictPolicy,
    ErrorCode,
    GenerationRequest,
    JobDetails,
    JobEventView,
    JobStatus,
    JobSubmission,
    JobView,
)
from plan_dispatch.storage.alembic_runner import upgrade_head
from plan_dispatch.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from plan_dispatch.storage.sqlmodel_models import (
    GenerationAttempt,
    GenerationJob,
    GenerationJobEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_JOB_RETENTION = timedelta(days=7)
_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_JOB_STATUSES)


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional ``UPDATE ... WHERE status = <expected>``
    checked through ``rowcount``, so concurrent workers and operators never
    overwrite each other's transitions.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        job_retention: timedelta = DEFAULT_JOB_RETENTION,
        error_message_max_chars: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.job_retention = job_retention
        self.error_message_max_chars = error_message_max_chars
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_or_reuse(
        self,
        *,
        user_id: str,
        fingerprint: str,
        request: GenerationRequest,
        policy: ConflictPolicy = ConflictPolicy.REJECT,
    ) -> JobSubmission:
        """Return the user's active job for this fingerprint or create a new one.

        A different active fingerprint is resolved by `policy`. Losing an insert
        race on the single-active-job index re-reads the winner.
        """

        while True:
            now = self._clock()
            replaced_job_id: str | None = None
            with Session(self.engine) as session:
                active = self._active_job_row(session=session, user_id=user_id)
                if active is not None:
                    if active.fingerprint == fingerprint:
                        return JobSubmission(job=_to_job_view(active), created=False)
                    if policy is ConflictPolicy.REJECT:
                        raise ActiveJobConflictError(
                            user_id=user_id,
                            active_job_id=active.job_id,
                            active_fingerprint=active.fingerprint,
                        )
                    previous = JobStatus(active.status)
                    result = session.exec(
                        sa_update(GenerationJob)
                        .where(
                            col(GenerationJob.job_id) == active.job_id,
                            col(GenerationJob.status) == previous.value,
                        )
                        .values(
                            status=JobStatus.CANCELLED.value,
                            error_message="Replaced by a newer request.",
                            completed_at=to_db_datetime(now),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    self._add_event(
                        session=session,
                        job_id=active.job_id,
                        event_type="cancelled",
                        status_from=previous,
                        status_to=JobStatus.CANCELLED,
                        details={"reason": "replaced", "replacement_fingerprint": fingerprint},
                    )
                    replaced_job_id = active.job_id

                job_id = str(uuid4())
                row = GenerationJob(
                    job_id=job_id,
                    user_id=user_id,
                    fingerprint=fingerprint,
                    content_class=request.content_class,
                    status=JobStatus.PENDING.value,
                    retry_count=0,
                    max_retries=request.max_retries,
                    request_json=_request_json(request),
                    created_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + self.job_retention),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="submitted",
                    status_from=None,
                    status_to=JobStatus.PENDING,
                    details={
                        "content_class": request.content_class,
                        "fingerprint": fingerprint,
                        "max_retries": request.max_retries,
                    },
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if self._active_job_row(session=session, user_id=user_id) is None:
                        raise
                    logger.info(
                        "Lost active-job race for user %s; re-reading the winner",
                        user_id,
                    )
                    continue
                session.refresh(row)
                return JobSubmission(
                    job=_to_job_view(row),
                    created=True,
                    replaced_job_id=replaced_job_id,
                )

    def record_cache_hit(
        self,
        *,
        user_id: str,
        fingerprint: str,
        request: GenerationRequest,
        payload: Any,
    ) -> JobView:
        """Persist an already-completed job served from the result cache."""

        now = self._clock()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job_id,
                user_id=user_id,
                fingerprint=fingerprint,
                content_class=request.content_class,
                status=JobStatus.COMPLETED.value,
                retry_count=0,
                max_retries=request.max_retries,
                request_json=_request_json(request),
                result_ref=fingerprint,
                result_json=_dump_json(payload),
                created_at=to_db_datetime(now),
                started_at=to_db_datetime(now),
                completed_at=to_db_datetime(now),
                expires_at=to_db_datetime(now + self.job_retention),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cache_hit",
                status_from=None,
                status_to=JobStatus.COMPLETED,
                details={"fingerprint": fingerprint},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Atomically move one pending job to processing."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.PROCESSING,
                details={"worker_id": worker_id},
            )
            session.commit()
            claimed = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one()
            return _to_job_view(claimed)

    def claim_next_pending(self, *, worker_id: str) -> JobView | None:
        """Claim the oldest pending job, or None when the queue is empty."""

        while True:
            with Session(self.engine) as session:
                candidate_id = session.exec(
                    select(GenerationJob.job_id)
                    .where(GenerationJob.status == JobStatus.PENDING.value)
                    .order_by(col(GenerationJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
            if candidate_id is None:
                return None
            claimed = self.claim(job_id=candidate_id, worker_id=worker_id)
            if claimed is not None:
                return claimed

    def touch(self, *, job_id: str) -> bool:
        """Update heartbeat for a processing job."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def is_active(self, *, job_id: str) -> bool:
        with Session(self.engine) as session:
            status = session.exec(
                select(GenerationJob.status).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        return status in _ACTIVE_VALUES

    def record_retry(self, *, job_id: str) -> int | None:
        """Spend one retry; None when the budget is exhausted or the job left processing."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                    col(GenerationJob.retry_count) < col(GenerationJob.max_retries),
                )
                .values(
                    retry_count=col(GenerationJob.retry_count) + 1,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            retry_count = session.exec(
                select(GenerationJob.retry_count).where(GenerationJob.job_id == job_id),
            ).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PROCESSING,
                details={"retry_count": retry_count},
            )
            session.commit()
            return retry_count

    def complete(self, *, job_id: str, result_ref: str, payload: Any) -> bool:
        """Mark a processing job as completed; False when it already left processing."""

        now = to_db_datetime(self._clock())
        return self._transition(
            job_id=job_id,
            from_statuses=(JobStatus.PROCESSING,),
            to_status=JobStatus.COMPLETED,
            values={
                "result_ref": result_ref,
                "result_json": _dump_json(payload),
                "error_code": None,
                "error_message": None,
                "completed_at": now,
                "heartbeat_at": now,
            },
            event_type="completed",
            details={"result_ref": result_ref},
        )

    def fail(self, *, job_id: str, error_code: ErrorCode, message: str) -> bool:
        """Mark a pending/processing job as failed."""

        now = to_db_datetime(self._clock())
        summary = _truncate(message, self.error_message_max_chars)
        return self._transition(
            job_id=job_id,
            from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
            to_status=JobStatus.FAILED,
            values={
                "error_code": error_code.value,
                "error_message": summary,
                "completed_at": now,
            },
            event_type="failed",
            details={"error_code": error_code.value, "error_message": summary},
        )

    def cancel(self, *, job_id: str) -> bool:
        """Cancel a pending/processing job; a running executor stops at its next check."""

        now = to_db_datetime(self._clock())
        return self._transition(
            job_id=job_id,
            from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
            to_status=JobStatus.CANCELLED,
            values={"completed_at": now},
            event_type="cancelled",
            details={},
        )

    def sweep_stale(self, *, timeout: timedelta) -> int:
        """Fail processing jobs whose heartbeat is older than `timeout`."""

        if timeout.total_seconds() < 0:
            raise ValueError("timeout must be >= 0")
        now = self._clock()
        cutoff = to_db_datetime(now - timeout)
        last_seen = func.coalesce(GenerationJob.heartbeat_at, GenerationJob.started_at)
        reaped = 0
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(GenerationJob.job_id, GenerationJob.worker_id).where(
                    GenerationJob.status == JobStatus.PROCESSING.value,
                    last_seen < cutoff,
                ),
            ).all()
            for job_id, worker_id in stale_rows:
                result = session.exec(
                    sa_update(GenerationJob)
                    .where(
                        col(GenerationJob.job_id) == job_id,
                        col(GenerationJob.status) == JobStatus.PROCESSING.value,
                        last_seen < cutoff,
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        error_code=ErrorCode.JOB_TIMEOUT.value,
                        error_message=(
                            f"No heartbeat for {int(timeout.total_seconds())}s; "
                            "job reclaimed by maintenance."
                        ),
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="timed_out",
                    status_from=JobStatus.PROCESSING,
                    status_to=JobStatus.FAILED,
                    details={"worker_id": worker_id, "timeout_seconds": timeout.total_seconds()},
                )
                reaped += 1
            session.commit()
        if reaped:
            logger.warning("Reclaimed %s stale processing job(s) as JOB_TIMEOUT", reaped)
        return reaped

    def sweep_expired(self) -> int:
        """Delete jobs past their retention; events and attempts cascade."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                delete(GenerationJob).where(col(GenerationJob.expires_at) <= now),
            )
            session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info("Deleted %s expired job(s)", deleted)
        return deleted

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream and attempts."""

        with Session(self.engine) as session:
            job = session.get(GenerationJob, job_id)
            if job is None:
                return None
            job_view = _to_job_view(job)
            event_rows = session.exec(
                select(GenerationJobEvent)
                .where(GenerationJobEvent.job_id == job_id)
                .order_by(
                    col(GenerationJobEvent.created_at).asc(),
                    col(GenerationJobEvent.id).asc(),
                ),
            ).all()
            attempt_rows = session.exec(
                select(GenerationAttempt)
                .where(GenerationAttempt.job_id == job_id)
                .order_by(col(GenerationAttempt.attempt_no).asc()),
            ).all()

            events: list[JobEventView] = []
            for row in event_rows:
                details = {}
                if row.details_json:
                    parsed = json.loads(row.details_json)
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    JobEventView(
                        event_id=row.id or 0,
                        job_id=row.job_id,
                        event_type=row.event_type,
                        status_from=(
                            JobStatus(row.status_from) if row.status_from is not None else None
                        ),
                        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                        created_at=to_utc_aware_datetime(row.created_at),
                        details=details,
                    ),
                )
            attempts = [_to_attempt_view(row) for row in attempt_rows]

        return JobDetails(job=job_view, events=events, attempts=attempts)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and user."""

        with Session(self.engine) as session:
            statement = select(GenerationJob)
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            if user_id is not None:
                statement = statement.where(GenerationJob.user_id == user_id)
            rows = session.exec(
                statement.order_by(col(GenerationJob.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def counts_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob.status, func.count()).group_by(GenerationJob.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def add_event(self, *, job_id: str, event_type: str, details: dict[str, object]) -> None:
        """Append an informational event without changing status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def record_attempt(self, *, job_id: str, attempt: AttemptRecordWrite) -> None:
        """Persist telemetry for one upstream call."""

        with Session(self.engine) as session:
            session.add(
                GenerationAttempt(
                    job_id=job_id,
                    attempt_no=attempt.attempt_no,
                    credential_id=attempt.credential_id,
                    masked_key=attempt.masked_key,
                    constraint_level=attempt.constraint_level,
                    max_output_tokens=attempt.max_output_tokens,
                    outcome=attempt.outcome.value,
                    error_code=attempt.error_code.value if attempt.error_code else None,
                    error_message=(
                        _truncate(attempt.error_message, self.error_message_max_chars)
                        if attempt.error_message
                        else None
                    ),
                    latency_ms=attempt.latency_ms,
                    input_tokens=attempt.input_tokens,
                    output_tokens=attempt.output_tokens,
                    started_at=to_db_datetime(attempt.started_at),
                    finished_at=to_db_datetime(attempt.finished_at),
                ),
            )
            session.commit()

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        allowed = tuple(from_statuses)
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            previous = JobStatus(row.status)
            if previous not in allowed:
                logger.warning(
                    "Ignoring %s for job %s in status %s",
                    event_type,
                    job_id,
                    previous.value,
                )
                return False
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == previous.value,
                )
                .values(
                    status=to_status.value,
                    updated_at=to_db_datetime(self._clock()),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Job %s changed state concurrently; %s not applied",
                    job_id,
                    event_type,
                )
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=to_status,
                details=details,
            )
            session.commit()
            return True

    def _active_job_row(self, *, session: Session, user_id: str) -> GenerationJob | None:
        return session.exec(
            select(GenerationJob).where(
                GenerationJob.user_id == user_id,
                col(GenerationJob.status).in_(_ACTIVE_VALUES),
            ),
        ).one_or_none()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _request_json(request: GenerationRequest) -> str:
    # Params are stored in their fingerprinted form: sets sorted, decimals as numbers.
    data = request.to_dict()
    data["params"] = canonicalize(request.params)
    return _dump_json(data)


def _truncate(message: str, max_chars: int) -> str:
    text = " ".join(message.split())
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)] + "..."


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        content_class=row.content_class,
        status=JobStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        request=GenerationRequest.from_dict(json.loads(row.request_json)),
        result_ref=row.result_ref,
        payload=json.loads(row.result_json) if row.result_json is not None else None,
        error_code=ErrorCode(row.error_code) if row.error_code is not None else None,
        error_message=row.error_message,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_attempt_view(row: GenerationAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id or 0,
        job_id=row.job_id,
        attempt_no=row.attempt_no,
        credential_id=row.credential_id,
        masked_key=row.masked_key,
        constraint_level=row.constraint_level,
        max_output_tokens=row.max_output_tokens,
        outcome=AttemptOutcome(row.outcome),
        error_code=ErrorCode(row.error_code) if row.error_code is not None else None,
        error_message=row.error_message,
        latency_ms=row.latency_ms,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=to_utc_aware_datetime(row.finished_at),
    )
