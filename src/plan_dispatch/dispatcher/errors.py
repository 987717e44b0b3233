"""Exception hierarchy for the dispatcher."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for dispatcher errors surfaced to callers."""


class JobNotFoundError(DispatchError):
    """Raised when a job id does not exist in the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ActiveJobConflictError(DispatchError):
    """User already has an active job for a different request."""

    def __init__(self, *, user_id: str, active_job_id: str, active_fingerprint: str) -> None:
        super().__init__(
            f"User {user_id!r} already has an active job {active_job_id} "
            f"for a different request (fingerprint={active_fingerprint[:12]}).",
        )
        self.user_id = user_id
        self.active_job_id = active_job_id
        self.active_fingerprint = active_fingerprint
