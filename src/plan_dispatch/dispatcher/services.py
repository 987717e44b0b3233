"""Use-case services for the generation job dispatcher."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.errors import JobNotFoundError
from plan_dispatch.dispatcher.fingerprint import fingerprint as fingerprint_request
from plan_dispatch.dispatcher.models import (
    AllowlistRule,
    ConflictPolicy,
    GenerationRequest,
    JobStatusView,
    JobView,
    ModelOptions,
    SubmitResult,
)
from plan_dispatch.dispatcher.repository import JobRepository

logger = logging.getLogger(__name__)


class DispatcherService:
    """Caller-facing facade: dedup via the cache, then the job store."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        cache: ResultCache,
        default_policy: ConflictPolicy = ConflictPolicy.REJECT,
        default_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.default_policy = default_policy
        self.default_max_retries = default_max_retries

    def submit(  # noqa: PLR0913
        self,
        user_id: str,
        params: Mapping[str, Any],
        schema: Mapping[str, Any] | None = None,
        *,
        content_class: str,
        prompt: str | None = None,
        max_retries: int | None = None,
        model_options: ModelOptions | None = None,
        allowlist: AllowlistRule | None = None,
        policy: ConflictPolicy | None = None,
    ) -> SubmitResult:
        """Serve from the cache or enqueue a job for `user_id`.

        Raises `ActiveJobConflictError` when the user already has an active job
        for a different request and the policy is `reject`.
        """

        if not user_id:
            raise ValueError("user_id must be a non-empty string.")
        request = GenerationRequest(
            content_class=content_class,
            params=params,
            schema=schema,
            prompt=prompt,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            model_options=model_options or ModelOptions(),
            allowlist=allowlist,
        )
        return self.submit_request(user_id=user_id, request=request, policy=policy)

    def submit_request(
        self,
        *,
        user_id: str,
        request: GenerationRequest,
        policy: ConflictPolicy | None = None,
    ) -> SubmitResult:
        fingerprint = fingerprint_request(request)
        cached = self.cache.get(fingerprint)
        if cached is not None:
            self.cache.touch(fingerprint)
            job = self.repository.record_cache_hit(
                user_id=user_id,
                fingerprint=fingerprint,
                request=request,
                payload=cached.payload,
            )
            logger.info(
                "Cache hit for user %s (%s); job %s",
                user_id,
                fingerprint[:12],
                job.job_id,
            )
            return SubmitResult(
                job_id=job.job_id,
                status=job.status,
                fingerprint=fingerprint,
                cache_hit=True,
                reused=False,
            )

        submission = self.repository.create_or_reuse(
            user_id=user_id,
            fingerprint=fingerprint,
            request=request,
            policy=policy or self.default_policy,
        )
        if submission.replaced_job_id is not None:
            logger.info(
                "Job %s replaced active job %s for user %s",
                submission.job.job_id,
                submission.replaced_job_id,
                user_id,
            )
        return SubmitResult(
            job_id=submission.job.job_id,
            status=submission.job.status,
            fingerprint=fingerprint,
            cache_hit=False,
            reused=not submission.created,
        )

    def get_status(self, job_id: str) -> JobStatusView:
        return to_status_view(self._require(job_id))

    def cancel(self, job_id: str) -> JobStatusView:
        """Cancel the job if it is still active; return its resulting status."""

        self._require(job_id)
        if self.repository.cancel(job_id=job_id):
            logger.info("Cancelled job %s", job_id)
        return to_status_view(self._require(job_id))

    def _require(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


def to_status_view(job: JobView) -> JobStatusView:
    return JobStatusView(
        job_id=job.job_id,
        status=job.status,
        retry_count=job.retry_count,
        result_ref=job.result_ref,
        payload=job.payload,
        error_code=job.error_code,
        error_message=job.error_message,
    )
