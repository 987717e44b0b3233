"""Per-job attempt loop: credential rotation, upstream call and validation."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from plan_dispatch.config import Settings
from plan_dispatch.dispatcher.backend.base import (
    GenerationBackend,
    GenerationCall,
    UpstreamError,
    UpstreamErrorCategory,
)
from plan_dispatch.dispatcher.constraints import AttemptPlan, escalate, initial_plan, render_prompt
from plan_dispatch.dispatcher.credentials import CredentialLease, CredentialPool
from plan_dispatch.dispatcher.errors import DispatchError
from plan_dispatch.dispatcher.models import (
    NON_RETRYABLE_ERROR_CODES,
    AttemptOutcome,
    AttemptRecordWrite,
    ErrorCode,
    GenerationRequest,
)
from plan_dispatch.dispatcher.retry import (
    BackoffPolicy,
    NonRetryableFailure,
    RetryAborted,
    RetryExhausted,
    RetryVerdict,
    run_with_retry,
)
from plan_dispatch.dispatcher.validator import validate_output
from plan_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_HTTP_FORBIDDEN = 403


class JobProgress(Protocol):
    """Hooks the executor uses to report back to the job store."""

    def is_cancelled(self) -> bool:
        """True once the job left `processing`."""

    def record_retry(self) -> int | None:
        """Spend one retry; None when no retry may be spent."""

    def record_attempt(self, attempt: AttemptRecordWrite) -> None:
        """Persist telemetry for one upstream call."""

    def record_event(self, event_type: str, details: dict[str, object]) -> None:
        """Append an audit event to the job."""

    def heartbeat(self) -> None:
        """Signal that the job is still being worked on."""


@dataclass(slots=True)
class ExecutionResult:
    """Validated payload with generation metadata."""

    payload: Any
    attempts: int
    credential_id: str
    model_used: str | None
    generation_time_ms: int
    tokens_used: int | None
    recovered: bool
    substitutions: int


class AttemptFailure(Exception):  # noqa: N818
    """One attempt failed with a stable error code."""

    def __init__(self, error_code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.error_code not in NON_RETRYABLE_ERROR_CODES


class ExecutionFailedError(DispatchError):
    """All attempts failed, or one failed fatally."""

    def __init__(self, error_code: ErrorCode, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.attempts = attempts


class ExecutionCancelledError(DispatchError):
    """The job was cancelled between attempts."""


class RequestExecutor:
    """Runs one request through `run_with_retry` against the credential pool."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: GenerationBackend,
        pool: CredentialPool,
        backoff: BackoffPolicy | None = None,
        token_ceiling: int = 16_384,
        truncation_margin: int = 16,
        quota_cooldown: timedelta = timedelta(minutes=5),
        forbidden_cooldown: timedelta = timedelta(hours=1),
        sleep: Callable[[float], object] = time.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.pool = pool
        self.backoff = backoff or BackoffPolicy()
        self.token_ceiling = token_ceiling
        self.truncation_margin = truncation_margin
        self.quota_cooldown = quota_cooldown
        self.forbidden_cooldown = forbidden_cooldown
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: GenerationBackend,
        pool: CredentialPool,
        sleep: Callable[[float], object] = time.sleep,
    ) -> RequestExecutor:
        return cls(
            backend=backend,
            pool=pool,
            backoff=BackoffPolicy(
                base_seconds=settings.backoff.base_seconds,
                cap_seconds=settings.backoff.cap_seconds,
                jitter_seconds=settings.backoff.jitter_seconds,
            ),
            token_ceiling=settings.upstream.max_output_tokens_ceiling,
            truncation_margin=settings.upstream.truncation_margin_tokens,
            quota_cooldown=timedelta(seconds=settings.credentials.quota_cooldown_seconds),
            forbidden_cooldown=timedelta(seconds=settings.credentials.forbidden_cooldown_seconds),
            sleep=sleep,
        )

    def execute(
        self,
        request: GenerationRequest,
        progress: JobProgress,
        *,
        job_id: str = "-",
    ) -> ExecutionResult:
        """Run attempts until one validates, the budget is spent or the job is cancelled."""

        plan = initial_plan(request)
        started = time.monotonic()

        def operation(attempt: int) -> ExecutionResult:
            result = self._attempt(
                request=request,
                plan=plan,
                attempt_no=attempt + 1,
                progress=progress,
                job_id=job_id,
            )
            result.generation_time_ms = int((time.monotonic() - started) * 1000)
            return result

        def on_retry(attempt: int, verdict: RetryVerdict, delay: float) -> bool:
            nonlocal plan
            if progress.is_cancelled():
                return False
            retry_count = progress.record_retry()
            if retry_count is None:
                return False
            plan = escalate(plan, verdict.error_code, token_ceiling=self.token_ceiling)
            logger.info(
                "Job %s retry %s/%s after %s in %.2fs (level=%s max_tokens=%s)",
                job_id,
                retry_count,
                request.max_retries,
                verdict.error_code,
                delay,
                plan.constraint_level,
                plan.max_output_tokens,
            )
            return True

        try:
            return run_with_retry(
                operation,
                classify=_classify_attempt_failure,
                policy=self.backoff,
                max_retries=request.max_retries,
                retry_on=(AttemptFailure,),
                sleep=self._sleep,
                rng=self._rng,
                on_retry=on_retry,
                should_abort=progress.is_cancelled,
            )
        except RetryAborted as error:
            raise ExecutionCancelledError(f"Job {job_id} was cancelled.") from error
        except (RetryExhausted, NonRetryableFailure) as error:
            if progress.is_cancelled():
                raise ExecutionCancelledError(f"Job {job_id} was cancelled.") from error
            raise ExecutionFailedError(
                ErrorCode(error.error_code),
                error.verdict.message,
                attempts=error.attempts,
            ) from error

    def _attempt(
        self,
        *,
        request: GenerationRequest,
        plan: AttemptPlan,
        attempt_no: int,
        progress: JobProgress,
        job_id: str,
    ) -> ExecutionResult:
        lease = self.pool.select()
        if lease is None:
            wait = self.pool.time_until_available()
            if not len(self.pool):
                detail = "no credentials configured"
            elif wait is None:
                detail = "all credentials are disabled"
            else:
                detail = f"next credential available in {int(wait.total_seconds())}s"
            logger.warning(
                "Job %s attempt %s: no credential available (%s)",
                job_id,
                attempt_no,
                detail,
            )
            raise AttemptFailure(
                ErrorCode.NO_CREDENTIALS_AVAILABLE,
                f"No upstream credential available: {detail}.",
            )

        progress.heartbeat()
        call = GenerationCall(
            prompt=render_prompt(request, plan),
            schema=request.schema,
            temperature=plan.temperature,
            top_k=request.model_options.top_k,
            top_p=request.model_options.top_p,
            max_output_tokens=plan.max_output_tokens,
        )
        started_at = self._clock()
        started = time.monotonic()
        try:
            output = self.backend.generate(call, api_key=lease.api_key)
        except UpstreamError as error:
            latency_ms = int((time.monotonic() - started) * 1000)
            error_code = self._report_upstream_error(lease, error)
            self._record(
                progress,
                lease=lease,
                plan=plan,
                attempt_no=attempt_no,
                started_at=started_at,
                latency_ms=latency_ms,
                outcome=AttemptOutcome.FAILED,
                error_code=error_code,
                error_message=str(error),
            )
            logger.warning(
                "Job %s attempt %s via %s (%s) failed in %sms: %s",
                job_id,
                attempt_no,
                lease.credential_id,
                lease.masked_key,
                latency_ms,
                error,
            )
            failure_details: dict[str, object] = {
                "attempt_no": attempt_no,
                "credential_id": lease.credential_id,
                "error_code": error_code.value,
                "status_code": error.status_code,
                "category": error.category.value,
            }
            failure_details.update(error.details)
            progress.record_event("upstream_failure", failure_details)
            raise AttemptFailure(error_code, str(error)) from error

        latency_ms = int((time.monotonic() - started) * 1000)
        # The credential worked even when the output is unusable.
        self.pool.report_success(lease.credential_id)
        validation = validate_output(
            output.raw_output,
            schema=request.schema,
            allowlist=request.allowlist,
            output_tokens=output.output_tokens,
            max_output_tokens=plan.max_output_tokens,
            margin=self.truncation_margin,
        )
        self._record(
            progress,
            lease=lease,
            plan=plan,
            attempt_no=attempt_no,
            started_at=started_at,
            latency_ms=latency_ms,
            outcome=AttemptOutcome.SUCCEEDED if validation.is_valid else AttemptOutcome.FAILED,
            error_code=validation.error_code,
            error_message=validation.error_summary,
            input_tokens=output.input_tokens,
            output_tokens=output.output_tokens,
        )
        verdict = validation.error_code.value if validation.error_code is not None else "ok"
        logger.info(
            "Job %s attempt %s via %s (%s): %s in %sms tokens=%s/%s",
            job_id,
            attempt_no,
            lease.credential_id,
            lease.masked_key,
            verdict,
            latency_ms,
            output.input_tokens,
            output.output_tokens,
        )
        if not validation.is_valid:
            raise AttemptFailure(
                validation.error_code or ErrorCode.MALFORMED_OUTPUT,
                validation.error_summary or "Output failed validation.",
            )

        tokens_used = None
        if output.input_tokens is not None or output.output_tokens is not None:
            tokens_used = (output.input_tokens or 0) + (output.output_tokens or 0)
        return ExecutionResult(
            payload=validation.payload,
            attempts=attempt_no,
            credential_id=lease.credential_id,
            model_used=output.model,
            generation_time_ms=latency_ms,
            tokens_used=tokens_used,
            recovered=validation.recovered,
            substitutions=len(validation.substitutions),
        )

    def _report_upstream_error(self, lease: CredentialLease, error: UpstreamError) -> ErrorCode:
        category = error.category
        if category is UpstreamErrorCategory.QUOTA:
            if error.retry_after_seconds is not None:
                cooldown = timedelta(seconds=error.retry_after_seconds)
            elif error.status_code == _HTTP_FORBIDDEN:
                cooldown = self.forbidden_cooldown
            else:
                cooldown = self.quota_cooldown
            self.pool.report_quota_exceeded(lease.credential_id, cooldown)
            return ErrorCode.QUOTA_EXCEEDED
        if category is UpstreamErrorCategory.INVALID_CREDENTIAL:
            self.pool.report_fatal(lease.credential_id, error.message)
            return ErrorCode.INVALID_CREDENTIAL
        if category is UpstreamErrorCategory.CONTENT_POLICY:
            self.pool.report_fatal(lease.credential_id, error.message)
            return ErrorCode.CONTENT_POLICY
        if category in {UpstreamErrorCategory.NETWORK, UpstreamErrorCategory.SERVER}:
            self.pool.report_transient_failure(lease.credential_id)
            return ErrorCode.TRANSIENT_NETWORK
        return ErrorCode.UPSTREAM_REJECTED

    def _record(  # noqa: PLR0913
        self,
        progress: JobProgress,
        *,
        lease: CredentialLease,
        plan: AttemptPlan,
        attempt_no: int,
        started_at: datetime,
        latency_ms: int,
        outcome: AttemptOutcome,
        error_code: ErrorCode | None,
        error_message: str | None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> None:
        progress.record_attempt(
            AttemptRecordWrite(
                attempt_no=attempt_no,
                outcome=outcome,
                started_at=started_at,
                finished_at=self._clock(),
                credential_id=lease.credential_id,
                masked_key=lease.masked_key,
                constraint_level=plan.constraint_level,
                max_output_tokens=plan.max_output_tokens,
                error_code=error_code,
                error_message=error_message,
                latency_ms=latency_ms,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            ),
        )


def _classify_attempt_failure(error: Exception) -> RetryVerdict:
    if isinstance(error, AttemptFailure):
        return RetryVerdict(
            retryable=error.retryable,
            error_code=error.error_code.value,
            message=error.message,
        )
    return RetryVerdict(
        retryable=False,
        error_code=ErrorCode.INTERNAL_ERROR.value,
        message=f"{type(error).__name__}: {error}",
    )
