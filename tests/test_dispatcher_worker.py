from __future__ import annotations

import logging
import threading
from typing import Any

import allure
import pytest
from support import (
    WORKOUT_PAYLOAD,
    FakeClock,
    ScriptedBackend,
    ok_output,
    quota_error,
    workout_request,
)

from plan_dispatch.dispatcher.backend.base import (
    GenerationCall,
    GenerationOutput,
    UpstreamError,
    UpstreamErrorCategory,
)
from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.credentials import CredentialPool
from plan_dispatch.dispatcher.executor import RequestExecutor
from plan_dispatch.dispatcher.models import ErrorCode, JobStatus, SubmitResult
from plan_dispatch.dispatcher.repository import JobRepository
from plan_dispatch.dispatcher.retry import BackoffPolicy
from plan_dispatch.dispatcher.services import DispatcherService
from plan_dispatch.dispatcher.worker import DispatcherWorker, WorkerPool

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Worker Execution"),
]

KEYS = ("AIzaKEY-one-0001", "AIzaKEY-two-0002", "AIzaKEY-three-0003", "AIzaKEY-four-0004")


def _executor(backend: ScriptedBackend, clock: FakeClock) -> RequestExecutor:
    return RequestExecutor(
        backend=backend,
        pool=CredentialPool(KEYS, requests_per_minute=0, requests_per_day=0, clock=clock),
        backoff=BackoffPolicy(base_seconds=0.0, jitter_seconds=0.0),
        sleep=lambda _: None,
        clock=clock,
    )


def _worker(
    repository: JobRepository,
    cache: ResultCache,
    executor: RequestExecutor,
    *,
    stop_event: threading.Event | None = None,
) -> DispatcherWorker:
    return DispatcherWorker(
        repository=repository,
        executor=executor,
        cache=cache,
        worker_id="worker-test",
        poll_interval_seconds=0.01,
        stop_event=stop_event,
    )


def _submit(
    repository: JobRepository,
    cache: ResultCache,
    user_id: str = "user-1",
    **overrides: Any,
) -> SubmitResult:
    service = DispatcherService(repository=repository, cache=cache)
    return service.submit_request(user_id=user_id, request=workout_request(**overrides))


def test_worker_completes_job_and_fills_cache(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache)
    worker = _worker(repository, cache, _executor(ScriptedBackend(), clock))

    summary = worker.run_once()

    assert (summary.processed, summary.completed, summary.failed) == (1, 1, 0)
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.payload == WORKOUT_PAYLOAD
    assert job.result_ref == submitted.fingerprint
    entry = cache.get(submitted.fingerprint)
    assert entry is not None
    assert entry.payload == WORKOUT_PAYLOAD
    assert entry.model_used == "fake-model"
    assert entry.tokens_used == 160

    second = _submit(repository, cache, user_id="user-2")
    assert second.cache_hit is True
    assert second.status is JobStatus.COMPLETED


def test_worker_is_idle_on_empty_queue(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    worker = _worker(repository, cache, _executor(ScriptedBackend(), clock))

    summary = worker.run_loop(max_idle_polls=2)

    assert summary.processed == 0
    assert summary.idle_polls == 2


def test_quota_retries_are_persisted(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache)
    backend = ScriptedBackend([quota_error(), quota_error(), quota_error(), ok_output()])
    worker = _worker(repository, cache, _executor(backend, clock))

    summary = worker.run_once()

    assert summary.completed == 1
    assert summary.retried == 3
    details = repository.get_job_details(job_id=submitted.job_id)
    assert details is not None
    assert details.job.retry_count == 3
    assert [attempt.credential_id for attempt in details.attempts] == [
        "key-1",
        "key-2",
        "key-3",
        "key-4",
    ]
    assert [event.event_type for event in details.events].count("retry") == 3
    failures = [event for event in details.events if event.event_type == "upstream_failure"]
    assert [event.details["credential_id"] for event in failures] == ["key-1", "key-2", "key-3"]
    assert {event.details["error_code"] for event in failures} == {"QUOTA_EXCEEDED"}


def test_exhausted_retries_fail_job_with_last_code(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache, max_retries=1)
    network = UpstreamError(UpstreamErrorCategory.SERVER, "UNAVAILABLE", status_code=503)
    worker = _worker(repository, cache, _executor(ScriptedBackend([network, network]), clock))

    summary = worker.run_once()

    assert summary.failed == 1
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_code is ErrorCode.TRANSIENT_NETWORK
    assert job.retry_count == 1
    assert "UNAVAILABLE" in (job.error_message or "")
    assert cache.get(submitted.fingerprint) is None


def test_cancel_during_generation_discards_result(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache)

    class CancelWhileRunning(ScriptedBackend):
        def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:
            repository.cancel(job_id=submitted.job_id)
            return super().generate(call, api_key=api_key)

    worker = _worker(repository, cache, _executor(CancelWhileRunning(), clock))

    summary = worker.run_once()

    assert summary.cancelled == 1
    assert summary.completed == 0
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.CANCELLED
    assert job.payload is None
    assert cache.get(submitted.fingerprint) is None


def test_cancel_between_attempts_stops_retrying(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache)

    class CancelAfterFailure(ScriptedBackend):
        def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:
            repository.cancel(job_id=submitted.job_id)
            return super().generate(call, api_key=api_key)

    backend = CancelAfterFailure([quota_error(), ok_output()])
    worker = _worker(repository, cache, _executor(backend, clock))

    summary = worker.run_once()

    assert summary.cancelled == 1
    assert len(backend.calls) == 1
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.CANCELLED
    assert job.retry_count == 0


def test_unexpected_error_fails_job_as_internal(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    submitted = _submit(repository, cache)
    worker = _worker(
        repository,
        cache,
        _executor(ScriptedBackend([RuntimeError("backend bug")]), clock),
    )

    with caplog.at_level(logging.ERROR, logger="plan_dispatch.dispatcher.worker"):
        summary = worker.run_once()

    assert summary.failed == 1
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_code is ErrorCode.INTERNAL_ERROR
    assert job.error_message == "Internal error (RuntimeError)."
    assert "Unexpected error while processing job" in caplog.text


def test_stop_during_backoff_fails_job_instead_of_rerunning(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    submitted = _submit(repository, cache)
    stop_event = threading.Event()

    def sleep(_: float) -> None:
        stop_event.set()

    executor = RequestExecutor(
        backend=ScriptedBackend([quota_error(), ok_output()]),
        pool=CredentialPool(KEYS, requests_per_minute=0, requests_per_day=0, clock=clock),
        backoff=BackoffPolicy(base_seconds=1.0, cap_seconds=1.0, jitter_seconds=0.0),
        sleep=sleep,
        clock=clock,
    )
    worker = _worker(repository, cache, executor, stop_event=stop_event)

    summary = worker.run_once()

    assert summary.failed == 1
    job = repository.get_job(job_id=submitted.job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_code is ErrorCode.INTERNAL_ERROR
    assert "Worker stopped" in (job.error_message or "")
    assert repository.claim_next_pending(worker_id="next") is None


def test_worker_pool_drains_queue_with_several_threads(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    goals = ["strength", "endurance", "mobility", "hypertrophy", "power", "balance"]
    submitted = [
        _submit(repository, cache, user_id=f"user-{index}", params={"goal": goal})
        for index, goal in enumerate(goals)
    ]
    backend = ScriptedBackend()
    pool = WorkerPool(
        repository=repository,
        executor=_executor(backend, clock),
        cache=cache,
        workers=3,
        poll_interval_seconds=0.01,
    )

    pool.start(max_idle_polls=1)
    summary = pool.join(timeout=30)

    assert not pool.is_alive()
    assert summary.completed == len(goals)
    assert summary.processed == len(goals)
    assert len(backend.calls) == len(goals)
    for result in submitted:
        job = repository.get_job(job_id=result.job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
    assert cache.stats().entries == len(goals)


def test_worker_pool_stop_ends_polling(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    pool = WorkerPool(
        repository=repository,
        executor=_executor(ScriptedBackend(), clock),
        cache=cache,
        workers=2,
        poll_interval_seconds=0.01,
    )
    pool.start()

    summary = pool.stop(timeout=10)

    assert not pool.is_alive()
    assert summary.processed == 0


def test_worker_pool_rejects_zero_workers(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    with pytest.raises(ValueError, match="workers"):
        WorkerPool(
            repository=repository,
            executor=_executor(ScriptedBackend(), clock),
            cache=cache,
            workers=0,
        )
