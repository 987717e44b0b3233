from __future__ import annotations

import time
from datetime import timedelta

import allure
from support import WORKOUT_PAYLOAD, FakeClock, workout_request

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.fingerprint import fingerprint
from plan_dispatch.dispatcher.maintenance import MaintenanceRunner
from plan_dispatch.dispatcher.models import ErrorCode, JobStatus
from plan_dispatch.dispatcher.repository import JobRepository

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Maintenance"),
]


def _stale_job(repository: JobRepository) -> str:
    request = workout_request()
    submission = repository.create_or_reuse(
        user_id="user-1",
        fingerprint=fingerprint(request),
        request=request,
    )
    repository.claim(job_id=submission.job.job_id, worker_id="gone")
    return submission.job.job_id


def test_run_once_reaps_stale_jobs_and_expired_rows(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    stale_id = _stale_job(repository)
    cache.put("f" * 64, WORKOUT_PAYLOAD, content_class="meal_plan", ttl=timedelta(minutes=5))
    clock.advance(minutes=20)
    runner = MaintenanceRunner(
        repository=repository,
        cache=cache,
        job_timeout=timedelta(minutes=10),
    )

    first = runner.run_once()
    second = runner.run_once()

    assert (first.stale_jobs_failed, first.expired_cache_deleted) == (1, 1)
    assert first.expired_jobs_deleted == 0
    assert (second.stale_jobs_failed, second.expired_cache_deleted) == (0, 0)
    job = repository.get_job(job_id=stale_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_code is ErrorCode.JOB_TIMEOUT

    clock.advance(days=8)
    assert runner.run_once().expired_jobs_deleted == 1
    assert repository.get_job(job_id=stale_id) is None


def test_background_thread_runs_until_stopped(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    stale_id = _stale_job(repository)
    clock.advance(hours=1)
    runner = MaintenanceRunner(
        repository=repository,
        cache=cache,
        job_timeout=timedelta(minutes=10),
        interval_seconds=0.05,
    )

    runner.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            job = repository.get_job(job_id=stale_id)
            if job is not None and job.status is JobStatus.FAILED:
                break
            time.sleep(0.05)
    finally:
        runner.stop()

    job = repository.get_job(job_id=stale_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
