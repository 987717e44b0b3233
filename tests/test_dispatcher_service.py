from __future__ import annotations

from decimal import Decimal

import allure
import pytest
from support import WORKOUT_PAYLOAD, WORKOUT_SCHEMA, FakeClock, workout_request

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.errors import ActiveJobConflictError, JobNotFoundError
from plan_dispatch.dispatcher.fingerprint import fingerprint
from plan_dispatch.dispatcher.models import ConflictPolicy, JobStatus
from plan_dispatch.dispatcher.repository import JobRepository
from plan_dispatch.dispatcher.services import DispatcherService

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Submission & Polling"),
]

PARAMS = {"goal": "strength", "days_per_week": 3, "equipment": ["barbell", "bench"]}


def _service(repository: JobRepository, cache: ResultCache) -> DispatcherService:
    return DispatcherService(repository=repository, cache=cache)


def test_submit_enqueues_pending_job(repository: JobRepository, cache: ResultCache) -> None:
    service = _service(repository, cache)

    result = service.submit("user-1", PARAMS, WORKOUT_SCHEMA, content_class="workout_plan")

    assert result.status is JobStatus.PENDING
    assert result.cache_hit is False
    assert result.reused is False
    status = service.get_status(result.job_id)
    assert status.status is JobStatus.PENDING
    assert status.retry_count == 0
    assert status.payload is None


def test_duplicate_submit_returns_active_job(
    repository: JobRepository,
    cache: ResultCache,
) -> None:
    service = _service(repository, cache)

    first = service.submit("user-1", PARAMS, WORKOUT_SCHEMA, content_class="workout_plan")
    second = service.submit(
        "user-1",
        dict(reversed(list(PARAMS.items()))),
        WORKOUT_SCHEMA,
        content_class="workout_plan",
        prompt="A different template does not change the fingerprint.",
    )

    assert second.job_id == first.job_id
    assert second.reused is True
    assert second.fingerprint == first.fingerprint


def test_cache_hit_returns_completed_job_for_any_user(
    repository: JobRepository,
    cache: ResultCache,
) -> None:
    service = _service(repository, cache)
    request = workout_request()
    cache.put(fingerprint(request), WORKOUT_PAYLOAD, content_class="workout_plan")

    result = service.submit_request(user_id="user-2", request=request)

    assert result.cache_hit is True
    assert result.status is JobStatus.COMPLETED
    status = service.get_status(result.job_id)
    assert status.payload == WORKOUT_PAYLOAD
    assert status.result_ref == result.fingerprint
    entry = cache.get(result.fingerprint)
    assert entry is not None
    assert entry.hit_count == 1


def test_submit_accepts_set_and_decimal_params(
    repository: JobRepository,
    cache: ResultCache,
) -> None:
    service = _service(repository, cache)
    params = {"equipment": {"dumbbell", "barbell"}, "weight": Decimal("70.5"), "days": 3.0}

    result = service.submit("user-1", params, content_class="workout_plan")
    again = service.submit(
        "user-1",
        {"equipment": ["barbell", "dumbbell"], "weight": 70.5, "days": 3},
        content_class="workout_plan",
    )

    assert result.status is JobStatus.PENDING
    assert again.job_id == result.job_id
    job = repository.get_job(job_id=result.job_id)
    assert job is not None
    assert dict(job.request.params) == {
        "equipment": ["barbell", "dumbbell"],
        "weight": 70.5,
        "days": 3,
    }
    assert fingerprint(job.request) == result.fingerprint


def test_expired_cache_entry_is_a_miss(
    repository: JobRepository,
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    service = _service(repository, cache)
    request = workout_request()
    cache.put(fingerprint(request), WORKOUT_PAYLOAD, content_class="workout_plan")
    clock.advance(days=7, seconds=1)

    result = service.submit_request(user_id="user-1", request=request)

    assert result.cache_hit is False
    assert result.status is JobStatus.PENDING


def test_conflicting_submit_rejected_or_replaced(
    repository: JobRepository,
    cache: ResultCache,
) -> None:
    service = _service(repository, cache)
    first = service.submit("user-1", PARAMS, content_class="workout_plan")

    with pytest.raises(ActiveJobConflictError):
        service.submit("user-1", {"goal": "mobility"}, content_class="workout_plan")

    replacement = service.submit(
        "user-1",
        {"goal": "mobility"},
        content_class="workout_plan",
        policy=ConflictPolicy.REPLACE,
    )

    assert replacement.job_id != first.job_id
    assert service.get_status(first.job_id).status is JobStatus.CANCELLED
    assert service.get_status(replacement.job_id).status is JobStatus.PENDING


def test_service_default_policy_applies(repository: JobRepository, cache: ResultCache) -> None:
    service = DispatcherService(
        repository=repository,
        cache=cache,
        default_policy=ConflictPolicy.REPLACE,
        default_max_retries=5,
    )
    service.submit("user-1", PARAMS, content_class="workout_plan")

    replacement = service.submit("user-1", {"goal": "mobility"}, content_class="workout_plan")

    job = repository.get_job(job_id=replacement.job_id)
    assert job is not None
    assert job.max_retries == 5


def test_cancel_pending_job_and_repeat_is_noop(
    repository: JobRepository,
    cache: ResultCache,
) -> None:
    service = _service(repository, cache)
    submitted = service.submit("user-1", PARAMS, content_class="workout_plan")

    cancelled = service.cancel(submitted.job_id)
    again = service.cancel(submitted.job_id)

    assert cancelled.status is JobStatus.CANCELLED
    assert again.status is JobStatus.CANCELLED
    assert repository.claim_next_pending(worker_id="w") is None


def test_unknown_job_raises(repository: JobRepository, cache: ResultCache) -> None:
    service = _service(repository, cache)

    with pytest.raises(JobNotFoundError):
        service.get_status("missing")
    with pytest.raises(JobNotFoundError):
        service.cancel("missing")


def test_submit_validates_inputs(repository: JobRepository, cache: ResultCache) -> None:
    service = _service(repository, cache)

    with pytest.raises(ValueError, match="user_id"):
        service.submit("", PARAMS, content_class="workout_plan")
    with pytest.raises(ValueError, match="content_class"):
        service.submit("user-1", PARAMS, content_class=" ")
    with pytest.raises(ValueError, match="max_retries"):
        service.submit("user-1", PARAMS, content_class="workout_plan", max_retries=-1)
