"""Controllers for dispatcher CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from plan_dispatch.config import Settings
from plan_dispatch.dispatcher.backend.base import GenerationBackend
from plan_dispatch.dispatcher.backend.echo import EchoBackend
from plan_dispatch.dispatcher.backend.gemini import GeminiBackend
from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.credentials import CredentialPool
from plan_dispatch.dispatcher.errors import JobNotFoundError
from plan_dispatch.dispatcher.executor import RequestExecutor
from plan_dispatch.dispatcher.maintenance import MaintenanceRunner
from plan_dispatch.dispatcher.models import (
    AllowlistRule,
    ConflictPolicy,
    JobStatus,
    JobStatusView,
    ModelOptions,
)
from plan_dispatch.dispatcher.repository import JobRepository
from plan_dispatch.dispatcher.services import DispatcherService
from plan_dispatch.dispatcher.worker import DispatcherWorker, WorkerPool, WorkerRunSummary

ECHO_LOCAL_KEY = "echo-local-credential"
PAYLOAD_PREVIEW_CHARS = 2_000


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    user_id: str
    content_class: str
    params_json: str
    schema_json: str | None
    prompt: str | None
    max_retries: int | None
    temperature: float | None
    max_output_tokens: int | None
    policy: str | None
    allowlist_field: str | None = None
    allowlist_values: tuple[str, ...] = ()
    allowlist_min_confidence: float = 0.9


@dataclass(slots=True)
class JobCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    workers: int | None
    backend: str
    max_jobs: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


class DispatcherCliController:
    """Coordinates submission, worker, and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        params = _parse_json_object(command.params_json, option="--params")
        schema = (
            _parse_json_object(command.schema_json, option="--schema")
            if command.schema_json is not None
            else None
        )
        defaults = ModelOptions()
        model_options = ModelOptions(
            temperature=(
                defaults.temperature if command.temperature is None else command.temperature
            ),
            top_k=defaults.top_k,
            top_p=defaults.top_p,
            max_output_tokens=(
                defaults.max_output_tokens
                if command.max_output_tokens is None
                else command.max_output_tokens
            ),
        )
        allowlist = None
        if command.allowlist_field:
            allowlist = AllowlistRule(
                field_name=command.allowlist_field,
                allowed=command.allowlist_values,
                min_confidence=command.allowlist_min_confidence,
            )
        with _repository(settings) as repository:
            service = _service(settings, repository)
            result = service.submit(
                command.user_id,
                params,
                schema,
                content_class=command.content_class,
                prompt=command.prompt,
                max_retries=command.max_retries,
                model_options=model_options,
                allowlist=allowlist,
                policy=ConflictPolicy(command.policy) if command.policy else None,
            )

        return [
            "Job submitted: "
            f"job_id={result.job_id} status={result.status.value} "
            f"cache_hit={'yes' if result.cache_hit else 'no'} "
            f"reused={'yes' if result.reused else 'no'}",
            f"Fingerprint: {result.fingerprint}",
        ]

    def status(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            view = _service(settings, repository).get_status(command.job_id)
        return _status_lines(view)

    def cancel(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            view = _service(settings, repository).cancel(command.job_id)
        if view.status is JobStatus.CANCELLED:
            return [f"Job cancelled: {view.job_id}"]
        return [f"Job not cancelled: {view.job_id} is already {view.status.value}"]

    def inspect(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            raise JobNotFoundError(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"User: {job.user_id}",
            f"Class: {job.content_class}",
            f"Status: {job.status.value}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Fingerprint: {job.fingerprint}",
            f"Worker: {job.worker_id or '-'}",
            f"Created: {job.created_at.isoformat()}",
            f"Expires: {job.expires_at.isoformat()}",
            f"Error: {job.error_code.value if job.error_code else '-'} "
            f"{job.error_message or ''}".rstrip(),
            f"Attempts: {len(details.attempts)}",
        ]
        for attempt in details.attempts:
            lines.append(
                f"  #{attempt.attempt_no} {attempt.outcome.value} "
                f"credential={attempt.credential_id or '-'} ({attempt.masked_key or '-'}) "
                f"level={attempt.constraint_level} max_tokens={attempt.max_output_tokens or '-'} "
                f"latency_ms={attempt.latency_ms if attempt.latency_ms is not None else '-'} "
                f"tokens={attempt.input_tokens or 0}/{attempt.output_tokens or 0} "
                f"error={attempt.error_code.value if attempt.error_code else '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                user_id=command.user_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} user={job.user_id} class={job.content_class} "
                f"status={job.status.value} retries={job.retry_count}/{job.max_retries} "
                f"created={job.created_at.isoformat()}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.backend == "gemini":
            settings.validate_for_upstream()
        else:
            settings.validate()
        stop_event = threading.Event()
        with _repository(settings) as repository, _backend(settings, command.backend) as backend:
            cache = ResultCache(repository.engine, settings=settings.cache)
            executor = RequestExecutor.from_settings(
                settings,
                backend=backend,
                pool=_credential_pool(settings, backend_name=command.backend),
                sleep=stop_event.wait,
            )
            if command.once:
                summary = DispatcherWorker(
                    repository=repository,
                    executor=executor,
                    cache=cache,
                    poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
                    stop_event=stop_event,
                ).run_once()
            else:
                summary = _run_pool(
                    settings=settings,
                    command=command,
                    repository=repository,
                    executor=executor,
                    cache=cache,
                    stop_event=stop_event,
                )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"retried={summary.retried} idle_polls={summary.idle_polls}",
        ]

    def sweep(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = _maintenance(settings, repository).run_once()
        return [
            "Sweep completed: "
            f"stale_failed={summary.stale_jobs_failed} "
            f"expired_jobs_deleted={summary.expired_jobs_deleted} "
            f"expired_cache_deleted={summary.expired_cache_deleted}",
        ]

    def credentials(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        # A fresh pool: cooldowns and disabled keys live in the running workers only.
        views = CredentialPool.from_settings(settings.credentials).snapshot()
        if not views:
            return [
                "Configured credentials: 0",
                "Set PLAN_DISPATCH_GEMINI_API_KEY or PLAN_DISPATCH_GEMINI_KEY_1..N.",
            ]
        lines = [
            f"Configured credentials: {len(views)} "
            f"(limits {settings.credentials.requests_per_minute}/min, "
            f"{settings.credentials.requests_per_day}/day, "
            f"daily reset {settings.credentials.daily_reset_timezone})",
        ]
        lines.extend(f"  {view.credential_id} {view.masked_key}" for view in views)
        return lines

    def cache_stats(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = ResultCache(repository.engine, settings=settings.cache).stats()
            counts = repository.counts_by_status()
        job_counts = " ".join(f"{status.value}={counts.get(status, 0)}" for status in JobStatus)
        return [
            "Cache: "
            f"entries={stats.entries} live={stats.live} expired={stats.expired} "
            f"total_hits={stats.total_hits}",
            f"Jobs: {job_counts}",
        ]


def _status_lines(view: JobStatusView) -> list[str]:
    lines = [
        f"Job: {view.job_id}",
        f"Status: {view.status.value}",
        f"Retries: {view.retry_count}",
    ]
    if view.error_code is not None:
        lines.append(f"Error: {view.error_code.value} {view.error_message or ''}".rstrip())
    if view.result_ref is not None:
        lines.append(f"Result: {view.result_ref}")
    if view.payload is not None:
        rendered = json.dumps(view.payload, ensure_ascii=False, indent=2, sort_keys=True)
        if len(rendered) > PAYLOAD_PREVIEW_CHARS:
            rendered = rendered[:PAYLOAD_PREVIEW_CHARS] + "\n..."
        lines.append("Payload:")
        lines.extend(rendered.splitlines())
    return lines


def _run_pool(  # noqa: PLR0913
    *,
    settings: Settings,
    command: WorkerCommand,
    repository: JobRepository,
    executor: RequestExecutor,
    cache: ResultCache,
    stop_event: threading.Event,
) -> WorkerRunSummary:
    worker_pool = WorkerPool(
        repository=repository,
        executor=executor,
        cache=cache,
        workers=command.workers or settings.dispatcher.workers,
        poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
        stop_event=stop_event,
    )
    maintenance = _maintenance(settings, repository)
    maintenance.start()
    worker_pool.start(max_jobs=command.max_jobs, max_idle_polls=command.max_idle_polls)
    try:
        while worker_pool.is_alive():
            worker_pool.join(timeout=0.5)
    except KeyboardInterrupt:
        return worker_pool.stop()
    finally:
        maintenance.stop()
    return worker_pool.summary()


def _parse_json_object(text: str, *, option: str) -> dict[str, Any]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as error:
        raise ValueError(f"{option} must be valid JSON: {error}") from error
    if not isinstance(value, dict):
        raise ValueError(f"{option} must be a JSON object.")
    return value


def _service(settings: Settings, repository: JobRepository) -> DispatcherService:
    return DispatcherService(
        repository=repository,
        cache=ResultCache(repository.engine, settings=settings.cache),
        default_policy=ConflictPolicy(settings.dispatcher.conflict_policy),
        default_max_retries=settings.dispatcher.default_max_retries,
    )


def _maintenance(settings: Settings, repository: JobRepository) -> MaintenanceRunner:
    return MaintenanceRunner(
        repository=repository,
        cache=ResultCache(repository.engine, settings=settings.cache),
        job_timeout=timedelta(seconds=settings.dispatcher.job_timeout_seconds),
        interval_seconds=settings.dispatcher.maintenance_interval_seconds,
    )


def _credential_pool(settings: Settings, *, backend_name: str) -> CredentialPool:
    if backend_name == "echo" and not settings.credentials.api_keys:
        return CredentialPool((ECHO_LOCAL_KEY,))
    return CredentialPool.from_settings(settings.credentials)


@contextmanager
def _backend(settings: Settings, name: str) -> Iterator[GenerationBackend]:
    if name == "echo":
        yield EchoBackend()
        return
    if name != "gemini":
        raise ValueError(f"Unsupported backend: {name}")
    with GeminiBackend.from_settings(settings.upstream) as backend:
        yield backend


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.dispatcher.sqlite_busy_timeout_ms,
        job_retention=timedelta(days=settings.dispatcher.job_retention_days),
        error_message_max_chars=settings.dispatcher.error_message_max_chars,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
