"""CLI entrypoint for plan-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from plan_dispatch import __version__
from plan_dispatch.dispatcher.controllers import (
    DbCommand,
    DispatcherCliController,
    JobCommand,
    ListJobsCommand,
    SubmitCommand,
    WorkerCommand,
)
from plan_dispatch.dispatcher.errors import DispatchError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatcherCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="plan-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for dispatcher internals.",
)
def plan_dispatch(log_level: str) -> None:
    """Generation job dispatcher CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@plan_dispatch.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="User the job belongs to.")
@click.option(
    "--content-class",
    default="workout_plan",
    show_default=True,
    help="Content class, for example workout_plan or meal_plan.",
)
@click.option("--params", "params_json", required=True, help="Request parameters as JSON object.")
@click.option("--schema", "schema_json", default=None, help="Expected output shape as JSON.")
@click.option(
    "--prompt",
    default=None,
    help="Prompt template; `{name}` placeholders are filled from --params.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=10),
    default=None,
    help="Retry budget; defaults to PLAN_DISPATCH_MAX_RETRIES.",
)
@click.option("--temperature", type=click.FloatRange(min=0.0, max=2.0), default=None)
@click.option("--max-output-tokens", type=click.IntRange(min=1), default=None)
@click.option(
    "--policy",
    type=click.Choice(["reject", "replace"], case_sensitive=False),
    default=None,
    help="What to do when the user already has an active job for a different request.",
)
@click.option("--allowlist-field", default=None, help="Field whose values must be allowlisted.")
@click.option(
    "--allow",
    "allowlist_values",
    multiple=True,
    help="Allowed value for --allowlist-field. Can be repeated.",
)
@click.option(
    "--min-confidence",
    type=click.FloatRange(min=0.0, max=1.0),
    default=0.9,
    show_default=True,
    help="Similarity needed to substitute a near-miss allowlisted value.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    content_class: str,
    params_json: str,
    schema_json: str | None,
    prompt: str | None,
    max_retries: int | None,
    temperature: float | None,
    max_output_tokens: int | None,
    policy: str | None,
    allowlist_field: str | None,
    allowlist_values: tuple[str, ...],
    min_confidence: float,
) -> None:
    """Submit a generation request (served from cache when possible)."""

    _emit(
        lambda: CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                user_id=user_id,
                content_class=content_class,
                params_json=params_json,
                schema_json=schema_json,
                prompt=prompt,
                max_retries=max_retries,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                policy=policy.lower() if policy is not None else None,
                allowlist_field=allowlist_field,
                allowlist_values=allowlist_values,
                allowlist_min_confidence=min_confidence,
            ),
        ),
    )


@plan_dispatch.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def status(db_path: Path | None, job_id: str) -> None:
    """Show job status and result payload."""

    _emit(lambda: CONTROLLER.status(JobCommand(db_path=db_path, job_id=job_id)))


@plan_dispatch.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with attempts and event history."""

    _emit(lambda: CONTROLLER.inspect(JobCommand(db_path=db_path, job_id=job_id)))


@plan_dispatch.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(
        ["pending", "processing", "completed", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--user-id", default=None, help="Optional user filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status_filter: str | None, user_id: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _emit(
        lambda: CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status_filter,
                user_id=user_id,
                limit=limit,
            ),
        ),
    )


@plan_dispatch.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending or processing job."""

    _emit(lambda: CONTROLLER.cancel(JobCommand(db_path=db_path, job_id=job_id)))


@plan_dispatch.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads in loop mode; defaults to PLAN_DISPATCH_WORKERS.",
)
@click.option(
    "--backend",
    type=click.Choice(["gemini", "echo"], case_sensitive=False),
    default="gemini",
    show_default=True,
    help="Upstream backend. `echo` returns schema-shaped samples without network calls.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs per worker in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Stop a worker after this many empty polls; 0 keeps polling until Ctrl+C.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    workers: int | None,
    backend: str,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run dispatcher workers."""

    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                workers=workers,
                backend=backend.lower(),
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls or None,
            ),
        ),
    )


@plan_dispatch.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sweep(db_path: Path | None) -> None:
    """Fail stale processing jobs and delete expired jobs and cache entries."""

    _emit(lambda: CONTROLLER.sweep(DbCommand(db_path=db_path)))


@plan_dispatch.command("credentials")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def credentials(db_path: Path | None) -> None:
    """List configured upstream credentials (masked) and their request limits."""

    _emit(lambda: CONTROLLER.credentials(DbCommand(db_path=db_path)))


@plan_dispatch.command("cache-stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cache_stats(db_path: Path | None) -> None:
    """Show result cache and job counters."""

    _emit(lambda: CONTROLLER.cache_stats(DbCommand(db_path=db_path)))


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (DispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    plan_dispatch()
