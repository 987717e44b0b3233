"""Worker threads that claim pending jobs and execute them."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from uuid import uuid4

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.executor import (
    ExecutionCancelledError,
    ExecutionFailedError,
    RequestExecutor,
)
from plan_dispatch.dispatcher.models import AttemptRecordWrite, CacheMetadata, ErrorCode, JobView
from plan_dispatch.dispatcher.repository import JobRepository

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 5.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class _JobProgress:
    """Bridges executor callbacks to the job store for one claimed job."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        job_id: str,
        stop_event: threading.Event,
    ) -> None:
        self._repository = repository
        self._job_id = job_id
        self._stop_event = stop_event
        self.retries = 0

    def is_cancelled(self) -> bool:
        return self._stop_event.is_set() or not self._repository.is_active(job_id=self._job_id)

    def record_retry(self) -> int | None:
        retry_count = self._repository.record_retry(job_id=self._job_id)
        if retry_count is not None:
            self.retries += 1
        return retry_count

    def record_attempt(self, attempt: AttemptRecordWrite) -> None:
        self._repository.record_attempt(job_id=self._job_id, attempt=attempt)

    def record_event(self, event_type: str, details: dict[str, object]) -> None:
        self._repository.add_event(job_id=self._job_id, event_type=event_type, details=details)

    def heartbeat(self) -> None:
        self._repository.touch(job_id=self._job_id)


class DispatcherWorker:
    """Consumes pending jobs and writes results to the job store and cache."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: RequestExecutor,
        cache: ResultCache,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.cache = cache
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.poll_interval_seconds = poll_interval_seconds
        self.stop_event = stop_event or threading.Event()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        job = self.repository.claim_next_pending(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Worker %s claimed job %s (user=%s class=%s)",
            self.worker_id,
            job.job_id,
            job.user_id,
            job.content_class,
        )
        progress = _JobProgress(
            repository=self.repository,
            job_id=job.job_id,
            stop_event=self.stop_event,
        )
        try:
            self._process(job=job, progress=progress, summary=summary)
        except Exception as error:
            logger.exception("Unexpected error while processing job %s", job.job_id)
            if self.repository.fail(
                job_id=job.job_id,
                error_code=ErrorCode.INTERNAL_ERROR,
                message=f"Internal error ({type(error).__name__}).",
            ):
                summary.failed = 1
        summary.retried = progress.retries
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until stopped, idle for `max_idle_polls` polls, or `max_jobs` processed.

        `max_idle_polls=None` keeps polling until the stop event is set.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not self.stop_event.is_set():
            if max_jobs is not None and aggregate.processed >= max_jobs:
                break
            try:
                summary = self.run_once()
            except Exception:
                logger.exception("Worker %s poll failed", self.worker_id)
                self.stop_event.wait(timeout=ERROR_BACKOFF_SECONDS)
                continue
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self.stop_event.wait(timeout=self.poll_interval_seconds)
                continue
            consecutive_idle = 0
        return aggregate

    def _process(
        self,
        *,
        job: JobView,
        progress: _JobProgress,
        summary: WorkerRunSummary,
    ) -> None:
        try:
            result = self.executor.execute(job.request, progress, job_id=job.job_id)
        except ExecutionCancelledError:
            if self.stop_event.is_set() and self.repository.is_active(job_id=job.job_id):
                # Jobs are never re-run; a shutdown mid-job ends it.
                if self.repository.fail(
                    job_id=job.job_id,
                    error_code=ErrorCode.INTERNAL_ERROR,
                    message="Worker stopped before the job finished; resubmit to retry.",
                ):
                    summary.failed = 1
                return
            logger.info("Job %s was cancelled; stopping attempts", job.job_id)
            summary.cancelled = 1
            return
        except ExecutionFailedError as error:
            logger.warning(
                "Job %s failed with %s after %s attempt(s): %s",
                job.job_id,
                error.error_code.value,
                error.attempts,
                error.message,
            )
            if self.repository.fail(
                job_id=job.job_id,
                error_code=error.error_code,
                message=error.message,
            ):
                summary.failed = 1
            return

        if not self.repository.complete(
            job_id=job.job_id,
            result_ref=job.fingerprint,
            payload=result.payload,
        ):
            logger.info("Discarding result for job %s; it is no longer processing", job.job_id)
            summary.cancelled = 1
            return

        self.cache.put(
            job.fingerprint,
            result.payload,
            content_class=job.content_class,
            metadata=CacheMetadata(
                model_used=result.model_used,
                generation_time_ms=result.generation_time_ms,
                tokens_used=result.tokens_used,
            ),
        )
        logger.info(
            "Job %s completed in %s attempt(s), %sms",
            job.job_id,
            result.attempts,
            result.generation_time_ms,
        )
        summary.completed = 1


class WorkerPool:
    """Runs several `DispatcherWorker` loops on OS threads with a shared stop event."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: RequestExecutor,
        cache: ResultCache,
        workers: int = 1,
        poll_interval_seconds: float = 1.0,
        worker_prefix: str = "worker",
        stop_event: threading.Event | None = None,
    ) -> None:
        if workers <= 0:
            raise ValueError(f"workers must be > 0, got {workers}")
        self.stop_event = stop_event or threading.Event()
        self.workers = [
            DispatcherWorker(
                repository=repository,
                executor=executor,
                cache=cache,
                worker_id=f"{worker_prefix}-{index}-{uuid4().hex[:6]}",
                poll_interval_seconds=poll_interval_seconds,
                stop_event=self.stop_event,
            )
            for index in range(1, workers + 1)
        ]
        self._threads: list[threading.Thread] = []
        self._summaries: dict[str, WorkerRunSummary] = {}
        self._lock = threading.Lock()

    def start(self, *, max_jobs: int | None = None, max_idle_polls: int | None = None) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started.")
        self.stop_event.clear()
        for worker in self.workers:
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker, max_jobs, max_idle_polls),
                daemon=True,
                name=worker.worker_id,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Started %s worker thread(s)", len(self._threads))

    def join(self, timeout: float | None = None) -> WorkerRunSummary:
        for thread in self._threads:
            thread.join(timeout=timeout)
        return self.summary()

    def stop(self, *, timeout: float = 15.0) -> WorkerRunSummary:
        self.stop_event.set()
        summary = self.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        logger.info("Worker pool stopped")
        return summary

    def is_alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def summary(self) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        with self._lock:
            for summary in self._summaries.values():
                aggregate.add(summary)
        return aggregate

    def _run_worker(
        self,
        worker: DispatcherWorker,
        max_jobs: int | None,
        max_idle_polls: int | None,
    ) -> None:
        summary = worker.run_loop(max_jobs=max_jobs, max_idle_polls=max_idle_polls)
        with self._lock:
            self._summaries[worker.worker_id] = summary
