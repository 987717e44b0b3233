"""Generic retry-with-backoff primitive driven by a failure classifier."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """`delay = min(cap, base * 2**attempt + uniform(0, jitter))`.

    Jitter is bounded by `base`, so the delay for attempt `n + 1` is never
    smaller than the delay for attempt `n`.
    """

    base_seconds: float = 1.0
    cap_seconds: float = 30.0
    jitter_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("Backoff base and cap must be >= 0.")
        if not 0 <= self.jitter_seconds <= self.base_seconds:
            raise ValueError("Backoff jitter must be within [0, base_seconds].")

    def delay_for(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Delay before retrying after the zero-based `attempt` failed."""

        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        source = rng or random
        jitter = source.uniform(0.0, self.jitter_seconds) if self.jitter_seconds else 0.0
        # Cap the exponent first; large attempt counts would overflow float math.
        exponential = self.base_seconds * (2 ** min(attempt, 32))
        return min(self.cap_seconds, exponential + jitter)


@dataclass(frozen=True, slots=True)
class RetryVerdict:
    """Classifier answer for one failed attempt."""

    retryable: bool
    error_code: str
    message: str


class RetryError(RuntimeError):
    """Base class for retry loop outcomes other than success."""

    def __init__(self, verdict: RetryVerdict, *, attempts: int) -> None:
        super().__init__(verdict.message)
        self.verdict = verdict
        self.attempts = attempts

    @property
    def error_code(self) -> str:
        return self.verdict.error_code


class RetryExhausted(RetryError):
    """Every allowed attempt failed with a retryable error."""


class NonRetryableFailure(RetryError):
    """Classifier marked the failure as fatal."""


class RetryAborted(RetryError):
    """`should_abort` asked the loop to stop between attempts."""


def run_with_retry(  # noqa: PLR0913
    operation: Callable[[int], T],
    *,
    classify: Callable[[Exception], RetryVerdict],
    policy: BackoffPolicy,
    max_retries: int,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], object] = time.sleep,
    rng: random.Random | None = None,
    on_retry: Callable[[int, RetryVerdict, float], bool | None] | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> T:
    """Call `operation(attempt)` until it succeeds or the retry budget is spent.

    `attempt` is zero-based; at most `max_retries + 1` calls are made.
    Exceptions outside `retry_on` propagate untouched. `on_retry` runs before
    each backoff sleep and may return `False` to stop retrying, which raises
    `RetryExhausted` with the current verdict.
    """

    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")

    attempt = 0
    last_verdict: RetryVerdict | None = None
    while True:
        if should_abort is not None and should_abort():
            raise RetryAborted(
                last_verdict
                or RetryVerdict(retryable=False, error_code="ABORTED", message="Aborted."),
                attempts=attempt,
            )
        try:
            return operation(attempt)
        except retry_on as error:
            verdict = classify(error)
        last_verdict = verdict

        if not verdict.retryable:
            raise NonRetryableFailure(verdict, attempts=attempt + 1)
        if attempt >= max_retries:
            raise RetryExhausted(verdict, attempts=attempt + 1)

        delay = policy.delay_for(attempt, rng=rng)
        if on_retry is not None and on_retry(attempt, verdict, delay) is False:
            raise RetryExhausted(verdict, attempts=attempt + 1)
        logger.debug(
            "Attempt %s failed with %s; retrying in %.2fs",
            attempt + 1,
            verdict.error_code,
            delay,
        )
        if delay > 0:
            sleep(delay)
        attempt += 1
