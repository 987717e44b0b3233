"""Test doubles shared by the dispatcher test modules."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

from plan_dispatch.dispatcher.backend.base import (
    GenerationCall,
    GenerationOutput,
    UpstreamError,
    UpstreamErrorCategory,
)
from plan_dispatch.dispatcher.models import AttemptRecordWrite, GenerationRequest

WORKOUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "exercises"],
    "properties": {
        "title": {"type": "string"},
        "exercises": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["exercise_id", "sets"],
                "properties": {
                    "exercise_id": {"type": "string"},
                    "sets": {"type": "integer"},
                },
            },
        },
    },
}

WORKOUT_PAYLOAD: dict[str, Any] = {
    "title": "Full body",
    "exercises": [
        {"exercise_id": "back_squat", "sets": 3},
        {"exercise_id": "push_up", "sets": 4},
    ],
}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> None:
        with self._lock:
            self.now += timedelta(**kwargs)


def workout_request(**overrides: Any) -> GenerationRequest:
    values: dict[str, Any] = {
        "content_class": "workout_plan",
        "params": {"goal": "strength", "days_per_week": 3, "equipment": ["barbell", "bench"]},
        "schema": WORKOUT_SCHEMA,
        "prompt": "Create a {days_per_week}-day {goal} plan using {equipment}.",
        "max_retries": 3,
    }
    values.update(overrides)
    return GenerationRequest(**values)


def ok_output(payload: Any = None, *, output_tokens: int = 40) -> GenerationOutput:
    return GenerationOutput(
        raw_output=json.dumps(WORKOUT_PAYLOAD if payload is None else payload),
        input_tokens=120,
        output_tokens=output_tokens,
        finish_reason="STOP",
        model="fake-model",
    )


def quota_error(*, retry_after_seconds: float | None = None) -> UpstreamError:
    return UpstreamError(
        UpstreamErrorCategory.QUOTA,
        "RESOURCE_EXHAUSTED: Quota exceeded",
        status_code=429,
        retry_after_seconds=retry_after_seconds,
    )


class ScriptedBackend:
    """Replays queued outcomes; raises queued exceptions."""

    def __init__(self, outcomes: list[GenerationOutput | Exception] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[GenerationCall, str]] = []
        self._lock = threading.Lock()

    def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:
        with self._lock:
            self.calls.append((call, api_key))
            outcome = self.outcomes.pop(0) if self.outcomes else ok_output()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingProgress:
    """In-memory job progress with a retry budget."""

    def __init__(self, *, max_retries: int = 3) -> None:
        self.max_retries = max_retries
        self.retry_count = 0
        self.cancelled = False
        self.attempts: list[AttemptRecordWrite] = []
        self.heartbeats = 0
        self.events: list[tuple[str, dict[str, object]]] = []

    def is_cancelled(self) -> bool:
        return self.cancelled

    def record_retry(self) -> int | None:
        if self.retry_count >= self.max_retries:
            return None
        self.retry_count += 1
        return self.retry_count

    def record_attempt(self, attempt: AttemptRecordWrite) -> None:
        self.attempts.append(attempt)

    def record_event(self, event_type: str, details: dict[str, object]) -> None:
        self.events.append((event_type, details))

    def heartbeat(self) -> None:
        self.heartbeats += 1
