"""Domain models for generation jobs, cache entries and attempts."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ErrorCode(str, Enum):
    """Stable error codes recorded on failed jobs and attempts."""

    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"
    TRUNCATED_OUTPUT = "TRUNCATED_OUTPUT"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    CONTENT_POLICY = "CONTENT_POLICY"
    NO_CREDENTIALS_AVAILABLE = "NO_CREDENTIALS_AVAILABLE"
    JOB_TIMEOUT = "JOB_TIMEOUT"
    VALIDATION_REJECTED = "VALIDATION_REJECTED"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Codes that end the attempt loop immediately.
NON_RETRYABLE_ERROR_CODES = frozenset(
    {
        ErrorCode.NO_CREDENTIALS_AVAILABLE,
        ErrorCode.UPSTREAM_REJECTED,
        ErrorCode.INTERNAL_ERROR,
    },
)


class ConflictPolicy(str, Enum):
    """What to do when a user submits a different request while one is active."""

    REJECT = "reject"
    REPLACE = "replace"


class AttemptOutcome(str, Enum):
    """Result of one upstream call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ModelOptions:
    """Generation config forwarded to the upstream model."""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 4096

    def to_dict(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "max_output_tokens": self.max_output_tokens,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ModelOptions:
        if not data:
            return cls()
        defaults = cls()
        return cls(
            temperature=float(data.get("temperature", defaults.temperature)),
            top_k=int(data.get("top_k", defaults.top_k)),
            top_p=float(data.get("top_p", defaults.top_p)),
            max_output_tokens=int(data.get("max_output_tokens", defaults.max_output_tokens)),
        )


@dataclass(frozen=True, slots=True)
class AllowlistRule:
    """Every string found under `field_name` must match one of `allowed`."""

    field_name: str
    allowed: tuple[str, ...]
    min_confidence: float = 0.9

    def __post_init__(self) -> None:
        if not self.field_name:
            raise ValueError("Allowlist rule requires a field name.")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(
                f"Allowlist min_confidence must be within [0, 1], got {self.min_confidence}.",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field_name,
            "allowed": list(self.allowed),
            "min_confidence": self.min_confidence,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AllowlistRule:
        return cls(
            field_name=str(data["field"]),
            allowed=tuple(str(item) for item in data.get("allowed", ())),
            min_confidence=float(data.get("min_confidence", 0.9)),
        )


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """Immutable description of one logical generation request.

    Only `content_class`, `params` and `schema` take part in the fingerprint;
    the remaining fields tune how the request is executed.
    """

    content_class: str
    params: Mapping[str, Any]
    schema: Mapping[str, Any] | None = None
    prompt: str | None = None
    max_retries: int = 3
    model_options: ModelOptions = field(default_factory=ModelOptions)
    allowlist: AllowlistRule | None = None

    def __post_init__(self) -> None:
        if not self.content_class.strip():
            raise ValueError("content_class must be a non-empty string.")
        if not isinstance(self.params, Mapping):
            raise TypeError("params must be a JSON object.")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_class": self.content_class,
            "params": dict(self.params),
            "schema": dict(self.schema) if self.schema is not None else None,
            "prompt": self.prompt,
            "max_retries": self.max_retries,
            "model_options": self.model_options.to_dict(),
            "allowlist": self.allowlist.to_dict() if self.allowlist is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GenerationRequest:
        allowlist_raw = data.get("allowlist")
        return cls(
            content_class=str(data["content_class"]),
            params=dict(data.get("params") or {}),
            schema=data.get("schema"),
            prompt=data.get("prompt"),
            max_retries=int(data.get("max_retries", 3)),
            model_options=ModelOptions.from_dict(data.get("model_options")),
            allowlist=AllowlistRule.from_dict(allowlist_raw) if allowlist_raw else None,
        )


@dataclass(slots=True)
class JobView:
    """Readable job view for services, workers and the CLI."""

    job_id: str
    user_id: str
    fingerprint: str
    content_class: str
    status: JobStatus
    retry_count: int
    max_retries: int
    request: GenerationRequest
    result_ref: str | None
    payload: Any | None
    error_code: ErrorCode | None
    error_message: str | None
    worker_id: str | None
    created_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    expires_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AttemptRecordWrite:
    """Telemetry captured for one upstream call."""

    attempt_no: int
    outcome: AttemptOutcome
    started_at: datetime
    finished_at: datetime
    credential_id: str | None = None
    masked_key: str | None = None
    constraint_level: int = 0
    max_output_tokens: int | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None
    latency_ms: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(slots=True)
class AttemptView:
    """Persisted attempt telemetry row."""

    attempt_id: int
    job_id: str
    attempt_no: int
    credential_id: str | None
    masked_key: str | None
    constraint_level: int
    max_output_tokens: int | None
    outcome: AttemptOutcome
    error_code: ErrorCode | None
    error_message: str | None
    latency_ms: int | None
    input_tokens: int | None
    output_tokens: int | None
    started_at: datetime
    finished_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream and attempts."""

    job: JobView
    events: list[JobEventView]
    attempts: list[AttemptView]


@dataclass(slots=True)
class JobSubmission:
    """Outcome of `create_or_reuse`."""

    job: JobView
    created: bool
    replaced_job_id: str | None = None


@dataclass(slots=True)
class CacheMetadata:
    """Optional generation metadata stored next to a cached payload."""

    model_used: str | None = None
    generation_time_ms: int | None = None
    tokens_used: int | None = None


@dataclass(slots=True)
class CacheEntry:
    """Cached result payload."""

    fingerprint: str
    content_class: str
    payload: Any
    created_at: datetime
    expires_at: datetime
    hit_count: int
    last_accessed_at: datetime
    model_used: str | None = None
    generation_time_ms: int | None = None
    tokens_used: int | None = None


@dataclass(slots=True)
class CacheStats:
    """Aggregated cache counters."""

    entries: int
    live: int
    expired: int
    total_hits: int


@dataclass(slots=True)
class SubmitResult:
    """Answer returned to callers of `DispatcherService.submit`."""

    job_id: str
    status: JobStatus
    fingerprint: str
    cache_hit: bool
    reused: bool


@dataclass(slots=True)
class JobStatusView:
    """Poll-friendly job state."""

    job_id: str
    status: JobStatus
    retry_count: int
    result_ref: str | None = None
    payload: Any | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None
