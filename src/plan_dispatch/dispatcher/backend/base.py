"""Backend interface for upstream generation calls."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class UpstreamErrorCategory(str, Enum):
    """Normalized upstream failure categories driving credential and retry policy."""

    QUOTA = "quota"
    INVALID_CREDENTIAL = "invalid_credential"
    CONTENT_POLICY = "content_policy"
    NETWORK = "network"
    SERVER = "server"
    REJECTED = "rejected"


@dataclass(slots=True)
class GenerationCall:
    """Inputs required to execute one upstream attempt."""

    prompt: str
    schema: Mapping[str, Any] | None
    temperature: float
    top_k: int
    top_p: float
    max_output_tokens: int
    system_instruction: str | None = None


@dataclass(slots=True)
class GenerationOutput:
    """Raw model output with usage metadata when the backend reports it."""

    raw_output: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    finish_reason: str | None = None
    model: str | None = None


class UpstreamError(RuntimeError):
    """Upstream call failed before producing usable output."""

    def __init__(
        self,
        category: UpstreamErrorCategory,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        # Classifier diagnostics persisted with the job's upstream_failure event.
        self.details = dict(details or {})

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.category.value}: {self.message}"
        return f"{self.category.value} (HTTP {self.status_code}): {self.message}"


class GenerationBackend(Protocol):
    """Protocol implemented by upstream backends."""

    def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:
        """Run one generation call and return raw output."""
