"""HTTP backend for the Gemini `generateContent` REST endpoint."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

import httpx

from plan_dispatch.config import UpstreamSettings
from plan_dispatch.dispatcher.backend.base import (
    GenerationCall,
    GenerationOutput,
    UpstreamError,
    UpstreamErrorCategory,
)
from plan_dispatch.dispatcher.failure_classifier import classify_upstream_failure

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0

_BLOCKED_FINISH_REASONS = frozenset(
    {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "RECITATION", "SPII"},
)
_SCHEMA_KEYS = frozenset(
    {"type", "properties", "required", "items", "enum", "nullable", "description", "format"},
)
_RETRY_DELAY = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


class GeminiBackend:
    """Synchronous Gemini client; one instance is shared by all worker threads."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: UpstreamSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> GeminiBackend:
        return cls(
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )

    def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:
        """POST one generation request and return the first candidate's text."""

        try:
            response = self._client.post(
                f"/models/{self.model}:generateContent",
                json=build_request_body(call),
                headers={"x-goog-api-key": api_key},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s: %s", self.model, error)
            raise UpstreamError(
                UpstreamErrorCategory.NETWORK,
                f"Request timed out: {error}",
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", self.model, error)
            raise UpstreamError(UpstreamErrorCategory.NETWORK, str(error)) from error

        if not response.is_success:
            message = _error_message(response)
            classification = classify_upstream_failure(
                status_code=response.status_code,
                message=message,
            )
            raise UpstreamError(
                classification.category,
                message,
                status_code=response.status_code,
                retry_after_seconds=_retry_after_seconds(response),
                details=classification.to_event_details(),
            )

        try:
            data = response.json()
        except ValueError as error:
            raise UpstreamError(
                UpstreamErrorCategory.SERVER,
                "Upstream returned a non-JSON response body.",
                status_code=response.status_code,
            ) from error
        return parse_generate_response(data, model=self.model)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_request_body(call: GenerationCall) -> dict[str, Any]:
    generation_config: dict[str, Any] = {
        "temperature": call.temperature,
        "topK": call.top_k,
        "topP": call.top_p,
        "maxOutputTokens": call.max_output_tokens,
        "responseMimeType": "application/json",
    }
    if call.schema:
        generation_config["responseSchema"] = to_gemini_schema(call.schema)
    body: dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": call.prompt}]}],
        "generationConfig": generation_config,
    }
    if call.system_instruction:
        body["systemInstruction"] = {"parts": [{"text": call.system_instruction}]}
    return body


def to_gemini_schema(schema: Mapping[str, Any]) -> dict[str, Any]:
    """Convert the JSON-schema subset into Gemini's OpenAPI-style schema."""

    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties" and isinstance(value, Mapping):
            converted[key] = {
                name: to_gemini_schema(child)
                for name, child in value.items()
                if isinstance(child, Mapping)
            }
        elif key == "items" and isinstance(value, Mapping):
            converted[key] = to_gemini_schema(value)
        else:
            converted[key] = value
    return converted


def parse_generate_response(
    data: Mapping[str, Any],
    *,
    model: str | None = None,
) -> GenerationOutput:
    """Extract text and usage from a `generateContent` response body."""

    feedback = data.get("promptFeedback") or {}
    block_reason = feedback.get("blockReason") if isinstance(feedback, Mapping) else None
    if block_reason:
        raise UpstreamError(
            UpstreamErrorCategory.CONTENT_POLICY,
            f"Prompt blocked by upstream safety filter: {block_reason}",
        )

    candidates = data.get("candidates") or []
    if not candidates:
        raise UpstreamError(UpstreamErrorCategory.SERVER, "Upstream returned no candidates.")
    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    if finish_reason in _BLOCKED_FINISH_REASONS:
        raise UpstreamError(
            UpstreamErrorCategory.CONTENT_POLICY,
            f"Response blocked by upstream safety filter: {finish_reason}",
        )

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if isinstance(part, Mapping))

    usage = data.get("usageMetadata") or {}
    return GenerationOutput(
        raw_output=text,
        input_tokens=_optional_int(usage.get("promptTokenCount")),
        output_tokens=_optional_int(usage.get("candidatesTokenCount")),
        finish_reason=finish_reason,
        model=data.get("modelVersion") or model,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:500] or f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, Mapping) else None
    if isinstance(error, Mapping):
        status = error.get("status")
        message = str(error.get("message") or f"HTTP {response.status_code}")
        return f"{status}: {message}" if status else message
    return f"HTTP {response.status_code}"


def _retry_after_seconds(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After header %r", header)
    try:
        data = response.json()
    except ValueError:
        return None
    error = data.get("error") if isinstance(data, Mapping) else None
    details = error.get("details") if isinstance(error, Mapping) else None
    for detail in details or []:
        if not isinstance(detail, Mapping):
            continue
        delay = detail.get("retryDelay")
        if isinstance(delay, str):
            match = _RETRY_DELAY.match(delay)
            if match is not None:
                return float(match.group(1))
    return None


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None
