"""Structural validation, repair and allowlist checks for model output."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from typing import Any

from plan_dispatch.dispatcher.json_scan import iter_json_spans
from plan_dispatch.dispatcher.models import AllowlistRule, ErrorCode

CHARS_PER_TOKEN = 4
MAX_REPORTED_SHAPE_ERRORS = 5

_SEPARATORS = re.compile(r"[\s_\-]+")


class StructuralStatus(str, Enum):
    VALID = "valid"
    TRUNCATED = "truncated"
    MALFORMED = "malformed"


@dataclass(slots=True)
class StructuralCheck:
    """Result of parsing and shape-checking raw model output."""

    status: StructuralStatus
    payload: Any | None = None
    recovered: bool = False
    error: str | None = None


@dataclass(slots=True)
class AllowlistSubstitution:
    original: str
    replacement: str
    score: float


@dataclass(slots=True)
class AllowlistResult:
    payload: Any
    substitutions: list[AllowlistSubstitution] = field(default_factory=list)
    rejected: list[tuple[str, str | None, float]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.rejected


@dataclass(slots=True)
class ValidationResult:
    """Combined outcome of structural and allowlist validation."""

    is_valid: bool
    error_code: ErrorCode | None
    error_summary: str | None
    payload: Any | None
    recovered: bool = False
    substitutions: list[AllowlistSubstitution] = field(default_factory=list)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def check_structural(
    raw: str,
    expected_shape: Mapping[str, Any] | None,
    *,
    output_tokens: int | None,
    max_output_tokens: int,
    margin: int = 16,
) -> StructuralCheck:
    """Parse `raw`, recovering the first balanced JSON span if needed.

    Output without any parseable span is `truncated` when it ends with open
    brackets and the token count (reported, or estimated at four characters
    per token) reached the budget minus `margin`; otherwise it is `malformed`.
    """

    text = raw.strip()
    payload, recovered, unclosed = _parse_payload(text)
    if payload is _MISSING:
        tokens = output_tokens if output_tokens is not None else estimate_tokens(raw)
        if unclosed and tokens >= max_output_tokens - margin:
            return StructuralCheck(
                status=StructuralStatus.TRUNCATED,
                error=(
                    f"Output ended without a balanced JSON value after {tokens} tokens "
                    f"(budget {max_output_tokens})."
                ),
            )
        return StructuralCheck(
            status=StructuralStatus.MALFORMED,
            error="Output does not contain a parseable JSON object or array.",
        )

    if expected_shape:
        errors = check_shape(payload, expected_shape)
        if errors:
            summary = "; ".join(errors[:MAX_REPORTED_SHAPE_ERRORS])
            if len(errors) > MAX_REPORTED_SHAPE_ERRORS:
                summary += f" (+{len(errors) - MAX_REPORTED_SHAPE_ERRORS} more)"
            return StructuralCheck(
                status=StructuralStatus.MALFORMED,
                payload=payload,
                recovered=recovered,
                error=f"Output does not match schema: {summary}",
            )
    return StructuralCheck(status=StructuralStatus.VALID, payload=payload, recovered=recovered)


def check_shape(  # noqa: C901, PLR0911, PLR0912
    value: Any,
    schema: Mapping[str, Any],
    path: str = "$",
) -> list[str]:
    """Validate against the supported JSON-schema subset; return error messages."""

    if value is None:
        if schema.get("nullable") or _type_name(schema) == "null":
            return []
        if "type" in schema:
            return [f"{path}: expected {_type_name(schema)}, got null"]
        return []

    enum = schema.get("enum")
    if isinstance(enum, list) and value not in enum:
        return [f"{path}: {value!r} is not one of {enum!r}"]

    schema_type = _type_name(schema)
    if schema_type is None:
        return []
    if schema_type == "object":
        if not isinstance(value, dict):
            return [f"{path}: expected object, got {_json_type(value)}"]
        errors: list[str] = []
        for name in schema.get("required") or []:
            if name not in value:
                errors.append(f"{path}.{name}: required property missing")
        for name, child in (schema.get("properties") or {}).items():
            if name in value and isinstance(child, Mapping):
                errors.extend(check_shape(value[name], child, f"{path}.{name}"))
        return errors
    if schema_type == "array":
        if not isinstance(value, list):
            return [f"{path}: expected array, got {_json_type(value)}"]
        items = schema.get("items")
        if not isinstance(items, Mapping):
            return []
        errors = []
        for index, item in enumerate(value):
            errors.extend(check_shape(item, items, f"{path}[{index}]"))
        return errors
    if schema_type == "string":
        if not isinstance(value, str):
            return [f"{path}: expected string, got {_json_type(value)}"]
        return []
    if schema_type == "integer":
        if isinstance(value, bool) or not (
            isinstance(value, int) or (isinstance(value, float) and value.is_integer())
        ):
            return [f"{path}: expected integer, got {_json_type(value)}"]
        return []
    if schema_type == "number":
        if isinstance(value, bool) or not isinstance(value, int | float):
            return [f"{path}: expected number, got {_json_type(value)}"]
        return []
    if schema_type == "boolean":
        if not isinstance(value, bool):
            return [f"{path}: expected boolean, got {_json_type(value)}"]
        return []
    return []


def apply_allowlist(payload: Any, rule: AllowlistRule) -> AllowlistResult:
    """Replace near-miss identifiers under `rule.field_name` with allowed values."""

    canonical = {_normalize_identifier(item): item for item in rule.allowed}
    result = AllowlistResult(payload=None)
    result.payload = _walk(payload, rule=rule, canonical=canonical, result=result, inside=False)
    return result


def validate_output(  # noqa: PLR0913
    raw: str,
    *,
    schema: Mapping[str, Any] | None,
    allowlist: AllowlistRule | None,
    output_tokens: int | None,
    max_output_tokens: int,
    margin: int = 16,
) -> ValidationResult:
    """Run structural check, then the allowlist rule on a valid payload."""

    check = check_structural(
        raw,
        schema,
        output_tokens=output_tokens,
        max_output_tokens=max_output_tokens,
        margin=margin,
    )
    if check.status is StructuralStatus.TRUNCATED:
        return ValidationResult(
            is_valid=False,
            error_code=ErrorCode.TRUNCATED_OUTPUT,
            error_summary=check.error,
            payload=None,
        )
    if check.status is StructuralStatus.MALFORMED:
        return ValidationResult(
            is_valid=False,
            error_code=ErrorCode.MALFORMED_OUTPUT,
            error_summary=check.error,
            payload=check.payload,
            recovered=check.recovered,
        )
    if allowlist is None:
        return ValidationResult(
            is_valid=True,
            error_code=None,
            error_summary=None,
            payload=check.payload,
            recovered=check.recovered,
        )

    allowlisted = apply_allowlist(check.payload, allowlist)
    if not allowlisted.is_valid:
        rejected = ", ".join(
            f"{value!r} (closest {best!r} at {score:.2f})"
            for value, best, score in allowlisted.rejected[:5]
        )
        return ValidationResult(
            is_valid=False,
            error_code=ErrorCode.VALIDATION_REJECTED,
            error_summary=(
                f"Values under {allowlist.field_name!r} are not allowlisted: {rejected}"
            ),
            payload=check.payload,
            recovered=check.recovered,
        )
    return ValidationResult(
        is_valid=True,
        error_code=None,
        error_summary=None,
        payload=allowlisted.payload,
        recovered=check.recovered,
        substitutions=allowlisted.substitutions,
    )


class _Missing:
    pass


_MISSING = _Missing()


def _parse_payload(text: str) -> tuple[Any, bool, bool]:
    """Return `(payload, recovered, unclosed)`; `unclosed` only matters without a payload."""

    if not text:
        return _MISSING, False, False
    direct = _loads(text)
    if isinstance(direct, dict | list):
        return direct, False, False

    unclosed = False
    for span in iter_json_spans(text):
        if not span.complete:
            unclosed = True
            continue
        parsed = _loads(text[span.start : span.end])
        if parsed is not _MISSING:
            return parsed, True, False
    return _MISSING, False, unclosed


def _loads(text: str) -> Any:
    # Deeply nested input exhausts the decoder's recursion limit.
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _MISSING


def _walk(
    value: Any,
    *,
    rule: AllowlistRule,
    canonical: dict[str, str],
    result: AllowlistResult,
    inside: bool,
) -> Any:
    if isinstance(value, dict):
        return {
            key: _walk(
                item,
                rule=rule,
                canonical=canonical,
                result=result,
                inside=inside or key == rule.field_name,
            )
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            _walk(item, rule=rule, canonical=canonical, result=result, inside=inside)
            for item in value
        ]
    if inside and isinstance(value, str):
        return _resolve_identifier(value, rule=rule, canonical=canonical, result=result)
    return value


def _resolve_identifier(
    value: str,
    *,
    rule: AllowlistRule,
    canonical: dict[str, str],
    result: AllowlistResult,
) -> str:
    normalized = _normalize_identifier(value)
    exact = canonical.get(normalized)
    if exact is not None:
        return exact

    best: str | None = None
    best_score = 0.0
    for candidate_normalized, candidate in canonical.items():
        score = SequenceMatcher(None, normalized, candidate_normalized).ratio()
        if score > best_score:
            best, best_score = candidate, score
    if best is not None and best_score >= rule.min_confidence:
        result.substitutions.append(
            AllowlistSubstitution(original=value, replacement=best, score=best_score),
        )
        return best
    result.rejected.append((value, best, best_score))
    return value


def _normalize_identifier(value: str) -> str:
    return _SEPARATORS.sub(" ", value.strip().lower()).strip()


def _type_name(schema: Mapping[str, Any]) -> str | None:
    schema_type = schema.get("type")
    if isinstance(schema_type, str):
        return schema_type.lower()
    return None


def _json_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    if isinstance(value, str):
        return "string"
    if isinstance(value, int | float):
        return "number"
    return type(value).__name__
