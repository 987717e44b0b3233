"""Prompt rendering and per-attempt constraint escalation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from typing import Any

from plan_dispatch.dispatcher.models import ErrorCode, GenerationRequest

STRICTNESS_INSTRUCTIONS: tuple[str, ...] = (
    "",
    "Respond with JSON only. Do not wrap it in markdown code fences or add commentary.",
    "Return exactly one JSON value that matches the schema below. "
    "No prose, no code fences, no trailing text, no comments.",
    "Your previous answers were rejected. Output only the JSON value, starting with "
    "'{' or '[' and ending with the matching bracket. Use only the allowed identifiers.",
)
MAX_CONSTRAINT_LEVEL = len(STRICTNESS_INSTRUCTIONS) - 1
CONCISE_INSTRUCTION = (
    "Keep the response concise: shorten descriptions and notes so the complete JSON "
    "fits in the output budget."
)
TEMPERATURE_STEP = 0.3

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True, slots=True)
class AttemptPlan:
    """Generation knobs for the next attempt of one job."""

    constraint_level: int
    temperature: float
    max_output_tokens: int
    concise: bool = False


def initial_plan(request: GenerationRequest) -> AttemptPlan:
    return AttemptPlan(
        constraint_level=0,
        temperature=request.model_options.temperature,
        max_output_tokens=request.model_options.max_output_tokens,
    )


def escalate(plan: AttemptPlan, error_code: str, *, token_ceiling: int) -> AttemptPlan:
    """Adjust the plan after a failed attempt.

    Truncation doubles the token budget up to `token_ceiling` and asks for a
    shorter answer. Malformed or rejected output raises the strictness level
    and lowers the temperature. Other failures keep the plan.
    """

    if error_code == ErrorCode.TRUNCATED_OUTPUT.value:
        return replace(
            plan,
            max_output_tokens=min(token_ceiling, max(plan.max_output_tokens * 2, 1)),
            concise=True,
        )
    if error_code in {ErrorCode.MALFORMED_OUTPUT.value, ErrorCode.VALIDATION_REJECTED.value}:
        return replace(
            plan,
            constraint_level=min(MAX_CONSTRAINT_LEVEL, plan.constraint_level + 1),
            temperature=max(0.0, round(plan.temperature - TEMPERATURE_STEP, 2)),
        )
    return plan


def render_prompt(request: GenerationRequest, plan: AttemptPlan) -> str:
    """Fill `{param}` placeholders and append the instructions for this plan."""

    if request.prompt:
        body = _PLACEHOLDER.sub(
            lambda match: _format_param(request.params, match.group(1), match.group(0)),
            request.prompt,
        )
    else:
        body = (
            f"Generate a {request.content_class.replace('_', ' ')} as JSON "
            "for the following parameters:\n"
            f"{json.dumps(dict(request.params), indent=2, sort_keys=True, ensure_ascii=False)}"
        )

    sections = [body.strip()]
    if plan.constraint_level >= 2 and request.schema:  # noqa: PLR2004
        sections.append(
            "JSON schema:\n"
            + json.dumps(dict(request.schema), indent=2, sort_keys=True, ensure_ascii=False),
        )
    if plan.constraint_level >= 1 and request.allowlist is not None:
        allowed = ", ".join(request.allowlist.allowed)
        sections.append(
            f"Values of {request.allowlist.field_name!r} must be one of: {allowed}",
        )
    if plan.concise:
        sections.append(CONCISE_INSTRUCTION)
    instruction = STRICTNESS_INSTRUCTIONS[plan.constraint_level]
    if instruction:
        sections.append(instruction)
    return "\n\n".join(sections)


def _format_param(params: Any, name: str, fallback: str) -> str:
    if name not in params:
        return fallback
    value = params[name]
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)
