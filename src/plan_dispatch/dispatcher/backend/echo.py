"""Deterministic local backend for smoke runs and tests."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from plan_dispatch.dispatcher.backend.base import GenerationCall, GenerationOutput


class EchoBackend:
    """Returns a minimal payload that satisfies the requested schema."""

    model = "echo"

    def generate(self, call: GenerationCall, *, api_key: str) -> GenerationOutput:  # noqa: ARG002
        if call.schema:
            payload = sample_for_schema(call.schema)
        else:
            payload = {"echo": call.prompt}
        raw_output = json.dumps(payload, ensure_ascii=False)
        return GenerationOutput(
            raw_output=raw_output,
            input_tokens=max(1, len(call.prompt) // 4),
            output_tokens=max(1, len(raw_output) // 4),
            finish_reason="STOP",
            model=self.model,
        )


def sample_for_schema(schema: Mapping[str, Any]) -> Any:  # noqa: PLR0911
    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        return enum[0]
    schema_type = str(schema.get("type", "object")).lower()
    if schema_type == "object":
        properties = schema.get("properties") or {}
        return {
            name: sample_for_schema(child)
            for name, child in properties.items()
            if isinstance(child, Mapping)
        }
    if schema_type == "array":
        items = schema.get("items")
        return [sample_for_schema(items)] if isinstance(items, Mapping) else []
    if schema_type == "integer":
        return 1
    if schema_type == "number":
        return 1.0
    if schema_type == "boolean":
        return True
    if schema_type == "null":
        return None
    return "sample"
