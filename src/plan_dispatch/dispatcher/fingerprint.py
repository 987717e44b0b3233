"""Deterministic request fingerprints used as cache and dedup keys."""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from plan_dispatch.dispatcher.models import GenerationRequest


def fingerprint(request: GenerationRequest) -> str:
    """Return hex SHA-256 of the canonical request identity."""

    identity = {
        "content_class": request.content_class,
        "params": request.params,
        "schema": request.schema,
    }
    return hashlib.sha256(canonical_json(identity).encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    """Serialize `value` so semantically equal inputs give identical text."""

    return json.dumps(
        canonicalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonicalize(value: Any) -> Any:  # noqa: PLR0911
    """Normalize a JSON-like value.

    Mapping keys become NFC strings, integral floats and decimals collapse to
    ints, sets are sorted and lists keep their order.
    """

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float | Decimal):
        return _canonical_number(value)
    if isinstance(value, Mapping):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}.")
            normalized[unicodedata.normalize("NFC", key)] = canonicalize(item)
        return normalized
    if isinstance(value, list | tuple):
        return [canonicalize(item) for item in value]
    if isinstance(value, set | frozenset):
        items = [canonicalize(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    raise TypeError(f"Unsupported value type for fingerprinting: {type(value).__name__}")


def _canonical_number(value: float | Decimal) -> int | float:
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Non-finite number cannot be fingerprinted: {value}")
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"Non-finite number cannot be fingerprinted: {value}")
    if value.is_integer():
        return int(value)
    return value
