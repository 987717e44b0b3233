from __future__ import annotations

import math
import unicodedata
from decimal import Decimal

import allure
import pytest
from support import workout_request

from plan_dispatch.dispatcher.fingerprint import canonical_json, canonicalize, fingerprint
from plan_dispatch.dispatcher.models import ModelOptions

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Request Dedup"),
]


def test_fingerprint_ignores_key_order() -> None:
    first = workout_request(params={"goal": "strength", "days_per_week": 3})
    second = workout_request(params={"days_per_week": 3, "goal": "strength"})

    assert fingerprint(first) == fingerprint(second)
    assert len(fingerprint(first)) == 64


def test_fingerprint_normalizes_integral_numbers_and_decimals() -> None:
    as_int = workout_request(params={"days_per_week": 3, "weight": 60})
    as_float = workout_request(params={"days_per_week": 3.0, "weight": Decimal("60.0")})

    assert fingerprint(as_int) == fingerprint(as_float)


def test_fingerprint_normalizes_unicode_to_nfc() -> None:
    composed = unicodedata.normalize("NFC", "café")
    decomposed = unicodedata.normalize("NFD", "café")
    assert composed != decomposed

    assert fingerprint(workout_request(params={"cuisine": composed})) == fingerprint(
        workout_request(params={"cuisine": decomposed}),
    )


def test_fingerprint_ignores_execution_options() -> None:
    base = workout_request()
    tuned = workout_request(
        prompt="Different wording for {goal}.",
        max_retries=7,
        model_options=ModelOptions(temperature=0.1, max_output_tokens=1024),
    )

    assert fingerprint(base) == fingerprint(tuned)


def test_fingerprint_distinguishes_class_params_and_schema() -> None:
    base = fingerprint(workout_request())

    assert fingerprint(workout_request(content_class="meal_plan")) != base
    assert fingerprint(workout_request(params={"goal": "endurance"})) != base
    assert fingerprint(workout_request(schema={"type": "object"})) != base


def test_list_order_is_significant_but_set_order_is_not() -> None:
    assert canonical_json({"days": ["mon", "wed"]}) != canonical_json({"days": ["wed", "mon"]})
    assert canonical_json({"tags": {"b", "a", "c"}}) == canonical_json({"tags": {"c", "a", "b"}})
    assert canonical_json((1, 2)) == canonical_json([1, 2])


def test_booleans_are_not_collapsed_into_numbers() -> None:
    assert canonicalize(True) is True
    assert canonical_json({"flag": True}) != canonical_json({"flag": 1})


def test_canonical_json_is_compact_and_sorted() -> None:
    assert canonical_json({"b": 1, "a": [1.5, None]}) == '{"a":[1.5,null],"b":1}'


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, Decimal("NaN")])
def test_non_finite_numbers_are_rejected(value: object) -> None:
    with pytest.raises(ValueError, match="Non-finite"):
        canonicalize({"x": value})


def test_non_json_types_are_rejected() -> None:
    with pytest.raises(TypeError, match="Unsupported value type"):
        canonicalize({"x": object()})
    with pytest.raises(TypeError, match="keys must be strings"):
        canonicalize({1: "one"})
