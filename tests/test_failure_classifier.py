from __future__ import annotations

import allure
import pytest

from plan_dispatch.dispatcher.backend.base import UpstreamErrorCategory
from plan_dispatch.dispatcher.failure_classifier import (
    UPSTREAM_FAILURE_CLASSIFIER_VERSION,
    classify_upstream_failure,
)

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Upstream Failures"),
]


def test_classifier_version_is_stable() -> None:
    assert UPSTREAM_FAILURE_CLASSIFIER_VERSION == 1


def test_status_429_is_quota_regardless_of_message() -> None:
    classified = classify_upstream_failure(status_code=429, message="API key not valid")

    assert classified.category is UpstreamErrorCategory.QUOTA
    assert classified.matched_rule == "status_429"


def test_quota_message_on_403_is_quota_not_invalid_key() -> None:
    classified = classify_upstream_failure(
        status_code=403,
        message="PERMISSION_DENIED: Quota exceeded for quota metric 'Generate requests'",
    )

    assert classified.category is UpstreamErrorCategory.QUOTA
    assert classified.matched_pattern == "quota"


@pytest.mark.parametrize(
    ("status_code", "message"),
    [
        (400, "INVALID_ARGUMENT: API key not valid. Please pass a valid API key."),
        (401, "Request had invalid authentication credentials."),
        (403, "The caller does not have access."),
    ],
)
def test_invalid_credentials(status_code: int, message: str) -> None:
    classified = classify_upstream_failure(status_code=status_code, message=message)

    assert classified.category is UpstreamErrorCategory.INVALID_CREDENTIAL


def test_content_policy_block() -> None:
    classified = classify_upstream_failure(
        status_code=400,
        message="Response blocked due to SAFETY",
    )

    assert classified.category is UpstreamErrorCategory.CONTENT_POLICY
    assert classified.reason_code == "upstream_content_policy"


@pytest.mark.parametrize("status_code", [500, 503, 408])
def test_server_errors(status_code: int) -> None:
    classified = classify_upstream_failure(status_code=status_code, message="UNAVAILABLE")

    assert classified.category is UpstreamErrorCategory.SERVER


def test_missing_status_is_network() -> None:
    classified = classify_upstream_failure(status_code=None, message="Connection reset by peer")

    assert classified.category is UpstreamErrorCategory.NETWORK
    assert classified.matched_pattern == "connection reset"


def test_other_client_errors_are_rejected_requests() -> None:
    classified = classify_upstream_failure(
        status_code=400,
        message="INVALID_ARGUMENT: Unknown name \"foo\" at 'generation_config'",
    )

    assert classified.category is UpstreamErrorCategory.REJECTED
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "category": "rejected",
        "reason_code": "upstream_rejected",
        "matched_rule": "fallback_rejected",
        "matched_pattern": None,
    }
